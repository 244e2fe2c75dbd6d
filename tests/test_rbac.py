"""
ClinicSession - RBAC Tests

Tests for policies.yaml permissions and the authorization dependencies
clinical features consume.
"""

import pytest
from fastapi import APIRouter, Depends

from clinicsession.app import app
from clinicsession.audit import SecurityEventType
from clinicsession.auth.dependencies import require_clinic, require_permission, require_role
from clinicsession.auth.models import Role
from clinicsession.auth.token_service import AuthContext
from clinicsession.gateway.rbac import Permission, RBACPolicy
from tests.conftest import (
    ADMIN_EMAIL,
    ADMIN_PASSWORD,
    CLINIC_ID,
    DOCTOR_EMAIL,
    DOCTOR_PASSWORD,
    auth_headers,
    login,
)


probe = APIRouter(prefix="/api/probe")


@probe.get("/audit")
async def read_audit(account: AuthContext = Depends(require_permission(Permission.READ_AUDIT))):
    return {"account_id": str(account.account_id)}


@probe.get("/orders")
async def write_orders(account: AuthContext = Depends(require_role(Role.DOCTOR))):
    return {"role": account.role.value}


@probe.get("/clinics/{clinic_id}/patients")
async def clinic_patients(clinic_id: str, account: AuthContext = Depends(require_clinic())):
    return {"clinic_id": clinic_id}


app.include_router(probe)


class TestPolicy:

    @pytest.fixture
    def policy(self):
        return RBACPolicy()

    def test_policy_is_singleton(self, policy):
        assert RBACPolicy() is policy

    @pytest.mark.parametrize("role,permission", [
        ("ADMIN", Permission.MANAGE_USERS),
        ("ADMIN", Permission.READ_AUDIT),
        ("DOCTOR", Permission.WRITE_PRESCRIPTIONS),
        ("NURSE", Permission.WRITE_PATIENTS),
        ("PHARMACIST", Permission.DISPENSE_PRESCRIPTIONS),
        ("PATIENT", Permission.READ_OWN_RECORDS),
    ])
    def test_granted(self, policy, role, permission):
        assert policy.has_permission(role, permission) is True

    @pytest.mark.parametrize("role,permission", [
        ("DOCTOR", Permission.MANAGE_USERS),
        ("NURSE", Permission.WRITE_PRESCRIPTIONS),
        ("PHARMACIST", Permission.WRITE_PATIENTS),
        ("PATIENT", Permission.READ_PATIENTS),
    ])
    def test_denied(self, policy, role, permission):
        assert policy.has_permission(role, permission) is False

    def test_unknown_role_denied(self, policy):
        assert policy.has_permission("JANITOR", Permission.READ_PATIENTS) is False
        assert policy.get_role_permissions("JANITOR") == set()

    def test_missing_policy_file_denies_all(self, policy, tmp_path):
        policy.reload(tmp_path / "absent.yaml")
        try:
            assert policy.has_permission("ADMIN", Permission.MANAGE_USERS) is False
        finally:
            policy.reload()


class TestDependencies:

    def test_permission_granted(self, client, admin):
        tokens = login(client, ADMIN_EMAIL, ADMIN_PASSWORD).json()["tokens"]

        response = client.get("/api/probe/audit", headers=auth_headers(tokens["access_token"]))

        assert response.status_code == 200

    def test_permission_denied_is_audited(self, client, doctor, services):
        tokens = login(client, DOCTOR_EMAIL, DOCTOR_PASSWORD).json()["tokens"]

        response = client.get("/api/probe/audit", headers=auth_headers(tokens["access_token"]))

        assert response.status_code == 403
        denied = services.audit.list_events(event_type=SecurityEventType.ACCESS_DENIED)
        assert denied[0].details["path"] == "/api/probe/audit"

    def test_unauthenticated_is_401(self, client):
        assert client.get("/api/probe/audit").status_code == 401

    def test_require_role(self, client, doctor, admin):
        doctor_tokens = login(client, DOCTOR_EMAIL, DOCTOR_PASSWORD).json()["tokens"]
        admin_tokens = login(client, ADMIN_EMAIL, ADMIN_PASSWORD).json()["tokens"]

        assert client.get(
            "/api/probe/orders", headers=auth_headers(doctor_tokens["access_token"])
        ).status_code == 200
        assert client.get(
            "/api/probe/orders", headers=auth_headers(admin_tokens["access_token"])
        ).status_code == 403

    def test_require_clinic(self, client, doctor):
        tokens = login(client, DOCTOR_EMAIL, DOCTOR_PASSWORD).json()["tokens"]
        headers = auth_headers(tokens["access_token"])

        assert client.get(f"/api/probe/clinics/{CLINIC_ID}/patients", headers=headers).status_code == 200
        assert client.get("/api/probe/clinics/other-clinic/patients", headers=headers).status_code == 403
