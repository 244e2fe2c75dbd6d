"""
ClinicSession - Security Dependencies

FastAPI dependencies for authentication and authorization.
This is the contract clinical features consume: "is this caller
authenticated with role R in clinic C".

Usage:
    @router.get("/patients")
    async def list_patients(account: AuthContext = Depends(get_current_account)):
        ...

    @router.get("/audit", dependencies=[Depends(require_permission(Permission.READ_AUDIT))])
    async def read_audit():
        ...

Security:
- Every protected request validates the JWT and the account's token_version
- A rejected token is a 401; the server never refreshes on the caller's behalf
- RBAC is deny-by-default
- Every denial is recorded as ACCESS_DENIED
- Administrative operations require 2FA enrolment (require_two_factor)
"""

from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from clinicsession.audit import SecurityEventType
from clinicsession.auth.container import AuthServices
from clinicsession.auth.models import Role
from clinicsession.auth.token_service import AuthContext
from clinicsession.gateway.rbac import Permission, RBACPolicy


# HTTP Bearer scheme for JWT extraction
security = HTTPBearer(auto_error=False)

TWO_FACTOR_REQUIRED_MESSAGE = "Two-factor authentication must be enabled for this operation"


def get_services(request: Request) -> AuthServices:
    """Service container created at startup."""
    return request.app.state.auth_services


async def get_current_account(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    services: AuthServices = Depends(get_services),
) -> AuthContext:
    """
    Validate request authentication and return the caller's identity.

    Raises:
        HTTPException 401: Missing, invalid, expired, or revoked token
    """
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authentication token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    context = await services.tokens.authenticate(credentials.credentials)
    if context is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return context


def _deny(services: AuthServices, account: AuthContext, request: Request, reason: str) -> HTTPException:
    services.audit.record_event(
        account.account_id,
        SecurityEventType.ACCESS_DENIED,
        {"path": request.url.path, "reason": reason},
    )
    return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=reason)


def require_role(*roles: Role):
    """
    Dependency requiring one of the given roles.

    Usage:
        @router.post("/orders", dependencies=[Depends(require_role(Role.DOCTOR))])
    """
    async def dependency(
        request: Request,
        account: AuthContext = Depends(get_current_account),
        services: AuthServices = Depends(get_services),
    ) -> AuthContext:
        if account.role not in roles:
            raise _deny(services, account, request, f"Requires role: {', '.join(r.value for r in roles)}")
        return account

    return dependency


def require_clinic(clinic_param: str = "clinic_id"):
    """
    Dependency requiring the caller to belong to the clinic named in the path.

    Args:
        clinic_param: Name of the path parameter holding the clinic ID
    """
    async def dependency(
        request: Request,
        account: AuthContext = Depends(get_current_account),
        services: AuthServices = Depends(get_services),
    ) -> AuthContext:
        clinic_id = request.path_params.get(clinic_param)
        if clinic_id is None or clinic_id != account.clinic_id:
            raise _deny(services, account, request, "Access to this clinic is not permitted")
        return account

    return dependency


def require_permission(permission: Permission):
    """
    Dependency enforcing a policies.yaml permission.

    Raises:
        HTTPException 403: If the caller's role lacks the permission
    """
    async def dependency(
        request: Request,
        account: AuthContext = Depends(get_current_account),
        services: AuthServices = Depends(get_services),
    ) -> AuthContext:
        if not RBACPolicy().has_permission(account.role.value, permission):
            raise _deny(services, account, request, f"Permission denied: {permission.value}")
        return account

    return dependency


async def require_two_factor(
    request: Request,
    account: AuthContext = Depends(get_current_account),
    services: AuthServices = Depends(get_services),
) -> AuthContext:
    """
    Dependency requiring the caller to have two-factor authentication enabled.

    Guards administrative operations such as account registration.

    Raises:
        HTTPException 403: If the account has not enrolled in 2FA
    """
    if not account.two_factor_enabled:
        raise _deny(services, account, request, TWO_FACTOR_REQUIRED_MESSAGE)
    return account
