"""
ClinicSession - Test Configuration

Pytest fixtures for session-layer testing.
Provides test database, controllable clock, services, client, and account fixtures.
"""

import os

# Must be set before clinicsession.config is imported
os.environ.setdefault("SECRET_KEY", "test-secret-key-not-for-production-0123456789")
os.environ["BCRYPT_WORK_FACTOR"] = "4"
os.environ.setdefault("LOG_JSON", "false")

from datetime import datetime, timedelta, timezone
from typing import Generator

import pyotp
import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session, SQLModel

from clinicsession.app import app
from clinicsession.auth.container import AuthServices, build_services
from clinicsession.auth.database import get_engine, init_db
from clinicsession.auth.models import Account, Role, TwoFactorMethod, utcnow
from clinicsession.auth.password import hash_password
from clinicsession.config import Settings
from clinicsession.gateway.rate_limit import limiter


# Test database URL (in-memory SQLite)
TEST_DATABASE_URL = "sqlite://"

DOCTOR_EMAIL = "doctor@clinic.test"
DOCTOR_PASSWORD = "Doctor#Secure2024"
ADMIN_EMAIL = "admin@clinic.test"
ADMIN_PASSWORD = "Admin#Secure2024"
ADMIN_TOTP_SECRET = "JBSWY3DPEHPK3PXP"
CLINIC_ID = "clinic-001"


class FakeClock:
    """Naive-UTC clock that only moves when told to."""

    def __init__(self, start: datetime = None):
        self.now = (start or utcnow()).replace(microsecond=0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture(scope="function")
def test_engine():
    """Create a fresh test database engine for each test."""
    engine = get_engine(TEST_DATABASE_URL)
    init_db(engine)

    yield engine

    SQLModel.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture(scope="function")
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture(scope="function")
def config() -> Settings:
    return Settings()


@pytest.fixture(scope="function")
def services(test_engine, clock, config) -> AuthServices:
    """Service graph over the test database and fake clock."""
    return build_services(test_engine, config=config, clock=clock)


@pytest.fixture(scope="function")
def client(services) -> Generator[TestClient, None, None]:
    """Create a test client wired to the test services."""
    app.state.auth_services = services
    limiter.reset()

    with TestClient(app) as c:
        yield c

    app.state.auth_services = None
    limiter.reset()


def create_account(
    engine,
    clock: FakeClock,
    email: str,
    password: str,
    role: Role,
    clinic_id: str = CLINIC_ID,
    **fields,
) -> Account:
    """Insert an account directly, bypassing the registration policy."""
    account = Account(
        email=email,
        password_hash=hash_password(password),
        role=role,
        clinic_id=clinic_id,
        password_expires_at=clock.now + timedelta(days=90),
        created_at=clock.now,
        updated_at=clock.now,
        **fields,
    )
    with Session(engine, expire_on_commit=False) as session:
        session.add(account)
        session.commit()
        session.refresh(account)
    return account


def load_account(engine, account_id) -> Account:
    with Session(engine, expire_on_commit=False) as session:
        return session.get(Account, account_id)


@pytest.fixture(scope="function")
def doctor(test_engine, clock) -> Account:
    """Create a test doctor account."""
    return create_account(test_engine, clock, DOCTOR_EMAIL, DOCTOR_PASSWORD, Role.DOCTOR)


@pytest.fixture(scope="function")
def admin(test_engine, clock) -> Account:
    """Create a test admin account."""
    return create_account(test_engine, clock, ADMIN_EMAIL, ADMIN_PASSWORD, Role.ADMIN)


@pytest.fixture(scope="function")
def enrolled_admin(test_engine, clock) -> Account:
    """Create an admin with TOTP two-factor already enabled."""
    return create_account(
        test_engine,
        clock,
        ADMIN_EMAIL,
        ADMIN_PASSWORD,
        Role.ADMIN,
        two_factor_enabled=True,
        two_factor_method=TwoFactorMethod.TOTP,
        two_factor_secret=ADMIN_TOTP_SECRET,
    )


@pytest.fixture(scope="function")
def inactive_account(test_engine, clock) -> Account:
    """Create an inactive account."""
    return create_account(
        test_engine, clock, "inactive@clinic.test", "Inactive#Secure2024", Role.NURSE, is_active=False
    )


def totp_code(secret: str, clock: FakeClock, steps: int = 0) -> str:
    """Current TOTP code as an authenticator app would show it."""
    moment = clock.now.replace(tzinfo=timezone.utc) + timedelta(seconds=30 * steps)
    return pyotp.TOTP(secret).at(moment)


def login(client: TestClient, email: str, password: str, device_id: str = None):
    return client.post(
        "/api/auth/login",
        json={"email": email, "password": password, "device_id": device_id},
    )


def login_with_two_factor(client: TestClient, email: str, password: str, secret: str, clock: FakeClock) -> dict:
    """Run the two-step login and return the issued tokens."""
    challenge = login(client, email, password).json()
    response = client.post(
        "/api/auth/2fa/verify",
        json={"temp_token": challenge["temp_token"], "code": totp_code(secret, clock)},
    )
    return response.json()["tokens"]


def auth_headers(access_token: str) -> dict:
    """Create authorization headers for authenticated requests."""
    return {"Authorization": f"Bearer {access_token}"}
