"""
ClinicSession - Authentication Request/Response Schemas

Pydantic models for API request validation and response serialization.
Separates API contracts from database models.
"""

from datetime import datetime
from typing import List, Optional
from uuid import UUID
import re

from pydantic import BaseModel, Field, validator

from clinicsession.auth.models import Role


EMAIL_PATTERN = re.compile(r"^[a-zA-Z0-9_.+-]+@[a-zA-Z0-9-]+\.[a-zA-Z0-9-.]+$")


def _check_email(v: str) -> str:
    """Basic email format validation (allows .local for development)."""
    v = v.strip()
    if not EMAIL_PATTERN.match(v):
        raise ValueError("Invalid email format")
    return v.lower()


class LoginRequest(BaseModel):
    """Request body for POST /auth/login."""
    email: str = Field(..., description="Account email address")
    password: str = Field(..., min_length=1, description="Account password")
    device_id: Optional[str] = Field(None, max_length=128)

    @validator("email")
    def email_format(cls, v):
        return _check_email(v)


class TokenResponse(BaseModel):
    """Access/refresh pair as returned to clients."""
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_at: datetime
    expires_in: int = Field(..., description="Seconds until access token expires")


class AccountResponse(BaseModel):
    """Public view of an account."""
    id: UUID
    email: str
    role: Role
    clinic_id: str
    is_active: bool
    two_factor_enabled: bool
    password_expires_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True


class LoginResponse(BaseModel):
    """
    Response body for POST /auth/login.

    With 2FA enabled: requires_two_factor is true, temp_token is set and
    tokens is null until POST /auth/2fa/verify succeeds.
    """
    account: AccountResponse
    requires_two_factor: bool
    tokens: Optional[TokenResponse] = None
    temp_token: Optional[str] = None
    password_expired: bool = False


class TwoFactorVerifyRequest(BaseModel):
    """Request body for POST /auth/2fa/verify."""
    temp_token: str
    code: str = Field(..., min_length=6, max_length=32)
    device_id: Optional[str] = Field(None, max_length=128)


class TwoFactorVerifyResponse(BaseModel):
    account: AccountResponse
    tokens: TokenResponse


class RefreshRequest(BaseModel):
    """Request body for POST /auth/refresh."""
    refresh_token: str = Field(..., description="Refresh token")
    device_id: Optional[str] = Field(None, max_length=128)


class RegisterRequest(BaseModel):
    """Request body for POST /auth/register (manage:users)."""
    email: str
    password: str
    role: Role = Role.NURSE
    clinic_id: str = Field(..., description="Clinic the account belongs to")

    @validator("email")
    def email_format(cls, v):
        return _check_email(v)


class ChangePasswordRequest(BaseModel):
    current_password: str
    new_password: str


class MeResponse(AccountResponse):
    """Response body for GET /auth/me."""
    password_expired: bool = False


class DeviceResponse(BaseModel):
    device_id: str
    last_issued_at: datetime
    expires_at: datetime


class DevicesResponse(BaseModel):
    devices: List[DeviceResponse]
    total: int


class TwoFactorSetupResponse(BaseModel):
    """Pending enrolment. Backup codes become active only after /2fa/enable."""
    secret: str
    provisioning_uri: str
    backup_codes: List[str]


class TwoFactorCodeRequest(BaseModel):
    """Request body for /2fa/enable and /2fa/disable."""
    code: str = Field(..., min_length=6, max_length=32)


class TwoFactorEnableResponse(BaseModel):
    enabled: bool = True
    backup_codes: List[str]


class TwoFactorStatusResponse(BaseModel):
    state: str
    enabled: bool
    backup_codes_remaining: int = 0


class ErrorResponse(BaseModel):
    """Standard error response."""
    detail: str
    error_code: Optional[str] = None
    request_id: Optional[str] = None
