"""
ClinicSession - Authentication Database Models

SQLModel-based models for accounts, refresh tokens and 2FA enrolment.
Uses PostgreSQL for production, SQLite for local development.

Security:
- Passwords stored as bcrypt hashes only
- Refresh tokens and backup codes stored as SHA-256 digests only
- Refresh token rows are never deleted; rotation leaves a replay trail
- All timestamps are naive UTC
"""

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional
from uuid import UUID, uuid4

from sqlmodel import SQLModel, Field
from sqlalchemy import Column, String, Boolean, DateTime, Integer, JSON, Enum as SQLEnum


def utcnow() -> datetime:
    """Current UTC time as a naive datetime (matches stored columns)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Role(str, Enum):
    """
    Clinical roles for RBAC.

    Permissions are deny-by-default; each role has explicit grants.
    """
    ADMIN = "ADMIN"
    DOCTOR = "DOCTOR"
    NURSE = "NURSE"
    PHARMACIST = "PHARMACIST"
    PATIENT = "PATIENT"


class TwoFactorMethod(str, Enum):
    TOTP = "TOTP"
    BACKUP_CODE = "BACKUP_CODE"


class Account(SQLModel, table=True):
    """
    Account used for authentication.

    Attributes:
        id: Unique identifier (UUIDv4)
        email: Login identifier (unique, lower-case)
        password_hash: bcrypt hash (never store plaintext)
        role: RBAC role
        clinic_id: Clinic the account belongs to
        is_active: Soft-delete flag; inactive accounts cannot log in
        two_factor_enabled: Whether logins require a second factor
        two_factor_secret: Base32 TOTP secret once 2FA is enabled
        backup_codes: SHA-256 digests of the unused backup codes
        failed_login_attempts: Consecutive failed logins
        locked_until: Logins are refused until this instant
        password_expires_at: Password must be changed after this instant
        token_version: Bumped on logout/password change to revoke access tokens
    """
    __tablename__ = "accounts"

    id: UUID = Field(
        default_factory=uuid4,
        primary_key=True,
        description="Unique account identifier"
    )
    email: str = Field(
        sa_column=Column(String(255), unique=True, index=True, nullable=False),
        description="Account email address (login identifier)"
    )
    password_hash: str = Field(
        sa_column=Column(String(255), nullable=False),
        description="bcrypt password hash"
    )
    role: Role = Field(
        sa_column=Column(SQLEnum(Role), nullable=False, default=Role.NURSE),
        description="Account role for RBAC"
    )
    clinic_id: str = Field(
        sa_column=Column(String(64), index=True, nullable=False),
        description="Clinic reference"
    )
    is_active: bool = Field(
        default=True,
        sa_column=Column(Boolean, nullable=False, default=True),
    )

    # Two-factor
    two_factor_enabled: bool = Field(
        default=False,
        sa_column=Column(Boolean, nullable=False, default=False),
    )
    two_factor_method: Optional[TwoFactorMethod] = Field(
        default=None,
        sa_column=Column(SQLEnum(TwoFactorMethod), nullable=True),
    )
    two_factor_secret: Optional[str] = Field(
        default=None,
        sa_column=Column(String(64), nullable=True),
    )
    backup_codes: List[str] = Field(
        default_factory=list,
        sa_column=Column(JSON, nullable=False, default=list),
        description="SHA-256 digests of unused backup codes"
    )

    # Lockout
    failed_login_attempts: int = Field(
        default=0,
        sa_column=Column(Integer, nullable=False, default=0),
    )
    last_failed_login_at: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime, nullable=True),
    )
    locked_until: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime, nullable=True),
    )

    # Password lifecycle
    password_expires_at: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime, nullable=True),
    )
    last_password_change_at: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime, nullable=True),
    )
    token_version: int = Field(
        default=0,
        sa_column=Column(Integer, nullable=False, default=0),
    )

    created_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime, nullable=False, default=utcnow),
    )
    updated_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow),
    )

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and self.locked_until > now


class TwoFactorSetup(SQLModel, table=True):
    """
    Pending TOTP enrolment.

    Holds the secret and unconfirmed backup codes until the user proves
    possession of the authenticator. After promotion the record is marked
    verified, its plaintext codes are cleared, and it is kept for audit.
    """
    __tablename__ = "two_factor_setups"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    account_id: UUID = Field(
        foreign_key="accounts.id",
        nullable=False,
        unique=True,
        index=True,
    )
    secret: str = Field(sa_column=Column(String(64), nullable=False))
    backup_codes: List[str] = Field(
        default_factory=list,
        sa_column=Column(JSON, nullable=False, default=list),
    )
    verified: bool = Field(
        default=False,
        sa_column=Column(Boolean, nullable=False, default=False),
    )
    created_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime, nullable=False, default=utcnow),
    )
    updated_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime, nullable=False, default=utcnow),
    )


class RefreshToken(SQLModel, table=True):
    """
    Refresh token issued to an account.

    One row per issued token. Rotation flips is_valid on the old row and
    inserts a successor; replaced_by links the two.

    Attributes:
        id: Unique token identifier
        account_id: Owning account
        token_hash: SHA-256 hash of the token (never store plaintext)
        device_id: Client device tag, if supplied
        is_valid: False once rotated, logged out, or revoked
        issued_at: Token creation timestamp
        expires_at: Token expiration timestamp
        replaced_by: Successor token ID after rotation
    """
    __tablename__ = "refresh_tokens"

    id: UUID = Field(
        default_factory=uuid4,
        primary_key=True,
        description="Unique token identifier"
    )
    account_id: UUID = Field(
        foreign_key="accounts.id",
        nullable=False,
        index=True,
        description="Reference to account"
    )
    token_hash: str = Field(
        sa_column=Column(String(64), unique=True, index=True, nullable=False),
        description="SHA-256 hash of refresh token"
    )
    device_id: Optional[str] = Field(
        default=None,
        sa_column=Column(String(128), nullable=True, index=True),
    )
    is_valid: bool = Field(
        default=True,
        sa_column=Column(Boolean, nullable=False, default=True),
    )
    issued_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime, nullable=False, default=utcnow),
    )
    expires_at: datetime = Field(
        sa_column=Column(DateTime, nullable=False),
    )
    replaced_by: Optional[UUID] = Field(
        default=None,
        description="New token ID if rotated"
    )
