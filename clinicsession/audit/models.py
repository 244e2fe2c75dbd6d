"""
ClinicSession - Security Event Models

Security events are append-only rows in the credential store.
Each row carries the hash of its predecessor, forming a tamper-evident chain.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field as PydanticField
from sqlmodel import SQLModel, Field
from sqlalchemy import Column, String, DateTime, Text, JSON

from clinicsession.auth.models import utcnow


class SecurityEventType(str, Enum):
    """Every state transition of the session layer that is worth auditing."""
    USER_REGISTERED = "USER_REGISTERED"
    LOGIN_SUCCESS = "LOGIN_SUCCESS"
    LOGIN_FAILED = "LOGIN_FAILED"
    LOGIN_ATTEMPT_LOCKED = "LOGIN_ATTEMPT_LOCKED"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
    PASSWORD_CHANGED = "PASSWORD_CHANGED"
    TWO_FACTOR_SETUP_INITIATED = "TWO_FACTOR_SETUP_INITIATED"
    TWO_FACTOR_ENABLED = "TWO_FACTOR_ENABLED"
    TWO_FACTOR_DISABLED = "TWO_FACTOR_DISABLED"
    TWO_FACTOR_LOGIN_SUCCESS = "TWO_FACTOR_LOGIN_SUCCESS"
    TWO_FACTOR_VERIFICATION_FAILED = "TWO_FACTOR_VERIFICATION_FAILED"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"
    TOKEN_REFRESH_REJECTED = "TOKEN_REFRESH_REJECTED"
    DEVICE_ID_MISMATCH_ALLOWED = "DEVICE_ID_MISMATCH_ALLOWED"
    DEVICE_ID_MISMATCH_REJECTED = "DEVICE_ID_MISMATCH_REJECTED"
    DEVICE_REVOKED = "DEVICE_REVOKED"
    USER_LOGOUT = "USER_LOGOUT"
    ACCESS_DENIED = "ACCESS_DENIED"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"


class Severity(str, Enum):
    INFO = "INFO"
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"


DEFAULT_SEVERITY = {
    SecurityEventType.LOGIN_FAILED: Severity.WARNING,
    SecurityEventType.LOGIN_ATTEMPT_LOCKED: Severity.WARNING,
    SecurityEventType.ACCOUNT_LOCKED: Severity.CRITICAL,
    SecurityEventType.TWO_FACTOR_DISABLED: Severity.WARNING,
    SecurityEventType.TWO_FACTOR_VERIFICATION_FAILED: Severity.WARNING,
    SecurityEventType.TOKEN_REFRESH_REJECTED: Severity.WARNING,
    SecurityEventType.DEVICE_ID_MISMATCH_ALLOWED: Severity.WARNING,
    SecurityEventType.DEVICE_ID_MISMATCH_REJECTED: Severity.CRITICAL,
    SecurityEventType.DEVICE_REVOKED: Severity.WARNING,
    SecurityEventType.ACCESS_DENIED: Severity.WARNING,
    SecurityEventType.RATE_LIMIT_EXCEEDED: Severity.WARNING,
}


def default_severity(event_type: SecurityEventType) -> Severity:
    return DEFAULT_SEVERITY.get(event_type, Severity.INFO)


class SecurityEvent(SQLModel, table=True):
    """
    A single audit log entry.

    Rows are only ever inserted. seq orders the chain; hash covers every
    other column plus prev_hash.
    """
    __tablename__ = "security_events"

    seq: Optional[int] = Field(default=None, primary_key=True)
    event_id: str = Field(
        sa_column=Column(String(36), unique=True, nullable=False),
        description="UUID for the event"
    )
    timestamp: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime, nullable=False, index=True),
    )
    event_type: str = Field(sa_column=Column(String(64), nullable=False, index=True))
    severity: str = Field(sa_column=Column(String(16), nullable=False))
    actor_id: Optional[str] = Field(
        default=None,
        sa_column=Column(String(64), nullable=True, index=True),
    )
    description: str = Field(sa_column=Column(Text, nullable=False))
    details: Dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column("metadata", JSON, nullable=False, default=dict),
    )
    prev_hash: str = Field(sa_column=Column(String(64), nullable=False))
    hash: str = Field(sa_column=Column(String(64), nullable=False))


class ChainVerificationResult(BaseModel):
    """Result of audit chain verification."""
    is_valid: bool
    event_count: int
    genesis_hash: str
    final_hash: Optional[str] = None
    broken_at: Optional[str] = PydanticField(
        None,
        description="Event ID where chain broke, if invalid"
    )
