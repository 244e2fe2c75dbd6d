"""
ClinicSession - Token Primitives

Creates and validates the three credentials the session layer hands out:
- Access token: HS256 JWT with account, role, clinic, token version, device
- Temp token: HS256 JWT carrying only the account id, valid for the 2FA challenge
- Refresh token: opaque random value; only its SHA-256 digest is stored

Security:
- Short-lived access tokens (15 minutes default)
- Expiry is checked against the injected clock, not the host clock
- jti enables audit trail correlation
- Refresh values are shape-checked before they ever reach storage
"""

import calendar
import hashlib
import re
import secrets
from datetime import datetime, timedelta
from typing import Optional, Tuple
from uuid import UUID

from jose import jwt, JWTError
from pydantic import BaseModel, Field

from clinicsession.config import Settings, settings


ACCESS_TOKEN_TYPE = "access"
TEMP_TOKEN_TYPE = "2fa"

# secrets.token_urlsafe(48) yields 64 URL-safe characters
REFRESH_TOKEN_BYTES = 48
_REFRESH_TOKEN_SHAPE = re.compile(r"^[A-Za-z0-9_-]{43,128}$")


class InvalidTokenError(Exception):
    """Raised when JWT validation fails."""
    pass


class TokenPayload(BaseModel):
    """
    Access token payload structure.

    Attributes:
        sub: Subject (account ID)
        role: Account role for RBAC
        cid: Clinic ID
        ver: Account token_version at issuance
        did: Device ID the session was opened from
        jti: Unique token ID for audit
        typ: Token type, always "access"
        exp: Expiration (epoch seconds)
        iat: Issued at (epoch seconds)
    """
    sub: str = Field(..., description="Account ID")
    role: str = Field(..., description="Account role")
    cid: str = Field(..., description="Clinic ID")
    ver: int = Field(0, description="Token version")
    did: Optional[str] = Field(None, description="Device ID")
    jti: str = Field(..., description="Token ID for audit")
    typ: str = Field(ACCESS_TOKEN_TYPE)
    exp: int
    iat: int


def _epoch(moment: datetime) -> int:
    # Naive datetimes are UTC throughout the package
    return calendar.timegm(moment.utctimetuple())


def _decode(token: str, now: datetime, config: Settings) -> dict:
    try:
        payload = jwt.decode(
            token,
            config.SECRET_KEY,
            algorithms=[config.JWT_ALGORITHM],
            options={"verify_exp": False},
        )
    except JWTError as e:
        raise InvalidTokenError(f"Token validation failed: {str(e)}")

    exp = payload.get("exp")
    if not isinstance(exp, int) or exp <= _epoch(now):
        raise InvalidTokenError("Token expired")
    return payload


def create_access_token(
    account_id: UUID,
    role: str,
    clinic_id: str,
    token_version: int,
    now: datetime,
    device_id: Optional[str] = None,
    config: Settings = settings,
) -> Tuple[str, str, datetime]:
    """
    Create a new JWT access token.

    Args:
        account_id: Account's unique identifier
        role: Account's RBAC role
        clinic_id: Clinic the account belongs to
        token_version: Current Account.token_version
        now: Issuance instant (naive UTC)
        device_id: Client device tag, if known
        config: Settings providing key, algorithm and lifetime

    Returns:
        Tuple of (encoded JWT string, token ID, expiry instant)
    """
    expire = now + timedelta(minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES)
    token_id = secrets.token_hex(16)

    payload = {
        "sub": str(account_id),
        "role": role,
        "cid": clinic_id,
        "ver": token_version,
        "jti": token_id,
        "typ": ACCESS_TOKEN_TYPE,
        "iat": _epoch(now),
        "exp": _epoch(expire),
    }
    if device_id:
        payload["did"] = device_id

    encoded_jwt = jwt.encode(payload, config.SECRET_KEY, algorithm=config.JWT_ALGORITHM)
    return encoded_jwt, token_id, expire


def verify_access_token(token: str, now: datetime, config: Settings = settings) -> TokenPayload:
    """
    Verify and decode a JWT access token.

    Raises:
        InvalidTokenError: If token is invalid, expired, malformed, or not an access token
    """
    payload = _decode(token, now, config)
    if payload.get("typ") != ACCESS_TOKEN_TYPE:
        raise InvalidTokenError("Not an access token")
    try:
        return TokenPayload(**payload)
    except ValueError as e:
        raise InvalidTokenError(f"Malformed payload: {str(e)}")


def create_temp_token(account_id: UUID, now: datetime, config: Settings = settings) -> str:
    """Create the short-lived token that stands in for a session during the 2FA challenge."""
    expire = now + timedelta(minutes=config.TEMP_TOKEN_EXPIRE_MINUTES)
    payload = {
        "sub": str(account_id),
        "typ": TEMP_TOKEN_TYPE,
        "iat": _epoch(now),
        "exp": _epoch(expire),
    }
    return jwt.encode(payload, config.SECRET_KEY, algorithm=config.JWT_ALGORITHM)


def verify_temp_token(token: str, now: datetime, config: Settings = settings) -> UUID:
    """
    Verify a 2FA temp token.

    Returns:
        Account ID carried by the token

    Raises:
        InvalidTokenError: On bad signature, expiry, wrong type or bad subject
    """
    payload = _decode(token, now, config)
    if payload.get("typ") != TEMP_TOKEN_TYPE:
        raise InvalidTokenError("Not a 2FA token")
    try:
        return UUID(payload["sub"])
    except (KeyError, ValueError, TypeError):
        raise InvalidTokenError("Malformed subject")


def generate_refresh_token() -> str:
    """Generate an opaque refresh token value."""
    return secrets.token_urlsafe(REFRESH_TOKEN_BYTES)


def hash_refresh_token(token: str) -> str:
    """SHA-256 digest of a refresh token, the only form that is persisted."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def is_well_formed_refresh_token(token: Optional[str]) -> bool:
    """Cheap shape check performed before any storage lookup."""
    return isinstance(token, str) and bool(_REFRESH_TOKEN_SHAPE.match(token))
