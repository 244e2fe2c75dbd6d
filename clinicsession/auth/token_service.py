"""
ClinicSession - Token Issuance & Rotation

Mints access/refresh pairs and rotates refresh tokens.

Rotation:
- Each refresh token is single-use; using it mints a successor
- The old row is flipped with a conditional UPDATE (WHERE is_valid), so
  of two racing refreshes exactly one wins
- A replayed or unknown token is indistinguishable from an expired one

Security:
- Only SHA-256 digests of refresh tokens are stored
- Access tokens carry token_version; logout and password change bump it,
  which invalidates every outstanding access token at once
- Device IDs are a soft signal; mismatches are audited and, when
  DEVICE_MISMATCH_POLICY is "reject", refused
"""

from datetime import datetime, timedelta
from typing import Callable, List, Optional
from uuid import UUID

from pydantic import BaseModel
from sqlalchemy import update
from sqlmodel import Session as DBSession, select

from clinicsession.audit import SecurityAuditLogger, SecurityEventType
from clinicsession.auth.models import Account, RefreshToken, Role, utcnow
from clinicsession.auth.tokens import (
    InvalidTokenError,
    create_access_token,
    create_temp_token,
    generate_refresh_token,
    hash_refresh_token,
    is_well_formed_refresh_token,
    verify_access_token,
    verify_temp_token,
)
from clinicsession.config import Settings, settings
from clinicsession.errors import (
    DeviceMismatch,
    DeviceNotFound,
    InvalidTempToken,
    RefreshTokenInvalidOrExpired,
)
from clinicsession.logging import get_logger


logger = get_logger(__name__)


class TokenPair(BaseModel):
    """Access/refresh pair handed to the client."""
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_at: datetime
    expires_in: int


class AuthContext(BaseModel):
    """
    Identity established from a valid access token.

    This is what protected routes receive from get_current_account.
    """
    account_id: UUID
    email: str
    role: Role
    clinic_id: str
    token_id: str
    device_id: Optional[str] = None
    two_factor_enabled: bool = False


class DeviceInfo(BaseModel):
    device_id: str
    last_issued_at: datetime
    expires_at: datetime


def revoke_account_refresh_tokens(db: DBSession, account_id: UUID) -> int:
    """
    Mark every valid refresh token of an account invalid.

    Runs inside the caller's transaction; the caller commits.

    Returns:
        Number of tokens invalidated
    """
    result = db.exec(
        update(RefreshToken)
        .where(RefreshToken.account_id == account_id)
        .where(RefreshToken.is_valid == True)  # noqa: E712
        .values(is_valid=False)
    )
    return result.rowcount


class TokenService:
    """
    Issues, rotates and revokes session credentials.

    Args:
        session_factory: Callable returning a new SQLModel Session
        audit: Security event sink
        config: Token lifetimes, key and device policy
        clock: Callable returning the current naive-UTC datetime
    """

    def __init__(
        self,
        session_factory: Callable[[], DBSession],
        audit: SecurityAuditLogger,
        config: Settings = settings,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self._audit = audit
        self._config = config
        self._clock = clock

    # ------------------------------------------------------------------
    # Issuance
    # ------------------------------------------------------------------

    def _new_refresh_row(self, account_id: UUID, device_id: Optional[str], now: datetime):
        value = generate_refresh_token()
        row = RefreshToken(
            account_id=account_id,
            token_hash=hash_refresh_token(value),
            device_id=device_id,
            is_valid=True,
            issued_at=now,
            expires_at=now + timedelta(days=self._config.REFRESH_TOKEN_EXPIRE_DAYS),
        )
        return value, row

    def _mint_access(self, account: Account, device_id: Optional[str], now: datetime):
        return create_access_token(
            account_id=account.id,
            role=account.role.value,
            clinic_id=account.clinic_id,
            token_version=account.token_version,
            now=now,
            device_id=device_id,
            config=self._config,
        )

    async def issue_pair(self, account: Account, device_id: Optional[str] = None) -> TokenPair:
        """
        Mint a fresh access token and persist a new refresh token.

        Args:
            account: Authenticated account
            device_id: Client device tag stored on the refresh row

        Returns:
            TokenPair with the plaintext refresh value (returned exactly once)
        """
        now = self._clock()
        refresh_value, row = self._new_refresh_row(account.id, device_id, now)

        with self._session_factory() as db:
            db.add(row)
            db.commit()

        access_token, token_id, expires_at = self._mint_access(account, device_id, now)
        logger.info("token_pair_issued", account_id=str(account.id), token_id=token_id)

        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_value,
            expires_at=expires_at,
            expires_in=int((expires_at - now).total_seconds()),
        )

    def issue_temp_token(self, account_id: UUID) -> str:
        """Short-lived JWT that stands in for a session during the 2FA challenge."""
        return create_temp_token(account_id, self._clock(), self._config)

    def verify_temp_token(self, token: str) -> UUID:
        """
        Returns:
            Account ID carried by the temp token

        Raises:
            InvalidTempToken: On any signature, expiry or type failure
        """
        try:
            return verify_temp_token(token, self._clock(), self._config)
        except InvalidTokenError:
            raise InvalidTempToken()

    # ------------------------------------------------------------------
    # Rotation
    # ------------------------------------------------------------------

    def _reject(self, account_id: Optional[UUID], reason: str, device_id: Optional[str]):
        self._audit.record_event(
            account_id,
            SecurityEventType.TOKEN_REFRESH_REJECTED,
            {"reason": reason, "device_id": device_id},
        )
        return RefreshTokenInvalidOrExpired(reason)

    async def refresh(self, refresh_token: str, device_id: Optional[str] = None) -> TokenPair:
        """
        Rotate a refresh token.

        Args:
            refresh_token: Plaintext refresh value presented by the client
            device_id: Device the client claims to be

        Returns:
            New TokenPair; the presented token is no longer valid

        Raises:
            RefreshTokenInvalidOrExpired: Malformed, unknown, reused, expired,
                lost a rotation race, or the account is gone/inactive
            DeviceMismatch: Device differs and DEVICE_MISMATCH_POLICY is "reject"
        """
        if not is_well_formed_refresh_token(refresh_token):
            raise self._reject(None, "malformed", device_id)

        now = self._clock()
        token_hash = hash_refresh_token(refresh_token)

        with self._session_factory() as db:
            stored = db.exec(
                select(RefreshToken)
                .where(RefreshToken.token_hash == token_hash)
                .where(RefreshToken.is_valid == True)  # noqa: E712
                .where(RefreshToken.expires_at > now)
            ).first()

            if stored is None:
                raise self._reject(None, "not_found_or_expired", device_id)

            account = db.get(Account, stored.account_id)
            if account is None or not account.is_active:
                stored.is_valid = False
                db.add(stored)
                db.commit()
                raise self._reject(stored.account_id, "user_missing", device_id)

            if device_id and stored.device_id and device_id != stored.device_id:
                details = {"stored_device_id": stored.device_id, "device_id": device_id}
                if self._config.DEVICE_MISMATCH_POLICY == "reject":
                    self._audit.record_event(
                        account.id, SecurityEventType.DEVICE_ID_MISMATCH_REJECTED, details
                    )
                    raise DeviceMismatch()
                self._audit.record_event(
                    account.id, SecurityEventType.DEVICE_ID_MISMATCH_ALLOWED, details
                )

            successor_device = device_id or stored.device_id
            refresh_value, successor = self._new_refresh_row(account.id, successor_device, now)

            result = db.exec(
                update(RefreshToken)
                .where(RefreshToken.id == stored.id)
                .where(RefreshToken.is_valid == True)  # noqa: E712
                .values(is_valid=False, replaced_by=successor.id)
            )
            if result.rowcount != 1:
                # A concurrent refresh consumed this token first
                db.rollback()
                raise self._reject(account.id, "not_found_or_expired", device_id)

            db.add(successor)
            db.commit()

        access_token, token_id, expires_at = self._mint_access(account, successor_device, now)
        self._audit.record_event(
            account.id,
            SecurityEventType.TOKEN_REFRESHED,
            {"token_id": token_id, "device_id": successor_device},
        )

        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_value,
            expires_at=expires_at,
            expires_in=int((expires_at - now).total_seconds()),
        )

    # ------------------------------------------------------------------
    # Revocation
    # ------------------------------------------------------------------

    async def logout(self, account_id: UUID) -> int:
        """
        End every session of an account.

        Invalidates all refresh tokens and bumps token_version so
        outstanding access tokens stop authenticating.

        Returns:
            Number of refresh tokens invalidated
        """
        with self._session_factory() as db:
            count = revoke_account_refresh_tokens(db, account_id)
            account = db.get(Account, account_id)
            if account is not None:
                account.token_version += 1
                db.add(account)
            db.commit()

        self._audit.record_event(
            account_id, SecurityEventType.USER_LOGOUT, {"revoked_tokens": count}
        )
        return count

    async def list_devices(self, account_id: UUID) -> List[DeviceInfo]:
        """Distinct devices holding a valid refresh token, most recent first."""
        now = self._clock()
        with self._session_factory() as db:
            rows = db.exec(
                select(RefreshToken)
                .where(RefreshToken.account_id == account_id)
                .where(RefreshToken.is_valid == True)  # noqa: E712
                .where(RefreshToken.expires_at > now)
                .where(RefreshToken.device_id != None)  # noqa: E711
                .order_by(RefreshToken.issued_at.desc())
            ).all()

        devices = {}
        for row in rows:
            if row.device_id not in devices:
                devices[row.device_id] = DeviceInfo(
                    device_id=row.device_id,
                    last_issued_at=row.issued_at,
                    expires_at=row.expires_at,
                )
        return list(devices.values())

    async def revoke_device(self, account_id: UUID, device_id: str) -> int:
        """
        Invalidate every refresh token an account holds on one device.

        Raises:
            DeviceNotFound: If the device had no valid tokens
        """
        with self._session_factory() as db:
            result = db.exec(
                update(RefreshToken)
                .where(RefreshToken.account_id == account_id)
                .where(RefreshToken.device_id == device_id)
                .where(RefreshToken.is_valid == True)  # noqa: E712
                .values(is_valid=False)
            )
            count = result.rowcount
            db.commit()

        if count == 0:
            raise DeviceNotFound()

        self._audit.record_event(
            account_id,
            SecurityEventType.DEVICE_REVOKED,
            {"device_id": device_id, "revoked_tokens": count},
        )
        return count

    # ------------------------------------------------------------------
    # Session validation
    # ------------------------------------------------------------------

    async def authenticate(self, access_token: str) -> Optional[AuthContext]:
        """
        Resolve an access token to the caller's identity.

        Checks signature, expiry, token type, that the account still
        exists and is active, and that token_version is current.

        Returns:
            AuthContext, or None when the token does not authenticate
        """
        try:
            payload = verify_access_token(access_token, self._clock(), self._config)
            account_id = UUID(payload.sub)
        except (InvalidTokenError, ValueError):
            return None

        with self._session_factory() as db:
            account = db.get(Account, account_id)

        if account is None or not account.is_active:
            return None
        if account.token_version != payload.ver:
            return None

        return AuthContext(
            account_id=account.id,
            email=account.email,
            role=account.role,
            clinic_id=account.clinic_id,
            token_id=payload.jti,
            device_id=payload.did,
            two_factor_enabled=account.two_factor_enabled,
        )
