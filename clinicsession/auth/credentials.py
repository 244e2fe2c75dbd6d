"""
ClinicSession - Credential & Lockout Manager

Registration, password login with timed lockout, and password change.

Lockout:
- Each wrong password increments failed_login_attempts
- Reaching MAX_LOGIN_ATTEMPTS sets locked_until = now + LOCKOUT_MINUTES
- While locked_until is in the future every login is refused, even with
  the correct password, and counters are left untouched
- A successful login resets the counter and clears the lock

Security:
- Unknown emails still cost one bcrypt comparison (dummy hash)
- Optional MIN_LOGIN_RESPONSE_MS pads every outcome to the same latency
- Specific messages for lockout and weak passwords, generic for bad credentials
"""

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional
from uuid import UUID

from sqlalchemy import update
from sqlmodel import Session as DBSession, select

from clinicsession.audit import SecurityAuditLogger, SecurityEventType
from clinicsession.auth.models import Account, Role, utcnow
from clinicsession.auth.password import (
    dummy_verify,
    hash_password,
    needs_rehash,
    validate_password_strength,
    verify_password,
)
from clinicsession.auth.token_service import TokenPair, TokenService, revoke_account_refresh_tokens
from clinicsession.config import Settings, settings
from clinicsession.errors import (
    AccountExists,
    AccountLocked,
    AccountNotFound,
    ClinicRequired,
    InvalidCredentials,
    SameAsCurrentPassword,
    WeakPassword,
    WrongCurrentPassword,
)
from clinicsession.logging import get_logger


logger = get_logger(__name__)

LOCKED_OUT_MESSAGE = "Account locked due to too many failed attempts. Please try again later."


@dataclass
class LoginResult:
    """
    Outcome of a password login.

    Exactly one of tokens / temp_token is set: temp_token when the
    account has 2FA enabled and must pass the challenge first.
    """
    account: Account
    requires_two_factor: bool
    tokens: Optional[TokenPair] = None
    temp_token: Optional[str] = None
    password_expired: bool = False


def normalize_email(email: str) -> str:
    return email.strip().lower()


class CredentialManager:
    """
    Owns the account lifecycle up to token issuance.

    Args:
        session_factory: Callable returning a new SQLModel Session
        tokens: Token service used to mint pairs and temp tokens
        audit: Security event sink
        config: Password and lockout policy
        clock: Callable returning the current naive-UTC datetime
        sleep: Awaitable sleep used for login latency padding
    """

    def __init__(
        self,
        session_factory: Callable[[], DBSession],
        tokens: TokenService,
        audit: SecurityAuditLogger,
        config: Settings = settings,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._session_factory = session_factory
        self._tokens = tokens
        self._audit = audit
        self._config = config
        self._clock = clock
        self._sleep = sleep

    def password_expired(self, account: Account) -> bool:
        return account.password_expires_at is not None and account.password_expires_at <= self._clock()

    def _check_strength(self, password: str) -> None:
        errors = validate_password_strength(password, self._config.PASSWORD_MIN_LENGTH)
        if errors:
            raise WeakPassword(errors)

    async def register(
        self,
        email: str,
        password: str,
        role: Role = Role.NURSE,
        clinic_id: Optional[str] = None,
    ) -> Account:
        """
        Create a new account.

        Raises:
            ClinicRequired: clinic_id missing or blank
            WeakPassword: Password fails the complexity policy
            AccountExists: Email already registered
        """
        if not clinic_id or not clinic_id.strip():
            raise ClinicRequired()
        self._check_strength(password)

        email = normalize_email(email)
        now = self._clock()

        with self._session_factory() as db:
            existing = db.exec(select(Account).where(Account.email == email)).first()
            if existing:
                raise AccountExists()

            account = Account(
                email=email,
                password_hash=hash_password(password, self._config.BCRYPT_WORK_FACTOR),
                role=role,
                clinic_id=clinic_id.strip(),
                password_expires_at=now + timedelta(days=self._config.PASSWORD_EXPIRY_DAYS),
                last_password_change_at=now,
                created_at=now,
                updated_at=now,
            )
            db.add(account)
            db.commit()
            db.refresh(account)

        self._audit.record_event(
            account.id,
            SecurityEventType.USER_REGISTERED,
            {"role": account.role.value, "clinic_id": account.clinic_id},
        )
        return account

    async def login(self, email: str, password: str, device_id: Optional[str] = None) -> LoginResult:
        """
        Authenticate with email and password.

        Returns:
            LoginResult; with 2FA enabled it carries a temp token instead of tokens

        Raises:
            InvalidCredentials: Unknown email, wrong password, or inactive account
            AccountLocked: Account is locked, or this failure triggered the lock
        """
        started = time.monotonic()
        try:
            return await self._login(email, password, device_id)
        finally:
            pad_ms = self._config.MIN_LOGIN_RESPONSE_MS
            if pad_ms > 0:
                remaining = pad_ms / 1000.0 - (time.monotonic() - started)
                if remaining > 0:
                    await self._sleep(remaining)

    def _record_failure(self, db: DBSession, account_id: UUID, now: datetime) -> int:
        """Increment the failure counter in the database and return the new count."""
        db.exec(
            update(Account)
            .where(Account.id == account_id)
            .values(
                failed_login_attempts=Account.failed_login_attempts + 1,
                last_failed_login_at=now,
            )
        )
        return db.exec(
            select(Account.failed_login_attempts).where(Account.id == account_id)
        ).one()

    async def _login(self, email: str, password: str, device_id: Optional[str]) -> LoginResult:
        email = normalize_email(email)
        now = self._clock()

        with self._session_factory() as db:
            account = db.exec(select(Account).where(Account.email == email)).first()

            if account is None:
                dummy_verify(password, self._config.BCRYPT_WORK_FACTOR)
                self._audit.record_event(
                    None,
                    SecurityEventType.LOGIN_FAILED,
                    {"reason": "unknown_account", "device_id": device_id},
                )
                raise InvalidCredentials()

            if account.is_locked(now):
                self._audit.record_event(
                    account.id,
                    SecurityEventType.LOGIN_ATTEMPT_LOCKED,
                    {"locked_until": account.locked_until.isoformat(), "device_id": device_id},
                )
                raise AccountLocked(locked_until=account.locked_until)

            password_ok = verify_password(password, account.password_hash)

            if not account.is_active:
                self._audit.record_event(
                    account.id,
                    SecurityEventType.LOGIN_FAILED,
                    {"reason": "account_inactive", "device_id": device_id},
                )
                raise InvalidCredentials()

            if not password_ok:
                attempts = self._record_failure(db, account.id, now)
                locked_until = None
                if attempts >= self._config.MAX_LOGIN_ATTEMPTS:
                    locked_until = now + timedelta(minutes=self._config.LOCKOUT_MINUTES)
                    db.exec(
                        update(Account)
                        .where(Account.id == account.id)
                        .values(locked_until=locked_until)
                    )
                db.commit()

                if locked_until is not None:
                    self._audit.record_event(
                        account.id,
                        SecurityEventType.ACCOUNT_LOCKED,
                        {"failed_attempts": attempts, "locked_until": locked_until.isoformat()},
                    )
                    raise AccountLocked(LOCKED_OUT_MESSAGE, locked_until=locked_until)

                self._audit.record_event(
                    account.id,
                    SecurityEventType.LOGIN_FAILED,
                    {
                        "reason": "invalid_password",
                        "failed_attempts": attempts,
                        "device_id": device_id,
                    },
                )
                raise InvalidCredentials()

            account.failed_login_attempts = 0
            account.last_failed_login_at = None
            account.locked_until = None
            if needs_rehash(account.password_hash, self._config.BCRYPT_WORK_FACTOR):
                account.password_hash = hash_password(password, self._config.BCRYPT_WORK_FACTOR)
                logger.info("password_hash_upgraded", account_id=str(account.id))
            db.add(account)
            db.commit()
            db.refresh(account)

        expired = self.password_expired(account)

        if account.two_factor_enabled:
            logger.info("login_requires_two_factor", account_id=str(account.id))
            return LoginResult(
                account=account,
                requires_two_factor=True,
                temp_token=self._tokens.issue_temp_token(account.id),
                password_expired=expired,
            )

        tokens = await self._tokens.issue_pair(account, device_id)
        self._audit.record_event(
            account.id, SecurityEventType.LOGIN_SUCCESS, {"device_id": device_id}
        )
        return LoginResult(
            account=account,
            requires_two_factor=False,
            tokens=tokens,
            password_expired=expired,
        )

    async def change_password(self, account_id: UUID, current_password: str, new_password: str) -> None:
        """
        Replace an account's password.

        Every refresh token is invalidated and token_version bumped, so
        all existing sessions must log in again.

        Raises:
            AccountNotFound: No such account
            WrongCurrentPassword: current_password does not match
            SameAsCurrentPassword: new_password equals the current one
            WeakPassword: new_password fails the complexity policy
        """
        now = self._clock()

        with self._session_factory() as db:
            account = db.get(Account, account_id)
            if account is None:
                raise AccountNotFound()
            if not verify_password(current_password, account.password_hash):
                raise WrongCurrentPassword()
            if current_password == new_password:
                raise SameAsCurrentPassword()
            self._check_strength(new_password)

            account.password_hash = hash_password(new_password, self._config.BCRYPT_WORK_FACTOR)
            account.last_password_change_at = now
            account.password_expires_at = now + timedelta(days=self._config.PASSWORD_EXPIRY_DAYS)
            account.token_version += 1
            revoked = revoke_account_refresh_tokens(db, account.id)
            db.add(account)
            db.commit()

        self._audit.record_event(
            account_id, SecurityEventType.PASSWORD_CHANGED, {"revoked_tokens": revoked}
        )

    async def get_account(self, account_id: UUID) -> Account:
        with self._session_factory() as db:
            account = db.get(Account, account_id)
        if account is None:
            raise AccountNotFound()
        return account
