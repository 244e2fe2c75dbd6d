"""
ClinicSession - Two-Factor Authentication

TOTP enrolment and login challenge as an explicit state machine:

    DISABLED -> PENDING_SETUP -> ENABLED -> DISABLED

- initiate_setup stores a pending secret; the account is untouched
- confirm_setup promotes the secret only after a valid TOTP code
- challenge_verify completes a password login that returned a temp token
- disable requires a current TOTP code; backup codes are not accepted

Security:
- Backup codes are stored as SHA-256 digests and are single-use
- TOTP accepts one step of clock drift either side
- Challenge failures return the same generic message
"""

import hashlib
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, List, Optional
from uuid import UUID

import pyotp
from sqlmodel import Session as DBSession, select

from clinicsession.audit import SecurityAuditLogger, SecurityEventType
from clinicsession.auth.models import Account, TwoFactorMethod, TwoFactorSetup, utcnow
from clinicsession.auth.token_service import TokenPair, TokenService
from clinicsession.config import Settings, settings
from clinicsession.errors import (
    AccountNotFound,
    InvalidTempToken,
    InvalidTwoFactorCode,
    TwoFactorAlreadyEnabled,
    TwoFactorNotInitiated,
)
from clinicsession.logging import get_logger


logger = get_logger(__name__)

BACKUP_CODE_PATTERN = re.compile(r"^[0-9a-f]{5}-[0-9a-f]{5}$")
TOTP_VALID_WINDOW = 1


class TwoFactorState(str, Enum):
    DISABLED = "DISABLED"
    PENDING_SETUP = "PENDING_SETUP"
    ENABLED = "ENABLED"


@dataclass
class TwoFactorSetupResult:
    secret: str
    provisioning_uri: str
    backup_codes: List[str]


@dataclass
class TwoFactorLoginResult:
    account: Account
    tokens: TokenPair


def generate_backup_codes(count: int) -> List[str]:
    """Generate single-use backup codes formatted xxxxx-xxxxx."""
    codes = []
    for _ in range(count):
        raw = secrets.token_hex(5)
        codes.append(f"{raw[:5]}-{raw[5:]}")
    return codes


def normalize_code(code: str) -> str:
    return code.strip().lower()


def is_backup_code(code: str) -> bool:
    return bool(BACKUP_CODE_PATTERN.match(normalize_code(code)))


def hash_backup_code(code: str) -> str:
    return hashlib.sha256(normalize_code(code).encode("utf-8")).hexdigest()


def verify_totp(secret: str, code: str, at: datetime) -> bool:
    """
    Check a TOTP code at the given instant, allowing one step of drift.

    Args:
        secret: Base32 shared secret
        code: Six-digit code from the authenticator
        at: Naive-UTC instant
    """
    code = code.strip()
    if not code.isdigit():
        return False
    totp = pyotp.TOTP(secret)
    return totp.verify(code, for_time=at.replace(tzinfo=timezone.utc), valid_window=TOTP_VALID_WINDOW)


class TwoFactorService:
    """
    Drives an account through 2FA enrolment, login challenge and removal.

    Args:
        session_factory: Callable returning a new SQLModel Session
        tokens: Token service for temp-token checks and final pairs
        audit: Security event sink
        config: Issuer name and backup code count
        clock: Callable returning the current naive-UTC datetime
    """

    def __init__(
        self,
        session_factory: Callable[[], DBSession],
        tokens: TokenService,
        audit: SecurityAuditLogger,
        config: Settings = settings,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self._tokens = tokens
        self._audit = audit
        self._config = config
        self._clock = clock

    def _load_account(self, db: DBSession, account_id: UUID) -> Account:
        account = db.get(Account, account_id)
        if account is None:
            raise AccountNotFound()
        return account

    def _pending_setup(self, db: DBSession, account_id: UUID):
        return db.exec(
            select(TwoFactorSetup).where(TwoFactorSetup.account_id == account_id)
        ).first()

    async def state(self, account_id: UUID) -> TwoFactorState:
        with self._session_factory() as db:
            account = self._load_account(db, account_id)
            if account.two_factor_enabled:
                return TwoFactorState.ENABLED
            setup = self._pending_setup(db, account_id)
            if setup is not None and not setup.verified:
                return TwoFactorState.PENDING_SETUP
            return TwoFactorState.DISABLED

    async def initiate_setup(self, account_id: UUID) -> TwoFactorSetupResult:
        """
        Start TOTP enrolment.

        Creates or overwrites the pending setup record. The returned
        backup codes do not work until confirm_setup succeeds.

        Raises:
            TwoFactorAlreadyEnabled: 2FA must be disabled first
        """
        now = self._clock()

        with self._session_factory() as db:
            account = self._load_account(db, account_id)
            if account.two_factor_enabled:
                raise TwoFactorAlreadyEnabled()

            secret = pyotp.random_base32()
            uri = pyotp.TOTP(secret).provisioning_uri(
                name=account.email,
                issuer_name=self._config.TOTP_ISSUER,
            )
            codes = generate_backup_codes(self._config.BACKUP_CODES_COUNT)

            setup = self._pending_setup(db, account_id)
            if setup is None:
                setup = TwoFactorSetup(account_id=account_id, secret=secret, created_at=now)
            setup.secret = secret
            setup.backup_codes = codes
            setup.verified = False
            setup.updated_at = now
            db.add(setup)
            db.commit()

        self._audit.record_event(account_id, SecurityEventType.TWO_FACTOR_SETUP_INITIATED)
        return TwoFactorSetupResult(secret=secret, provisioning_uri=uri, backup_codes=codes)

    async def confirm_setup(self, account_id: UUID, code: str) -> List[str]:
        """
        Finish enrolment by proving possession of the authenticator.

        Returns:
            The backup codes, now active. They are not retrievable again.

        Raises:
            TwoFactorNotInitiated: No pending (unverified) setup
            InvalidTwoFactorCode: Code does not match the pending secret
        """
        now = self._clock()

        with self._session_factory() as db:
            account = self._load_account(db, account_id)
            setup = self._pending_setup(db, account_id)
            if setup is None or setup.verified:
                raise TwoFactorNotInitiated()

            valid = verify_totp(setup.secret, code, now)
            if valid:
                codes = list(setup.backup_codes)
                account.two_factor_enabled = True
                account.two_factor_method = TwoFactorMethod.TOTP
                account.two_factor_secret = setup.secret
                account.backup_codes = [hash_backup_code(c) for c in codes]
                account.updated_at = now
                setup.verified = True
                setup.backup_codes = []
                setup.updated_at = now
                db.add(account)
                db.add(setup)
                db.commit()

        if not valid:
            self._audit.record_event(
                account_id,
                SecurityEventType.TWO_FACTOR_VERIFICATION_FAILED,
                {"stage": "setup"},
            )
            raise InvalidTwoFactorCode()

        self._audit.record_event(account_id, SecurityEventType.TWO_FACTOR_ENABLED, {"method": "TOTP"})
        return codes

    async def challenge_verify(
        self, temp_token: str, code: str, device_id: Optional[str] = None
    ) -> TwoFactorLoginResult:
        """
        Complete a 2FA login.

        A code shaped like a backup code is consumed from the account's
        remaining set; anything else is checked as TOTP.

        Raises:
            InvalidTempToken: Temp token bad, expired, or account gone
            InvalidTwoFactorCode: Code rejected
        """
        account_id = self._tokens.verify_temp_token(temp_token)
        now = self._clock()
        method = TwoFactorMethod.BACKUP_CODE if is_backup_code(code) else TwoFactorMethod.TOTP

        with self._session_factory() as db:
            account = db.get(Account, account_id)
            if account is None or not account.is_active or not account.two_factor_enabled:
                raise InvalidTempToken()

            if method == TwoFactorMethod.BACKUP_CODE:
                digest = hash_backup_code(code)
                valid = digest in account.backup_codes
                if valid:
                    account.backup_codes = [c for c in account.backup_codes if c != digest]
                    db.add(account)
                    db.commit()
            else:
                valid = bool(account.two_factor_secret) and verify_totp(account.two_factor_secret, code, now)

        if not valid:
            self._audit.record_event(
                account_id,
                SecurityEventType.TWO_FACTOR_VERIFICATION_FAILED,
                {"stage": "login", "method": method.value, "device_id": device_id},
            )
            raise InvalidTwoFactorCode()

        tokens = await self._tokens.issue_pair(account, device_id)
        details = {"method": method.value, "device_id": device_id}
        if method == TwoFactorMethod.BACKUP_CODE:
            details["backup_codes_remaining"] = len(account.backup_codes)
        self._audit.record_event(account_id, SecurityEventType.TWO_FACTOR_LOGIN_SUCCESS, details)
        return TwoFactorLoginResult(account=account, tokens=tokens)

    async def disable(self, account_id: UUID, code: str) -> bool:
        """
        Turn 2FA off.

        Returns:
            False if 2FA was not enabled, True once disabled

        Raises:
            InvalidTwoFactorCode: code is not a current TOTP code
        """
        now = self._clock()

        with self._session_factory() as db:
            account = self._load_account(db, account_id)
            if not account.two_factor_enabled:
                return False

            valid = (
                not is_backup_code(code)
                and bool(account.two_factor_secret)
                and verify_totp(account.two_factor_secret, code, now)
            )
            if valid:
                account.two_factor_enabled = False
                account.two_factor_method = None
                account.two_factor_secret = None
                account.backup_codes = []
                account.updated_at = now
                db.add(account)
                db.commit()

        if not valid:
            self._audit.record_event(
                account_id,
                SecurityEventType.TWO_FACTOR_VERIFICATION_FAILED,
                {"stage": "disable"},
            )
            raise InvalidTwoFactorCode()

        self._audit.record_event(account_id, SecurityEventType.TWO_FACTOR_DISABLED)
        return True
