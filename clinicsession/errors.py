"""
ClinicSession - Error Taxonomy

Every failure the session layer surfaces derives from AuthError.
Routes translate AuthError into an HTTP response using status_code and message.

Security:
- Lockout and password-policy errors carry specific, actionable messages
- 2FA and refresh errors are generic so callers cannot tell which factor failed
"""

from datetime import datetime
from typing import List, Optional


class AuthError(Exception):
    """Base class for authentication and session errors."""

    code = "auth_error"
    status_code = 400
    message = "Authentication error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.message
        super().__init__(self.message)


class InvalidCredentials(AuthError):
    code = "invalid_credentials"
    status_code = 401
    message = "Invalid email or password"


class AccountLocked(AuthError):
    """Raised while locked_until is in the future."""

    code = "account_locked"
    status_code = 423
    message = "Account is temporarily locked. Please try again later."

    def __init__(self, message: Optional[str] = None, locked_until: Optional[datetime] = None):
        super().__init__(message)
        self.locked_until = locked_until


class WeakPassword(AuthError):
    code = "weak_password"
    status_code = 400
    message = "Password does not meet complexity requirements"

    def __init__(self, errors: List[str]):
        super().__init__("; ".join(errors) or None)
        self.errors = errors


class AccountExists(AuthError):
    code = "account_exists"
    status_code = 409
    message = "Email already registered"


class ClinicRequired(AuthError):
    code = "clinic_required"
    status_code = 400
    message = "Clinic ID is required for registration"


class AccountNotFound(AuthError):
    code = "account_not_found"
    status_code = 404
    message = "Account not found"


class WrongCurrentPassword(AuthError):
    code = "wrong_current_password"
    status_code = 400
    message = "Current password is incorrect"


class SameAsCurrentPassword(AuthError):
    code = "same_as_current"
    status_code = 400
    message = "New password must be different from current password"


class InvalidTwoFactorCode(AuthError):
    code = "invalid_two_factor_code"
    status_code = 401
    message = "Invalid verification code"


class InvalidTempToken(AuthError):
    # Same message as InvalidTwoFactorCode; the caller learns nothing about which check failed
    code = "invalid_temp_token"
    status_code = 401
    message = "Invalid verification code"


class TwoFactorNotInitiated(AuthError):
    code = "two_factor_not_initiated"
    status_code = 400
    message = "Two-factor setup not found. Please initiate setup first."


class TwoFactorAlreadyEnabled(AuthError):
    code = "two_factor_already_enabled"
    status_code = 409
    message = "Two-factor authentication is already enabled"


class RefreshTokenInvalidOrExpired(AuthError):
    """
    Refresh rejected.

    reason is one of "malformed", "not_found_or_expired", "user_missing";
    it is recorded in the audit trail but never returned to the caller.
    """

    code = "refresh_token_invalid"
    status_code = 401
    message = "Invalid or expired refresh token"

    def __init__(self, reason: str = "not_found_or_expired"):
        super().__init__()
        self.reason = reason


class DeviceMismatch(AuthError):
    code = "device_mismatch"
    status_code = 401
    message = "Invalid or expired refresh token"


class DeviceNotFound(AuthError):
    code = "device_not_found"
    status_code = 404
    message = "Device not found or already revoked"


class NetworkFailure(AuthError):
    """Transient transport failure; retryable."""

    code = "network_failure"
    status_code = 503
    message = "Network failure"


class TerminalAuthFailure(AuthError):
    """Non-retryable; the caller must drop the session and return to login."""

    code = "terminal_auth_failure"
    status_code = 401
    message = "Authentication required"
