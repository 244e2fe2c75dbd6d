"""
ClinicSession - Authentication Package

Session lifecycle for the clinical platform:
- bcrypt password hashing with timed lockout
- TOTP two-factor authentication with single-use backup codes
- Short-lived JWT access tokens, rotating opaque refresh tokens
- RBAC with deny-by-default
- Full security audit trail integration
"""

from clinicsession.auth.models import Account, RefreshToken, Role, TwoFactorSetup

__all__ = [
    "Account",
    "RefreshToken",
    "Role",
    "TwoFactorSetup",
]
