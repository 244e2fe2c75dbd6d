"""
ClinicSession - Authentication and Session Lifecycle

Server side: credential verification with lockout, TOTP two-factor,
rotating device-tagged refresh tokens, hash-chained security audit.
Client side: single-flight refresh coordinator, request gate and
cross-context session synchronization.
"""

__version__ = "0.1.0"
