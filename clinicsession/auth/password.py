"""
ClinicSession - Password Hashing and Complexity Policy

Production-grade password hashing using bcrypt.
Work factor is configurable but defaults to 12 (industry standard).

Security:
- Never log or expose plaintext passwords
- bcrypt includes salt automatically
- bcrypt only reads the first 72 bytes, so longer passwords are refused
- Unknown-account logins still pay for one bcrypt comparison
- Supports hash upgrades on login
"""

import re
from typing import Dict, List, Optional

import bcrypt

from clinicsession.config import settings


# bcrypt silently truncates input beyond this length
BCRYPT_MAX_BYTES = 72

COMMON_PASSWORDS = {
    "password", "password1", "password123", "123456", "12345678",
    "123456789", "qwerty", "qwerty123", "abc123", "letmein",
    "welcome", "welcome1", "admin", "admin123", "iloveyou",
    "monkey", "dragon", "sunshine", "princess", "football",
    "passw0rd", "p@ssw0rd", "p@ssword", "changeme", "trustno1",
    "password123!", "p@ssw0rd1234", "qwerty123456!", "welcome123!@",
}

_SPECIAL_CHARS = re.compile(r"[!@#$%^&*()_+\-=\[\]{};':\"\\|,.<>/?`~]")

_dummy_hashes: Dict[int, str] = {}


def hash_password(password: str, work_factor: Optional[int] = None) -> str:
    """
    Hash a password using bcrypt.

    Args:
        password: Plaintext password
        work_factor: Override BCRYPT_WORK_FACTOR

    Returns:
        bcrypt hash string (includes salt)

    Example:
        >>> hashed = hash_password("SecureP@ss123!")
        >>> hashed.startswith("$2b$")
        True
    """
    rounds = work_factor or settings.BCRYPT_WORK_FACTOR
    salt = bcrypt.gensalt(rounds=rounds)
    hashed = bcrypt.hashpw(password.encode("utf-8"), salt)
    return hashed.decode("utf-8")


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """
    Verify a password against a bcrypt hash.

    Uses constant-time comparison to prevent timing attacks.
    Returns False for malformed hashes and over-long inputs.
    """
    try:
        password_bytes = plain_password.encode("utf-8")
        if len(password_bytes) > BCRYPT_MAX_BYTES:
            return False
        return bcrypt.checkpw(password_bytes, hashed_password.encode("utf-8"))
    except (ValueError, TypeError):
        # Invalid hash format
        return False


def dummy_verify(plain_password: str, work_factor: Optional[int] = None) -> None:
    """
    Burn one bcrypt comparison against a fixed bogus hash.

    Called when the email is unknown so that response time does not
    reveal whether an account exists. The bogus hash uses the same work
    factor as real hashes.
    """
    rounds = work_factor or settings.BCRYPT_WORK_FACTOR
    if rounds not in _dummy_hashes:
        _dummy_hashes[rounds] = hash_password("clinicsession-dummy-password", rounds)
    verify_password(plain_password, _dummy_hashes[rounds])


def needs_rehash(hashed_password: str, target_work_factor: Optional[int] = None) -> bool:
    """
    Check if a password hash needs to be upgraded.

    Returns:
        True if the hash was produced with a lower work factor
        than the configured one, or is not a bcrypt hash at all
    """
    target = target_work_factor or settings.BCRYPT_WORK_FACTOR
    try:
        # bcrypt hash format: $2b$XX$...
        _, work_factor_str, _ = hashed_password.split("$")[1:4]
        return int(work_factor_str) < target
    except (ValueError, IndexError):
        return True


def validate_password_strength(password: str, min_length: Optional[int] = None) -> List[str]:
    """
    Check a candidate password against the complexity policy.

    Args:
        password: Candidate password
        min_length: Override PASSWORD_MIN_LENGTH

    Returns:
        List of human-readable violations; empty when the password is acceptable
    """
    minimum = min_length or settings.PASSWORD_MIN_LENGTH
    errors = []

    if len(password) < minimum:
        errors.append(f"Password must be at least {minimum} characters long")
    if len(password.encode("utf-8")) > BCRYPT_MAX_BYTES:
        errors.append(f"Password must be at most {BCRYPT_MAX_BYTES} bytes long")
    if not re.search(r"[A-Z]", password):
        errors.append("Password must contain at least one uppercase letter")
    if not re.search(r"[a-z]", password):
        errors.append("Password must contain at least one lowercase letter")
    if not re.search(r"\d", password):
        errors.append("Password must contain at least one number")
    if not _SPECIAL_CHARS.search(password):
        errors.append("Password must contain at least one special character")
    if password.lower() in COMMON_PASSWORDS:
        errors.append("Password is too common")

    return errors
