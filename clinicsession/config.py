"""
ClinicSession - Configuration Management

Centralized configuration using Pydantic Settings.
All secrets and connection strings are loaded from environment variables.

Security: No secrets are hardcoded. Use .env for local development.
"""

from typing import List

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """
    Server-side settings loaded from environment variables.

    Attributes:
        SECRET_KEY: HMAC key used to sign access and temp tokens
        ACCESS_TOKEN_EXPIRE_MINUTES: Access token lifetime
        REFRESH_TOKEN_EXPIRE_DAYS: Refresh token lifetime
        MAX_LOGIN_ATTEMPTS: Failed logins before the account is locked
        LOCKOUT_MINUTES: How long a locked account stays locked
        DEVICE_MISMATCH_POLICY: "allow" logs refresh device mismatches, "reject" refuses them
        RATE_LIMIT_ENABLED: Per-IP limits on login, 2FA and registration routes
        DATABASE_URL: Credential store connection string
        ALLOWED_ORIGINS: CORS allowed origins for the browser client
    """

    # Security
    SECRET_KEY: str = ""  # Must be set via environment
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 15  # Short-lived tokens
    REFRESH_TOKEN_EXPIRE_DAYS: int = 7
    TEMP_TOKEN_EXPIRE_MINUTES: int = 10  # 2FA login challenge window

    # Passwords
    BCRYPT_WORK_FACTOR: int = 12
    PASSWORD_MIN_LENGTH: int = 12
    PASSWORD_EXPIRY_DAYS: int = 90

    # Lockout
    MAX_LOGIN_ATTEMPTS: int = 5
    LOCKOUT_MINUTES: int = 15
    MIN_LOGIN_RESPONSE_MS: int = 0  # 0 disables login latency padding

    # Two-factor
    BACKUP_CODES_COUNT: int = 10
    TOTP_ISSUER: str = "ClinicSession"

    # Refresh token device binding
    DEVICE_MISMATCH_POLICY: str = "allow"

    # Rate limits (slowapi limit strings, per client IP)
    RATE_LIMIT_ENABLED: bool = True
    LOGIN_RATE_LIMIT: str = "5/15 minutes"
    TWO_FACTOR_VERIFY_RATE_LIMIT: str = "5/5 minutes"
    TWO_FACTOR_SETUP_RATE_LIMIT: str = "5/minute"
    REGISTER_RATE_LIMIT: str = "5/hour"

    # Database (PostgreSQL for production, SQLite for development)
    DATABASE_URL: str = "sqlite:///./clinicsession.db"
    DB_POOL_SIZE: int = 5
    DB_MAX_OVERFLOW: int = 10

    # CORS
    ALLOWED_ORIGINS: List[str] = ["http://localhost:3000"]

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True
    LOG_DEV_MODE: bool = False

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


class ClientSettings(BaseSettings):
    """
    Settings for the session client (refresh coordinator and request gate).

    Attributes:
        base_url: Origin of the ClinicSession API
        refresh_lead_seconds: Refresh this long before the access token expires
        max_refresh_attempts: Attempts per refresh before the session is dropped
        retry_delay_seconds: Fixed pause between refresh attempts
        request_timeout_seconds: Upper bound for every network call
        activity_check_seconds: Interval of the background expiry check
        idle_timeout_seconds: Drop the session after this long without user activity (0 disables)
    """

    base_url: str = "http://localhost:8000"
    refresh_lead_seconds: int = 5 * 60
    max_refresh_attempts: int = 3
    retry_delay_seconds: float = 1.0
    request_timeout_seconds: float = 10.0
    activity_check_seconds: float = 60.0
    idle_timeout_seconds: float = 30 * 60

    class Config:
        env_prefix = "CLINICSESSION_CLIENT_"


settings = Settings()
