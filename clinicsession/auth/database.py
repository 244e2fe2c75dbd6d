"""
ClinicSession - Credential Store Engine

Engine and session factory for the accounts, refresh tokens, pending 2FA
enrolments and the security event chain.

- PostgreSQL in production, pool sized from DB_POOL_SIZE / DB_MAX_OVERFLOW
- SQLite for development and tests, one shared connection (StaticPool) so
  an in-memory database outlives individual sessions

Usage:
    engine = get_engine()
    init_db(engine)
    services = build_services(engine)
"""

from typing import Callable, Optional

from sqlmodel import SQLModel, Session, create_engine
from sqlalchemy.pool import StaticPool

from clinicsession.config import settings


def get_engine(database_url: Optional[str] = None, echo: bool = False):
    """Create the engine for database_url (default: settings.DATABASE_URL)."""
    url = database_url or settings.DATABASE_URL

    if url.startswith("sqlite"):
        return create_engine(
            url,
            echo=echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

    return create_engine(
        url,
        echo=echo,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_pre_ping=True,
    )


def init_db(engine) -> None:
    """Create any missing session-layer tables."""
    # Table classes register themselves on import
    from clinicsession.auth.models import Account, TwoFactorSetup, RefreshToken  # noqa: F401
    from clinicsession.audit.models import SecurityEvent  # noqa: F401

    SQLModel.metadata.create_all(engine)


def get_session_factory(engine) -> Callable[[], Session]:
    """
    Create a session factory bound to engine.

    Sessions keep attribute values after commit so services can hand
    loaded rows back to callers once the session is closed.
    """
    def session_factory() -> Session:
        return Session(engine, expire_on_commit=False)

    return session_factory
