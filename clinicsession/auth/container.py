"""
ClinicSession - Service Container

Wires the session-layer services around one engine, one clock and one
settings object. The FastAPI app keeps a single AuthServices on
app.state; tests build their own with a fake clock.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable

from clinicsession.audit import SecurityAuditLogger
from clinicsession.auth.credentials import CredentialManager
from clinicsession.auth.database import get_session_factory
from clinicsession.auth.models import utcnow
from clinicsession.auth.token_service import TokenService
from clinicsession.auth.two_factor import TwoFactorService
from clinicsession.config import Settings, settings


@dataclass
class AuthServices:
    audit: SecurityAuditLogger
    tokens: TokenService
    credentials: CredentialManager
    two_factor: TwoFactorService


def build_services(
    engine,
    config: Settings = settings,
    clock: Callable[[], datetime] = utcnow,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> AuthServices:
    """
    Build the service graph over an initialized engine.

    Args:
        engine: SQLAlchemy engine with tables created
        config: Settings shared by every service
        clock: Naive-UTC clock shared by every service
        sleep: Awaitable sleep used for login latency padding
    """
    session_factory = get_session_factory(engine)
    audit = SecurityAuditLogger(session_factory, clock=clock)
    tokens = TokenService(session_factory, audit, config=config, clock=clock)
    return AuthServices(
        audit=audit,
        tokens=tokens,
        credentials=CredentialManager(
            session_factory, tokens, audit, config=config, clock=clock, sleep=sleep
        ),
        two_factor=TwoFactorService(session_factory, tokens, audit, config=config, clock=clock),
    )
