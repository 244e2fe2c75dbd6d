"""
ClinicSession - Rate Limiting

Per-client-IP request limits on the authentication routes that can be
brute-forced without a session: password login, the 2FA challenge,
TOTP enrolment and account registration.

Limits come from Settings (*_RATE_LIMIT, slowapi limit strings) and are
disabled entirely with RATE_LIMIT_ENABLED=false.
"""

from fastapi import Request, status
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from clinicsession.audit import SecurityEventType
from clinicsession.config import settings
from clinicsession.logging import get_logger


logger = get_logger(__name__)

TOO_MANY_REQUESTS_MESSAGE = "Too many requests, please try again later"

limiter = Limiter(key_func=get_remote_address, enabled=settings.RATE_LIMIT_ENABLED)


async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Refuse with 429 and record the refusal in the audit trail."""
    client_ip = get_remote_address(request)
    logger.warning("rate_limit_exceeded", path=request.url.path, client_ip=client_ip, limit=exc.detail)

    services = getattr(request.app.state, "auth_services", None)
    if services is not None:
        services.audit.record_event(
            None,
            SecurityEventType.RATE_LIMIT_EXCEEDED,
            {"path": request.url.path, "client_ip": client_ip, "limit": exc.detail},
        )

    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content={"detail": TOO_MANY_REQUESTS_MESSAGE},
    )
