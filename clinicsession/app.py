"""
ClinicSession - FastAPI Application Entrypoint

This module initializes the FastAPI application with:
- CORS and security middleware
- Per-IP rate limiting (slowapi)
- Authentication routes and dependencies
- Database lifecycle management
- Security audit trail

Clinical features mount their own routers and protect them with the
dependencies in clinicsession.auth.dependencies.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi.errors import RateLimitExceeded

from clinicsession import __version__
from clinicsession.auth.container import build_services
from clinicsession.auth.database import get_engine, init_db
from clinicsession.auth.routes import router as auth_router
from clinicsession.config import settings
from clinicsession.gateway.middleware import SecurityMiddleware
from clinicsession.gateway.rate_limit import limiter, rate_limit_exceeded_handler
from clinicsession.logging import get_logger


logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Startup:
        - Initialize SQLModel database (accounts, tokens, security events)
        - Build the session-layer services

    Shutdown:
        - Dispose the engine

    Services already placed on app.state (tests) are left untouched.
    """
    engine = None
    if getattr(app.state, "auth_services", None) is None:
        if not settings.SECRET_KEY:
            raise RuntimeError("SECRET_KEY must be set")
        engine = get_engine(settings.DATABASE_URL)
        init_db(engine)
        app.state.db_engine = engine
        app.state.auth_services = build_services(engine)
        logger.info("services_started", database=engine.url.get_backend_name())

    yield

    if engine is not None:
        engine.dispose()
        logger.info("services_stopped")


app = FastAPI(
    title="ClinicSession",
    description="Authentication and session lifecycle for the clinical platform",
    version=__version__,
    lifespan=lifespan,
)

# CORS - restricted to the configured browser origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "PUT", "PATCH"],
    allow_headers=["Authorization", "Content-Type", "X-Auth-Retry", "X-Correlation-ID"],
)

# Security middleware for request IDs, log correlation and headers
app.add_middleware(SecurityMiddleware)

# Rate limiting on the authentication routes
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)


# Register authentication routes
app.include_router(auth_router, prefix="/api")


@app.get("/health")
@app.get("/api/health")
async def health_check():
    """Health check endpoint for load balancers and the session client."""
    return {"status": "healthy", "version": __version__}


@app.get("/")
async def root():
    """Root endpoint with API information."""
    return {
        "name": "ClinicSession",
        "version": __version__,
        "docs": "/docs",
        "health": "/health",
    }
