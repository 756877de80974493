"""FastAPI application entry point."""
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from rag_mse.core.config import settings, validate_production_settings
from rag_mse.core.structured_logging import (
    CORRELATION_ID_HEADER,
    configure_logging,
    get_correlation_id,
    reset_correlation_context,
    start_correlation_context,
)
from rag_mse.db.session import engine

configure_logging()
logger = logging.getLogger(__name__)

# ============================================================================
# Sentry Integration (optional, for production error tracking)
# ============================================================================

if settings.SENTRY_DSN and settings.ENV != "dev":
    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.ENV,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            SqlalchemyIntegration(),
        ],
        traces_sample_rate=0.1,
        send_default_pii=False,  # Don't send PII to Sentry
    )
    logging.info("Sentry initialized for error tracking")

for problem in validate_production_settings():
    logger.warning("Configuration problem: %s", problem)

# ============================================================================
# Rate Limiting
# ============================================================================

from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from rag_mse.core.rate_limit import limiter


# ============================================================================
# FastAPI App
# ============================================================================

app = FastAPI(
    title="RAG Schießsport MSE API",
    description="Member site API: invitations, password reset, event reminders and the mail outbox",
    version=settings.VERSION,
    docs_url="/docs" if settings.ENV == "dev" else None,
    redoc_url="/redoc" if settings.ENV == "dev" else None,
)

# Add rate limiter
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_middleware(SlowAPIMiddleware)

# CORS middleware - must be added before routers
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,  # Required for cookies
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "X-Requested-With", CORRELATION_ID_HEADER],
    expose_headers=[CORRELATION_ID_HEADER, "Retry-After"],
)


@app.middleware("http")
async def correlation_id_middleware(request: Request, call_next):
    """Bind the caller's correlation id (or a fresh one) for log lines and echo it back."""
    token = start_correlation_context(request.headers.get(CORRELATION_ID_HEADER))
    try:
        response = await call_next(request)
        response.headers[CORRELATION_ID_HEADER] = get_correlation_id() or ""
        return response
    finally:
        reset_correlation_context(token)


# ============================================================================
# Routers
# ============================================================================

from rag_mse.routers import auth, contact, geocode, invitations, notifications, outgoing_emails

# Public token endpoints
app.include_router(auth.router)
app.include_router(invitations.router)
app.include_router(notifications.router)
app.include_router(contact.router)
app.include_router(notifications.settings_router)

# Admin
app.include_router(invitations.admin_router)
app.include_router(notifications.admin_router)
app.include_router(outgoing_emails.router)
app.include_router(geocode.router)


# ============================================================================
# Health Check
# ============================================================================

@app.get("/health")
def health():
    """
    Health check endpoint.

    Verifies database connectivity and returns environment info.
    """
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))
    return {"status": "ok", "env": settings.ENV, "version": settings.VERSION}
