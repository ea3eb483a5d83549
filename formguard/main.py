"""FastAPI application entry point."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from formguard.core.config import settings
from formguard.core.exceptions import FormGuardError
from formguard.db.session import engine
from formguard.services.storage import ensure_storage_dirs

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
        send_default_pii=False,  # Submitter IPs and field values stay out of Sentry
    )
    logging.info("Sentry initialized for error tracking")

# ============================================================================
# Rate Limiting
# ============================================================================

from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from formguard.core.rate_limit import limiter


@asynccontextmanager
async def lifespan(app: FastAPI):
    ensure_storage_dirs()
    yield


# ============================================================================
# FastAPI App
# ============================================================================

app = FastAPI(
    title="FormGuard API",
    description="Hardened public form submission service",
    version=settings.VERSION,
    docs_url="/docs" if settings.ENV == "dev" else None,
    redoc_url="/redoc" if settings.ENV == "dev" else None,
    lifespan=lifespan,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(FormGuardError)
async def formguard_error_handler(request: Request, exc: FormGuardError):
    """Render pipeline errors with their public message only."""
    logger.info("Request rejected: %s", type(exc).__name__)
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.public_message, "errors": getattr(exc, "errors", {})},
    )


# CORS middleware - must be added before routers
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,  # Required for the session cookie
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "X-CSRF-Token", "X-Requested-With"],
)

# ============================================================================
# Routers
# ============================================================================

from formguard.routers import forms_public

app.include_router(forms_public.router)


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
