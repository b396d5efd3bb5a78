"""FastAPI application wiring for FeedbackHub.

This module bootstraps the HTTP API:

- Configures logging, CORS (optional for the web app), Prometheus metrics
  and rate limiting.
- Installs the error handlers that render :class:`~feedbackhub.errors.BaseError`
  as ``{"success": false, "error": {...}}``.
- Mounts the routers for accounts, organizations, users, customers,
  feedback, OAuth connections, integration health and webhooks.
- Reschedules unfinished integration events on startup and stops the
  processor's retry timers on shutdown.
"""

import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.exc import SQLAlchemyError

from .__version__ import __build_date__, __commit_sha__, __version__
from .app_logging import init_logging
from .core.tenant_middleware import TenantContextMiddleware
from .errors import install_error_handlers
from .integrations.runtime import get_integration_processor, reset_integration_processor
from .routers import (
    customers,
    feedback,
    integration_health,
    integration_metrics,
    integration_sync,
    oauth,
    organizations,
    tenant_accounts,
    users,
    webhooks,
)

load_dotenv()

logger = logging.getLogger(__name__)


def get_client_ip(request: Request) -> str:
    """Extract a best-effort client IP for rate limiting.

    Prefer ``X-Forwarded-For`` (first hop) if present, otherwise use the
    socket peer address. This function is used by SlowAPI to key the limiter.
    """
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


@asynccontextmanager
async def lifespan(_app: FastAPI):
    if os.getenv("DATABASE_URL"):
        try:
            get_integration_processor().recover_pending_events()
        except SQLAlchemyError:
            logger.exception(
                "Could not reschedule unfinished integration events",
                extra={"event_code": "EVENT_RECOVERY_FAILED"},
            )
    yield
    reset_integration_processor()
    logger.info("Integration processor stopped", extra={"event_code": "PROCESSOR_STOPPED"})


_default_limit = os.getenv("RATE_LIMIT_DEFAULT")
limiter = Limiter(key_func=get_client_ip, default_limits=[_default_limit] if _default_limit else [])

app = FastAPI(title="FeedbackHub API", version=__version__, lifespan=lifespan)
init_logging(app)
install_error_handlers(app)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_middleware(SlowAPIMiddleware)
app.add_middleware(TenantContextMiddleware)
# Optional CORS for the web app
web_app_origins = os.getenv("WEB_APP_ORIGINS")
if web_app_origins:
    origins = [o.strip() for o in web_app_origins.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
app.include_router(tenant_accounts.router)
app.include_router(organizations.router)
app.include_router(users.router)
app.include_router(customers.router)
app.include_router(feedback.router)
app.include_router(oauth.router)
app.include_router(integration_health.router)
app.include_router(integration_sync.router)
app.include_router(integration_metrics.router)
app.include_router(webhooks.router)

# Expose Prometheus metrics
Instrumentator().instrument(app).expose(
    app, include_in_schema=False, endpoint="/api/metrics"
)


@app.get("/api/health")
async def health():
    """Liveness and readiness check with a minimal JSON body."""
    return {"status": "ok"}


@app.get("/api/version")
async def version():
    """Return version information for the application."""
    return {
        "version": __version__,
        "build_date": __build_date__,
        "commit_sha": __commit_sha__,
    }


@app.get("/api/config")
async def config():
    """Expose selected frontend configuration from environment variables."""
    return {
        "BRAND_NAME": os.getenv("BRAND_NAME", "FeedbackHub"),
        "POWERED_BY_LABEL": os.getenv("POWERED_BY_LABEL", "Powered by FeedbackHub"),
        "LOGO_URL": os.getenv("LOGO_URL", ""),
        "WEB_APP_URL": os.getenv("WEB_APP_URL", "http://localhost:3000"),
    }
