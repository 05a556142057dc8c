"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Response, status
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from app.core.config import settings, validate_settings
from app.core.database import engine
from app.core.logging import log_error, setup_logging
from app.core.metrics import render_metrics, set_app_info
from app.core.middleware import (
    CorrelationIdMiddleware,
    MetricsMiddleware,
    RequestLoggingMiddleware,
)
from app.modules.billing import router as billing_router
from app.modules.billing.stripe_client import StripeClient


logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Validate configuration and build long-lived clients.

    A ConfigurationError raised here stops the process before it serves.
    """
    validate_settings(settings)
    app.state.stripe_client = StripeClient.from_settings(settings)
    yield
    await engine.dispose()


app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    description="""
## Coaching Billing API

Subscription and word-usage reconciliation for the coaching platform:

- **Subscriptions**: canonical Stripe subscription per user, default plan provisioning
- **Usage**: word usage per billing cycle, monthly windows for annual plans, history and trends
- **Plan changes**: prorated upgrades, downgrades scheduled for the period end
- **Payment methods**: saved cards and card setup
""",
    openapi_url=f"{settings.API_V1_PREFIX}/openapi.json",
    openapi_tags=[
        {
            "name": "billing",
            "description": "Subscriptions, usage cycles and plan changes",
        },
    ],
    lifespan=lifespan,
)

setup_logging(
    level=settings.LOG_LEVEL if not settings.DEBUG else "DEBUG",
    json_format=settings.LOG_JSON,
)

set_app_info(
    version=settings.VERSION,
    environment="development" if settings.DEBUG else "production",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.add_middleware(MetricsMiddleware)


@app.get("/health", tags=["health"])
async def health_check(response: Response) -> dict:
    """Report whether the usage database is reachable.

    Stripe is not probed; provider outages surface per request as 503s.
    """
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        log_error(logger, "Health check could not reach the database", exception=e)
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return {"status": "unhealthy", "database": "unreachable"}
    return {"status": "healthy", "database": "ok"}


@app.get("/metrics", include_in_schema=False)
async def metrics() -> Response:
    """Prometheus scrape endpoint."""
    body, content_type = render_metrics()
    return Response(content=body, media_type=content_type)


app.include_router(billing_router, prefix=settings.API_V1_PREFIX)
