"""FastAPI Application Entry Point."""

import logging
import os

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from app.api.deps import close_billing_clients
from app.core.config import settings
from app.core.exceptions import (
    AuthFailureError,
    BillingError,
    ConflictError,
    CouponUnavailableError,
    CredentialsMissingError,
    InvalidTransitionError,
    NotFoundError,
    ProviderUnavailableError,
    RefundWindowExpiredError,
)
from app.core.rate_limit import limiter

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Initialize Sentry for error tracking
# IMPORTANT: Must be done BEFORE creating FastAPI app
if settings.SENTRY_DSN:
    import sentry_sdk
    from sentry_sdk.integrations.celery import CeleryIntegration
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.redis import RedisIntegration
    from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.SENTRY_ENVIRONMENT,
        traces_sample_rate=settings.SENTRY_TRACES_SAMPLE_RATE,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            SqlalchemyIntegration(),
            RedisIntegration(),
            CeleryIntegration(),
        ],
        # Billing payloads carry payer emails and names
        send_default_pii=False,
        release=f"planora-backend@{os.getenv('GIT_COMMIT', 'dev')}",
        attach_stacktrace=True,
        max_breadcrumbs=50,
    )
    logger.info(f"Sentry initialized (environment: {settings.SENTRY_ENVIRONMENT})")
else:
    logger.info("Sentry DSN not set - Error tracking disabled")

# Create FastAPI application
app = FastAPI(
    title=settings.APP_NAME,
    description="Planora - Subscription billing and payment reconciliation",
    version="1.0.0",
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
)

# Configure rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=settings.CORS_ALLOW_CREDENTIALS,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=[
        "Content-Type",
        "Authorization",
        "Accept",
        "Origin",
        "X-Requested-With",
        "X-CSRF-Token",
    ],
    max_age=settings.CORS_MAX_AGE,
)


_BILLING_ERROR_STATUS: list[tuple[type[BillingError], int]] = [
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (InvalidTransitionError, status.HTTP_400_BAD_REQUEST),
    (RefundWindowExpiredError, status.HTTP_400_BAD_REQUEST),
    (CouponUnavailableError, status.HTTP_400_BAD_REQUEST),
    (ConflictError, status.HTTP_409_CONFLICT),
    (ProviderUnavailableError, status.HTTP_502_BAD_GATEWAY),
    (CredentialsMissingError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (AuthFailureError, status.HTTP_503_SERVICE_UNAVAILABLE),
]


@app.exception_handler(BillingError)
async def billing_error_handler(request: Request, exc: BillingError) -> JSONResponse:
    """Map billing errors to HTTP responses."""
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    for error_type, mapped_status in _BILLING_ERROR_STATUS:
        if isinstance(exc, error_type):
            status_code = mapped_status
            break

    if isinstance(exc, InvalidTransitionError):
        detail: dict | str = exc.to_detail()
    else:
        detail = str(exc)

    if status_code >= 500:
        logger.error(f"Billing error on {request.url.path}: {type(exc).__name__}: {exc}")
    else:
        logger.info(f"Billing request refused on {request.url.path}: {exc}")
    return JSONResponse(status_code=status_code, content={"detail": detail})


@app.on_event("shutdown")
async def shutdown_event() -> None:
    """Release provider and pub/sub connections."""
    await close_billing_clients()


@app.get("/api/v1/health", tags=["health"])
async def health_check() -> JSONResponse:
    """Health check endpoint."""
    return JSONResponse(
        status_code=200,
        content={
            "status": "healthy",
            "service": settings.APP_NAME,
            "environment": settings.APP_ENV,
        },
    )


@app.get("/", tags=["root"])
async def root() -> dict[str, str]:
    """Root endpoint."""
    return {
        "message": "Welcome to Planora API",
        "docs": "/api/docs",
        "health": "/api/v1/health",
    }


# Include API v1 routers
from app.api.v1 import api_router

app.include_router(api_router, prefix=settings.API_V1_PREFIX)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )
