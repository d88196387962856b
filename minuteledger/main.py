"""
FastAPI application for the minute ledger service.

Provides REST API for:
- Signed billing webhooks (subscription state)
- Upload registration and completion (usage minutes)
- Usage summaries and quota checks
- Health monitoring and metrics

Services are built once per application in the lifespan and live on
app.state; handlers reach them through small dependency functions.
"""

from contextlib import asynccontextmanager

from fastapi import APIRouter, FastAPI, Request, Response, status
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from minuteledger.billing.dispatcher import EventDispatcher
from minuteledger.billing.stripe_service import StripeService
from minuteledger.billing.subscriptions import SubscriptionStateHandler
from minuteledger.billing.usage_tracking import UsageLedger
from minuteledger.config import Settings, get_settings
from minuteledger.ingestion.uploads import UploadPipeline
from minuteledger.media.duration import UploadDurationEstimator
from minuteledger.observability.health import (
    HealthChecker,
    LivenessResponse,
    ReadinessResponse,
)
from minuteledger.observability.logging import configure_logging, get_logger
from minuteledger.observability.logging_middleware import (
    SlowRequestLogger,
    StructuredLoggingMiddleware,
)
from minuteledger.observability.metrics import generate_metrics
from minuteledger.observability.middleware import PrometheusMiddleware, RequestSizeLimitMiddleware
from minuteledger.rate_limits import configure_rate_limits
from minuteledger.routers import uploads_router, usage_router, webhooks_router
from minuteledger.storage.database import LedgerDatabase, StoreError, WriteConflict
from minuteledger.webhooks.signing import SignatureVerifier

logger = get_logger(__name__)

system_router = APIRouter()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan: build services on startup, release them on shutdown.
    """
    settings: Settings = app.state.settings
    db: LedgerDatabase | None = None

    logger.info("=== Minute Ledger Service Starting ===")
    settings.validate_configuration()

    try:
        logger.info("Initializing ledger database...", path=settings.storage.database_path)
        db = LedgerDatabase(
            db_path=settings.storage.database_path,
            busy_timeout_seconds=settings.storage.busy_timeout_seconds,
        )
        await db.initialize()
        logger.info("✓ Ledger database ready")

        stripe_service = StripeService(settings.stripe, db)
        subscription_handler = SubscriptionStateHandler(db, stripe_service, settings.ledger)
        app.state.db = db
        app.state.stripe_service = stripe_service
        app.state.dispatcher = EventDispatcher(db, subscription_handler.handlers())
        app.state.signature_verifier = SignatureVerifier(
            settings.stripe.webhook_secret,
            tolerance_seconds=settings.stripe.signature_tolerance_seconds,
        )
        logger.info(
            "✓ Billing webhooks ready",
            provider_lookups=stripe_service.is_enabled,
            signature_header=settings.stripe.signature_header,
        )

        usage_ledger = UsageLedger(db, settings.ledger)
        app.state.usage_ledger = usage_ledger
        app.state.upload_pipeline = UploadPipeline(
            db=db,
            ledger=usage_ledger,
            estimator=UploadDurationEstimator(settings.media),
            config=settings.ledger,
        )
        app.state.health_checker = HealthChecker(db, settings.media)
        logger.info(
            "✓ Usage ledger ready",
            free_monthly_minutes=settings.ledger.free_monthly_minutes,
            pro_monthly_minutes=settings.ledger.pro_monthly_minutes,
            probe_enabled=settings.media.probe_enabled,
        )

        logger.info("=== Service Ready ===")

        yield

    except Exception as e:
        logger.error("Startup failed", error=str(e), exc_info=True)
        raise

    finally:
        logger.info("=== Shutting down ===")
        if db is not None:
            db.close()
            logger.info("✓ Ledger database closed")
        logger.info("=== Shutdown complete ===")


def create_app(settings: Settings | None = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        settings: Configuration (None = get_settings())

    Returns:
        FastAPI: Configured application (services start in the lifespan)
    """
    settings = settings or get_settings()

    configure_logging(
        log_level=settings.logging.level,
        json_output=settings.logging.json_output,
        colorized=settings.logging.colorized,
        service_name=settings.logging.service_name,
        service_version=settings.logging.service_version,
        environment=settings.logging.environment,
    )

    app = FastAPI(
        title="Minute Ledger API",
        description="Subscription state and transcription-minute metering",
        version=settings.logging.service_version,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.settings = settings

    # Rate limiter state
    app.state.limiter = configure_rate_limits(settings.rate_limit)
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    # Processed in reverse order of registration:
    # RequestSizeLimitMiddleware runs first, StructuredLoggingMiddleware last
    app.add_middleware(StructuredLoggingMiddleware)
    app.add_middleware(
        SlowRequestLogger,
        warning_threshold_ms=settings.logging.slow_request_warning_ms,
        error_threshold_ms=settings.logging.slow_request_error_ms,
        probe_allowance_ms=(
            settings.media.probe_timeout_seconds * 1000 if settings.media.probe_enabled else 0.0
        ),
    )
    app.add_middleware(PrometheusMiddleware)
    app.add_middleware(
        RequestSizeLimitMiddleware,
        max_body_size=settings.service.max_request_body_size,
    )

    app.include_router(webhooks_router)
    app.include_router(uploads_router)
    app.include_router(usage_router)

    app.add_exception_handler(StoreError, store_error_handler)
    app.add_exception_handler(ValueError, validation_error_handler)

    app.include_router(system_router)

    logger.info(
        "Application configured",
        environment=settings.logging.environment,
        rate_limiting=settings.rate_limit.enabled,
        webhook_secret_configured=settings.stripe.is_configured,
    )
    return app


# Exception handlers


async def store_error_handler(request: Request, exc: StoreError):
    """Handle ledger store errors that escaped a route."""
    if isinstance(exc, WriteConflict):
        logger.warning("Write conflict not resolved by retries", path=request.url.path, error=str(exc))
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content={"detail": "Concurrent update, retry the request"},
        )

    logger.error(
        "Ledger store error",
        path=request.url.path,
        method=request.method,
        error=str(exc),
    )
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "Ledger store temporarily unavailable"},
    )


async def validation_error_handler(request: Request, exc: ValueError):
    """Handle validation errors."""
    logger.warning("Validation error", path=request.url.path, error=str(exc))
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": "Validation failed", "error": str(exc)},
    )


# System endpoints


@system_router.get("/health/liveness", response_model=LivenessResponse, tags=["Health"])
async def liveness_probe(request: Request) -> LivenessResponse:
    """
    Liveness probe: is the process alive?

    No I/O; fails only if the service cannot answer at all.
    """
    return await request.app.state.health_checker.check_liveness()


@system_router.get("/health/readiness", response_model=ReadinessResponse, tags=["Health"])
async def readiness_probe(request: Request, response: Response) -> ReadinessResponse:
    """
    Readiness probe: can the ledger store answer a query?

    Returns:
        HTTP 200: Service is ready
        HTTP 503: Service is not ready
    """
    readiness = await request.app.state.health_checker.check_readiness()
    if not readiness.ready:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return readiness


@system_router.get("/metrics", tags=["System"])
async def metrics():
    """
    Prometheus metrics endpoint.

    Metrics include:
    - HTTP request latency, count and in-flight requests
    - Webhook events by kind and outcome, signature rejections by reason
    - Usage minutes recorded and quota-exceeded signals by plan
    - Duration estimation path and probe latency
    """
    metrics_data, content_type = generate_metrics()
    return Response(content=metrics_data, media_type=content_type)


@system_router.get("/", tags=["System"])
async def root(request: Request):
    """Root endpoint with API information."""
    return {
        "service": "Minute Ledger API",
        "version": request.app.version,
        "docs": "/docs",
        "health": "/health/readiness",
    }


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "minuteledger.main:create_app",
        factory=True,
        host=settings.service.host,
        port=settings.service.port,
        reload=settings.service.reload,
        workers=settings.service.workers,
        log_level=settings.logging.level.lower(),
    )
