"""
Main FastAPI application.

Donation API with:
- CORS configuration
- Domain error rendering ({"status": "error"|"warning", "message": ...})
- Request ID tracking
- Structured logging
- Prometheus metrics
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from sponsorships import __version__
from sponsorships.cache import create_kv_store
from sponsorships.config import Settings, get_settings
from sponsorships.core.donation_processor import DonationProcessor
from sponsorships.core.errors import (
    DonationError,
    DonationValidationError,
    IdempotencyKeyConflictError,
    PaymentNotCompletedError,
    ReservationTimeoutError,
    SponsorshipNotFoundError,
    WebhookPayloadError,
    WebhookSignatureError,
)
from sponsorships.core.repository import SponsorshipRepository
from sponsorships.database.connection import (
    create_engine_from_settings,
    create_session_factory,
    init_db,
)
from sponsorships.integrations.gateway import GatewayError, GatewayErrorType
from sponsorships.monitoring.health import HealthCheck
from sponsorships.monitoring.logging import setup_logging

from .routes import donation_router, monitoring_router, webhook_router

logger = structlog.get_logger(__name__)

ERROR_STATUS_CODES = {
    DonationValidationError: status.HTTP_400_BAD_REQUEST,
    WebhookSignatureError: status.HTTP_400_BAD_REQUEST,
    WebhookPayloadError: status.HTTP_400_BAD_REQUEST,
    SponsorshipNotFoundError: status.HTTP_404_NOT_FOUND,
    IdempotencyKeyConflictError: status.HTTP_409_CONFLICT,
    PaymentNotCompletedError: status.HTTP_409_CONFLICT,
}


def error_body(message: str, level: str = "error", **extra: Any) -> dict[str, Any]:
    return {"status": level, "message": message, **extra}


async def donation_error_handler(request: Request, exc: DonationError) -> JSONResponse:
    """Render domain errors with the status discriminator clients expect."""
    if isinstance(exc, ReservationTimeoutError):
        logger.warning("api_reservation_timeout", sponsorship_id=exc.sponsorship_id)
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content=error_body(str(exc), "warning", sponsorship_id=exc.sponsorship_id),
        )

    status_code = next(
        (code for cls, code in ERROR_STATUS_CODES.items() if isinstance(exc, cls)),
        status.HTTP_500_INTERNAL_SERVER_ERROR,
    )
    extra: dict[str, Any] = {}
    if isinstance(exc, PaymentNotCompletedError):
        extra["provider_status"] = exc.provider_status
    logger.warning(
        "api_donation_error",
        error=str(exc),
        error_type=type(exc).__name__,
        status_code=status_code,
        path=request.url.path,
    )
    return JSONResponse(status_code=status_code, content=error_body(str(exc), **extra))


async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
    """Provider failures: 503 when worth retrying later, 502 otherwise."""
    status_code = (
        status.HTTP_503_SERVICE_UNAVAILABLE if exc.is_retryable else status.HTTP_502_BAD_GATEWAY
    )
    if exc.error_type is GatewayErrorType.CONFIGURATION:
        status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    logger.error(
        "api_gateway_error",
        provider=exc.provider,
        error_type=exc.error_type.value,
        error=str(exc),
        path=request.url.path,
    )
    return JSONResponse(
        status_code=status_code,
        content=error_body(
            f"Payment provider error ({exc.provider})", error_type=exc.error_type.value
        ),
    )


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    logger.warning("api_request_invalid", path=request.url.path, errors=len(exc.errors()))
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=error_body(
            "Invalid request",
            errors=[
                {"loc": list(err.get("loc", ())), "msg": err.get("msg")} for err in exc.errors()
            ],
        ),
    )


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler for unhandled exceptions."""
    logger.error(
        "unhandled_exception",
        error=str(exc),
        error_type=type(exc).__name__,
        path=request.url.path,
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=error_body("An unexpected error occurred. Please try again later."),
    )


async def add_request_id_middleware(request: Request, call_next: Any) -> Response:
    """Bind a request id into the logging context and echo it back."""
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    start_time = time.monotonic()

    structlog.contextvars.bind_contextvars(
        request_id=request_id,
        method=request.method,
        path=request.url.path,
    )

    try:
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        logger.info(
            "request_completed",
            status_code=response.status_code,
            duration_seconds=round(time.monotonic() - start_time, 4),
        )
        return response
    finally:
        structlog.contextvars.clear_contextvars()


def create_app(
    settings: Optional[Settings] = None,
    processor: Optional[DonationProcessor] = None,
    health_check: Optional[HealthCheck] = None,
) -> FastAPI:
    """
    Build the application.

    When ``processor`` is given it is used as-is and the lifespan only
    handles logging; otherwise the lifespan wires the database, the
    key-value store and both provider gateways.
    """
    settings = settings or get_settings()
    setup_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
        logger.info("application_startup", app_name=settings.app_name, env=settings.app_env)

        if app.state.processor is not None:
            yield
            logger.info("application_shutdown")
            return

        engine = create_engine_from_settings(settings)
        try:
            await init_db(engine)
            logger.info("database_initialized")
        except Exception as e:
            logger.error("database_initialization_failed", error=str(e))
            raise

        session_factory = create_session_factory(engine)
        kv_store = create_kv_store(settings)
        app.state.processor = DonationProcessor.from_settings(
            settings, SponsorshipRepository(session_factory), kv_store
        )
        app.state.health_check = HealthCheck(session_factory, kv_store)

        yield

        logger.info("application_shutdown")
        await app.state.processor.close()
        await kv_store.close()
        await engine.dispose()
        app.state.processor = None
        logger.info("database_connections_closed")

    app = FastAPI(
        title="Sponsorship Payments",
        description=(
            "Donation and sponsorship payments over PayPal and Stripe with idempotent "
            "order creation and webhook reconciliation."
        ),
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.processor = processor
    app.state.health_check = health_check

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_allowed_origins_list(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.middleware("http")(add_request_id_middleware)

    app.add_exception_handler(DonationError, donation_error_handler)
    app.add_exception_handler(GatewayError, gateway_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, global_exception_handler)

    app.include_router(donation_router)
    app.include_router(webhook_router)
    app.include_router(monitoring_router)

    @app.get("/", tags=["root"])
    async def root() -> dict[str, Any]:
        """Root endpoint with API information."""
        return {
            "service": settings.app_name,
            "version": __version__,
            "status": "operational",
            "environment": settings.app_env,
            "health": "/health",
            "metrics": "/metrics",
        }

    return app


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "sponsorships.api.main:create_app",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=settings.api_workers if not settings.debug else 1,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
