"""
API routes for donation processing.

Domain errors propagate to the exception handlers registered in
``api.main``; routes only translate HTTP input into processor calls.
"""
from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, Header, Request, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from sponsorships.core.donation_processor import DonationProcessor
from sponsorships.integrations.gateway import PAYPAL, STRIPE
from sponsorships.monitoring.health import HealthCheck

from .schemas import (
    ConfirmDonationRequest,
    ConfirmDonationResponse,
    CreateDonationRequest,
    CreateDonationResponse,
    DonationStatusResponse,
    ErrorResponse,
    HealthCheckResponse,
    WebhookResponse,
)

logger = structlog.get_logger(__name__)

donation_router = APIRouter(prefix="/donations", tags=["donations"])
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
monitoring_router = APIRouter(tags=["monitoring"])


ERROR_DESCRIPTIONS = {
    400: "Invalid request or webhook payload",
    404: "Sponsorship not found",
    409: "Donation conflicts with an earlier request or is not settled yet",
    502: "Payment provider rejected the request",
    503: "Payment provider unavailable",
}


def _errors(*codes: int) -> Dict[int, Dict[str, Any]]:
    """OpenAPI entries for the error bodies rendered by the app's exception handlers."""
    return {code: {"model": ErrorResponse, "description": ERROR_DESCRIPTIONS[code]} for code in codes}


def get_processor(request: Request) -> DonationProcessor:
    return request.app.state.processor


def get_health_check(request: Request) -> Optional[HealthCheck]:
    return request.app.state.health_check


@donation_router.post(
    "/create",
    response_model=CreateDonationResponse,
    responses=_errors(400, 409, 502, 503),
    summary="Create a donation",
    description="Create a sponsorship and its provider order; idempotent per idempotency key",
)
async def create_donation(
    body: CreateDonationRequest,
    processor: DonationProcessor = Depends(get_processor),
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
    user_email: Optional[str] = Header(default=None, alias="X-User-Email"),
) -> Dict[str, Any]:
    """
    Create a new donation.

    Repeating the request with the same idempotency key (body field or
    Idempotency-Key header) returns the original order.
    """
    logger.info(
        "api_create_donation_request",
        provider=body.provider,
        amount=str(body.amount),
        currency=body.currency,
    )

    return await processor.create_donation(
        identity=user_id,
        sponsor_type=body.sponsor_type,
        target_identifier=body.target_identifier,
        amount=body.amount,
        currency=body.currency,
        message=body.message,
        idempotency_key=body.idempotency_key or idempotency_key,
        provider=body.provider,
        email=body.email or user_email,
    )


@donation_router.post(
    "/confirm",
    response_model=ConfirmDonationResponse,
    responses=_errors(400, 404, 409, 502, 503),
    summary="Confirm a donation",
    description="Capture or verify the provider order and complete the sponsorship",
)
async def confirm_donation(
    body: ConfirmDonationRequest,
    processor: DonationProcessor = Depends(get_processor),
) -> Dict[str, Any]:
    logger.info("api_confirm_donation_request", order_id=body.order_id)
    return await processor.confirm_donation(body.order_id)


@donation_router.get(
    "/{sponsorship_id}",
    response_model=DonationStatusResponse,
    responses=_errors(404),
    summary="Get donation status",
)
async def get_donation(
    sponsorship_id: int,
    processor: DonationProcessor = Depends(get_processor),
    user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
) -> Dict[str, Any]:
    """Get donation status by id; used to re-query after an ambiguous create."""
    return await processor.get_donation(sponsorship_id, user_id)


async def _handle_webhook(provider: str, request: Request, processor: DonationProcessor) -> Dict[str, Any]:
    # Signatures cover the exact bytes received, so read the body before any parsing
    body = await request.body()
    logger.info("api_webhook_received", provider=provider, body_size=len(body))
    return await processor.handle_webhook(provider, dict(request.headers), body)


@webhook_router.post(
    "/paypal",
    response_model=WebhookResponse,
    responses=_errors(400, 502, 503),
    summary="PayPal webhook endpoint",
)
async def paypal_webhook(
    request: Request,
    processor: DonationProcessor = Depends(get_processor),
) -> Dict[str, Any]:
    return await _handle_webhook(PAYPAL, request, processor)


@webhook_router.post(
    "/stripe",
    response_model=WebhookResponse,
    responses=_errors(400, 502, 503),
    summary="Stripe webhook endpoint",
)
async def stripe_webhook(
    request: Request,
    processor: DonationProcessor = Depends(get_processor),
) -> Dict[str, Any]:
    return await _handle_webhook(STRIPE, request, processor)


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check database and key-value store health",
)
async def health(health_check: Optional[HealthCheck] = Depends(get_health_check)) -> Any:
    """Health check endpoint for monitoring."""
    if health_check is None:
        return {"status": "alive", "message": "Application is running"}

    result = await health_check.check_all()
    if result["status"] != "healthy":
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
