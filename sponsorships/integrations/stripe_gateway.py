"""
Stripe Checkout gateway.

Implements:
- Checkout Session creation with an idempotency key
- Payment confirmation by reading the session and its PaymentIntent
- Webhook signature verification on the raw request body
- Error classification and circuit breaker
"""
import asyncio
import time
from decimal import Decimal
from typing import Any, Callable, Dict, Mapping, Optional, TypeVar

import stripe
import structlog

from sponsorships.config import Settings, get_settings
from sponsorships.integrations.gateway import (
    STRIPE,
    CircuitBreaker,
    CreatedOrder,
    EventKind,
    GatewayError,
    GatewayErrorType,
    OrderConfirmation,
    PaymentGateway,
    WebhookEvent,
    decode_event,
    to_minor_units,
)
from sponsorships.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

T = TypeVar("T")

COMPLETED_SESSION_EVENTS = {
    "checkout.session.completed",
    "checkout.session.async_payment_succeeded",
}
REFUND_EVENTS = {"charge.refunded", "charge.refund.updated"}


def _object_id(value: Any) -> Optional[str]:
    """Return the id of an expanded Stripe object, or the value itself if unexpanded."""
    if value is None or isinstance(value, str):
        return value
    if isinstance(value, Mapping):
        return value.get("id")
    return getattr(value, "id", None)


class StripeGateway(PaymentGateway):
    """
    Stripe API wrapper behind the shared gateway contract.

    The stripe SDK is synchronous, so every call runs in a worker thread.
    SDK-level retries are disabled; a create is only ever repeated under the
    same idempotency key by the reservation protocol.
    """

    provider = STRIPE

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()
        stripe.api_key = self.settings.stripe_secret_key
        stripe.api_version = self.settings.stripe_api_version
        stripe.max_network_retries = 0
        stripe.default_http_client = stripe.RequestsClient(
            timeout=self.settings.gateway_timeout_seconds
        )
        self.circuit_breaker = CircuitBreaker(STRIPE)

        logger.info(
            "stripe_gateway_initialized",
            api_version=stripe.api_version,
            test_mode=self.settings.stripe_secret_key.startswith(("sk_test_", "rk_test_")),
        )

    @staticmethod
    def _classify_error(error: stripe.StripeError) -> GatewayErrorType:
        """Classify a Stripe SDK error."""
        if isinstance(error, stripe.RateLimitError):
            return GatewayErrorType.RATE_LIMIT
        elif isinstance(error, stripe.AuthenticationError):
            return GatewayErrorType.CONFIGURATION
        elif isinstance(error, stripe.APIConnectionError):
            # The request may have reached Stripe before the connection failed
            return GatewayErrorType.TIMEOUT
        elif isinstance(
            error,
            (stripe.CardError, stripe.InvalidRequestError, stripe.PermissionError),
        ):
            return GatewayErrorType.PERMANENT
        else:
            # APIError and unknown errors are treated as transient
            return GatewayErrorType.TRANSIENT

    async def _call(self, operation: str, func: Callable[[], T]) -> T:
        """Run a blocking SDK call in a thread, translating SDK errors."""
        if not self.settings.stripe_secret_key:
            raise GatewayError(
                "STRIPE_SECRET_KEY not configured", GatewayErrorType.CONFIGURATION, STRIPE
            )

        start = time.monotonic()
        try:
            result = await asyncio.to_thread(func)
        except stripe.StripeError as e:
            error_type = self._classify_error(e)
            metrics.record_gateway_call(STRIPE, operation, "error", time.monotonic() - start)
            metrics.record_gateway_error(STRIPE, error_type.value)
            logger.error(
                "stripe_api_error",
                operation=operation,
                error_type=error_type.value,
                error_code=getattr(e, "code", None),
                error_message=str(e),
            )
            raise GatewayError(str(e), error_type, STRIPE, e)

        metrics.record_gateway_call(STRIPE, operation, "success", time.monotonic() - start)
        return result

    async def create_order(
        self,
        amount: Decimal,
        currency: str,
        description: str,
        correlation_id: str,
        metadata: Optional[Mapping[str, str]] = None,
    ) -> CreatedOrder:
        """
        Create a Checkout Session for a one-off payment.

        Args:
            amount: Decimal amount in major units
            currency: ISO 4217 code
            description: Line item name shown on the hosted page
            correlation_id: Sent as the Stripe idempotency key
            metadata: Attached to the session

        Returns:
            CreatedOrder: Session id and hosted checkout URL
        """
        frontend_url = self.settings.frontend_url.rstrip("/")
        params: Dict[str, Any] = {
            "mode": "payment",
            "line_items": [
                {
                    "price_data": {
                        "currency": currency.lower(),
                        "product_data": {"name": description[:250]},
                        "unit_amount": to_minor_units(amount, currency),
                    },
                    "quantity": 1,
                }
            ],
            "success_url": f"{frontend_url}/?donation=success&session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": f"{frontend_url}/?donation=cancelled",
            "client_reference_id": correlation_id,
            "metadata": dict(metadata or {}),
        }

        logger.info("creating_checkout_session", amount=str(amount), currency=currency)

        def _create() -> stripe.checkout.Session:
            return stripe.checkout.Session.create(idempotency_key=correlation_id, **params)

        session = await self.circuit_breaker.call(self._call, "create_order", _create)

        logger.info("checkout_session_created", session_id=session.id)

        return CreatedOrder(
            provider_order_id=session.id,
            approval_url=getattr(session, "url", None),
            client_secret=getattr(session, "client_secret", None),
        )

    async def confirm_order(self, provider_order_id: str) -> OrderConfirmation:
        """
        Report whether a Checkout Session has been paid.

        Stripe captures during checkout, so confirmation is a read.
        """

        def _retrieve() -> stripe.checkout.Session:
            return stripe.checkout.Session.retrieve(
                provider_order_id,
                expand=["payment_intent", "payment_intent.latest_charge"],
            )

        session = await self.circuit_breaker.call(self._call, "confirm_order", _retrieve)
        payment_status = getattr(session, "payment_status", None)
        payment_intent = getattr(session, "payment_intent", None)

        capture_id = None
        if payment_intent is not None and not isinstance(payment_intent, str):
            capture_id = _object_id(getattr(payment_intent, "latest_charge", None))
            if capture_id is None:
                charges = getattr(payment_intent, "charges", None)
                data = getattr(charges, "data", None) or []
                capture_id = _object_id(data[0]) if data else None
        capture_id = capture_id or _object_id(payment_intent)

        logger.info(
            "checkout_session_retrieved",
            session_id=provider_order_id,
            payment_status=payment_status,
        )

        return OrderConfirmation(
            paid=payment_status == "paid",
            capture_id=capture_id,
            provider_status=payment_status,
        )

    async def verify_webhook_signature(self, headers: Mapping[str, str], raw_body: bytes) -> bool:
        """Check the Stripe-Signature header against the exact received bytes."""
        secret = self.settings.stripe_webhook_secret
        if not secret:
            raise GatewayError(
                "STRIPE_WEBHOOK_SECRET not configured", GatewayErrorType.CONFIGURATION, STRIPE
            )

        lowered = {k.lower(): v for k, v in headers.items()}
        signature = lowered.get("stripe-signature")
        if not signature:
            logger.warning("stripe_signature_header_missing")
            return False

        try:
            payload = raw_body.decode("utf-8")
            stripe.WebhookSignature.verify_header(
                payload,
                signature,
                secret,
                tolerance=self.settings.stripe_webhook_tolerance_seconds,
            )
        except UnicodeDecodeError:
            logger.warning("stripe_webhook_body_not_utf8")
            return False
        except stripe.SignatureVerificationError as e:
            logger.warning("stripe_signature_verification_failed", error=str(e))
            return False
        return True

    def parse_webhook_event(self, raw_body: bytes) -> WebhookEvent:
        """Map Stripe event payloads onto the state machine's event kinds."""
        event = decode_event(raw_body)
        event_type = event.get("type") or ""
        obj = (event.get("data") or {}).get("object") or {}
        event_id = event.get("id")

        if event_type in COMPLETED_SESSION_EVENTS:
            # A session completed with a delayed payment method is still unpaid
            if obj.get("payment_status") not in (None, "paid"):
                return WebhookEvent(STRIPE, event_id, event_type, EventKind.IGNORED)
            return WebhookEvent(
                provider=STRIPE,
                event_id=event_id,
                event_type=event_type,
                kind=EventKind.ORDER_COMPLETED,
                order_id=obj.get("id"),
                capture_id=_object_id(obj.get("payment_intent")),
            )

        if event_type == "payment_intent.succeeded":
            return WebhookEvent(
                provider=STRIPE,
                event_id=event_id,
                event_type=event_type,
                kind=EventKind.ORDER_COMPLETED,
                order_id=obj.get("id"),
                capture_id=_object_id(obj.get("latest_charge")) or obj.get("id"),
            )

        if event_type == "charge.succeeded":
            return WebhookEvent(
                provider=STRIPE,
                event_id=event_id,
                event_type=event_type,
                kind=EventKind.ORDER_COMPLETED,
                order_id=_object_id(obj.get("payment_intent")),
                capture_id=obj.get("id"),
            )

        if event_type == "payment_intent.payment_failed":
            error = obj.get("last_payment_error") or {}
            return WebhookEvent(
                provider=STRIPE,
                event_id=event_id,
                event_type=event_type,
                kind=EventKind.PAYMENT_FAILED,
                order_id=obj.get("id"),
                failure_reason=error.get("message") or event_type,
            )

        if event_type == "checkout.session.async_payment_failed":
            return WebhookEvent(
                provider=STRIPE,
                event_id=event_id,
                event_type=event_type,
                kind=EventKind.PAYMENT_FAILED,
                order_id=obj.get("id"),
                failure_reason=event_type,
            )

        if event_type in REFUND_EVENTS:
            # charge.refunded carries the charge; charge.refund.updated carries the refund
            if obj.get("object") == "refund":
                # Pending, failed and canceled refunds returned no money
                if obj.get("status") != "succeeded":
                    return WebhookEvent(STRIPE, event_id, event_type, EventKind.IGNORED)
                candidates = [obj.get("charge"), obj.get("payment_intent")]
            else:
                candidates = [obj.get("id"), obj.get("payment_intent")]
            return WebhookEvent(
                provider=STRIPE,
                event_id=event_id,
                event_type=event_type,
                kind=EventKind.REFUNDED,
                capture_ids=tuple(_object_id(c) for c in candidates if c),
            )

        return WebhookEvent(STRIPE, event_id, event_type, EventKind.IGNORED)

