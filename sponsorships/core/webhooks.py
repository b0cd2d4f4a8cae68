"""
Webhook intake for both payment providers.

Implements:
- Signature verification on the exact raw body (no mutation on failure)
- Provider-agnostic event routing to reconciliation transitions
- Acknowledgement of unmatched and unhandled events
"""
import time
from typing import Any, Awaitable, Callable, Dict, Mapping

import structlog

from sponsorships.core.errors import (
    DonationValidationError,
    WebhookPayloadError,
    WebhookSignatureError,
)
from sponsorships.core.reconciliation import (
    ReconciliationEngine,
    TransitionOutcome,
    TransitionResult,
)
from sponsorships.integrations.gateway import EventKind, PaymentGateway, WebhookEvent
from sponsorships.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

EventHandler = Callable[[WebhookEvent], Awaitable[TransitionResult]]


class WebhookHandler:
    """
    Verifies, parses and dispatches provider webhooks.

    Redelivered events need no dedup store: every transition they trigger is
    a conditional write that becomes a no-op once applied.
    """

    def __init__(
        self,
        gateways: Mapping[str, PaymentGateway],
        reconciliation: ReconciliationEngine,
    ):
        self.gateways = gateways
        self.reconciliation = reconciliation
        self.event_handlers: Dict[EventKind, EventHandler] = {}

        self.register_handler(EventKind.ORDER_COMPLETED, self.handle_order_completed)
        self.register_handler(EventKind.PAYMENT_FAILED, self.handle_payment_failed)
        self.register_handler(EventKind.REFUNDED, self.handle_refunded)

        logger.info("webhook_handler_initialized", providers=sorted(gateways))

    def register_handler(self, kind: EventKind, handler: EventHandler) -> None:
        """Register the coroutine that applies events of ``kind``."""
        self.event_handlers[kind] = handler
        logger.debug("webhook_handler_registered", kind=kind.value)

    async def handle(
        self, provider: str, headers: Mapping[str, str], raw_body: bytes
    ) -> Dict[str, Any]:
        """
        Authenticate and apply one webhook delivery.

        Args:
            provider: "paypal" or "stripe"
            headers: Request headers as received
            raw_body: Request body bytes exactly as received

        Returns:
            Dict[str, Any]: Acknowledgement with the transition outcome

        Raises:
            DonationValidationError: Unknown provider
            WebhookSignatureError: Signature rejected; nothing was written
            WebhookPayloadError: Authenticated body is not a usable event
            GatewayError: Provider-side verification could not be performed
        """
        gateway = self.gateways.get(provider)
        if gateway is None:
            raise DonationValidationError(f"Unsupported payment provider: {provider}")

        start = time.monotonic()
        if not await gateway.verify_webhook_signature(headers, raw_body):
            metrics.record_webhook_signature_failure(provider)
            logger.warning("webhook_signature_invalid", provider=provider, body_size=len(raw_body))
            raise WebhookSignatureError("Invalid webhook signature")

        try:
            event = gateway.parse_webhook_event(raw_body)
        except (ValueError, KeyError, TypeError) as e:
            logger.error("webhook_payload_invalid", provider=provider, error=str(e))
            raise WebhookPayloadError(f"Unparseable {provider} webhook: {e}") from e

        logger.info(
            "processing_webhook_event",
            provider=provider,
            event_id=event.event_id,
            event_type=event.event_type,
            kind=event.kind.value,
        )

        handler = self.event_handlers.get(event.kind)
        if handler is None:
            result = TransitionResult(TransitionOutcome.IGNORED)
        else:
            try:
                result = await handler(event)
            except Exception as e:
                # Surface the failure so the provider redelivers
                logger.error(
                    "webhook_event_processing_failed",
                    provider=provider,
                    event_id=event.event_id,
                    event_type=event.event_type,
                    error=str(e),
                )
                raise

        metrics.record_webhook_event(
            provider, event.event_type or "unknown", result.outcome.value, time.monotonic() - start
        )

        return {
            "status": "ok",
            "provider": provider,
            "event_id": event.event_id,
            "event_type": event.event_type,
            "outcome": result.outcome.value,
            "sponsorship_id": result.sponsorship_id,
        }

    async def handle_order_completed(self, event: WebhookEvent) -> TransitionResult:
        if not event.order_id:
            return self._unmatched(event)
        return await self.reconciliation.complete_order(event.order_id, event.capture_id)

    async def handle_payment_failed(self, event: WebhookEvent) -> TransitionResult:
        if not event.order_id:
            return self._unmatched(event)
        return await self.reconciliation.fail_order(event.order_id, event.failure_reason)

    async def handle_refunded(self, event: WebhookEvent) -> TransitionResult:
        if not event.capture_ids:
            return self._unmatched(event)
        return await self.reconciliation.refund_capture(event.capture_ids)

    @staticmethod
    def _unmatched(event: WebhookEvent) -> TransitionResult:
        logger.warning(
            "webhook_event_missing_reference",
            provider=event.provider,
            event_id=event.event_id,
            event_type=event.event_type,
        )
        return TransitionResult(TransitionOutcome.UNMATCHED)
