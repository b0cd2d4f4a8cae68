"""
Donation processor composing reservation, gateways and reconciliation.

Orchestrates the donation flow:
1. Validate input
2. Insert or reserve the sponsorship row (idempotency key optional)
3. Create the remote order through the selected provider gateway
4. Confirm payment synchronously or through provider webhooks
"""
import time
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, Mapping, Optional

import structlog

from sponsorships.cache import KeyValueStore
from sponsorships.config import Settings, get_settings
from sponsorships.core.errors import (
    DonationValidationError,
    PaymentNotCompletedError,
    ReservationTimeoutError,
    SponsorshipNotFoundError,
)
from sponsorships.core.reconciliation import ReconciliationEngine
from sponsorships.core.repository import NewSponsorship, SponsorshipRepository
from sponsorships.core.reservation import ReservationManager
from sponsorships.core.state_machine import is_terminal
from sponsorships.core.webhooks import WebhookHandler
from sponsorships.database.models import Sponsorship
from sponsorships.integrations.gateway import (
    PAYPAL,
    STRIPE,
    SUPPORTED_PROVIDERS,
    CreatedOrder,
    GatewayError,
    PaymentGateway,
)
from sponsorships.integrations.paypal_gateway import PayPalGateway
from sponsorships.integrations.stripe_gateway import StripeGateway
from sponsorships.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

ANONYMOUS = "anonymous"
FORBIDDEN_MESSAGE_FRAGMENTS = ("<", ">", "script")
ALREADY_SETTLED_MESSAGE = "Donation was already settled; nothing changed"


def serialize_sponsorship(row: Sponsorship) -> Dict[str, Any]:
    return {
        "sponsorship_id": row.id,
        "status": row.status,
        "sponsor_type": row.sponsor_type,
        "target_identifier": row.target_identifier,
        "amount": str(row.amount),
        "currency": row.currency,
        "provider": row.payment_provider,
        "order_id": row.payment_provider_order_id,
        "capture_id": row.payment_provider_capture_id,
        "message": row.message,
        "created_at": row.created_at.isoformat() if row.created_at else None,
        "completed_at": row.completed_at.isoformat() if row.completed_at else None,
    }


class DonationProcessor:
    """
    Main donation orchestrator.

    Results are plain dicts with a ``status`` discriminator. Idempotency and
    state-machine losses come back as ordinary results; only validation,
    gateway and ambiguous-reservation failures are raised.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        repository: Optional[SponsorshipRepository] = None,
        gateways: Optional[Mapping[str, PaymentGateway]] = None,
        reservation: Optional[ReservationManager] = None,
        reconciliation: Optional[ReconciliationEngine] = None,
        webhook_handler: Optional[WebhookHandler] = None,
    ):
        """
        Initialize donation processor.

        Args:
            settings: Application settings
            repository: Sponsorship repository
            gateways: Provider name -> gateway implementation
            reservation: Optional reservation manager
            reconciliation: Optional reconciliation engine
            webhook_handler: Optional webhook handler
        """
        if repository is None or gateways is None:
            raise ValueError("repository and gateways are required")

        self.settings = settings or get_settings()
        self.repository = repository
        self.gateways = dict(gateways)
        self.reservation = reservation or ReservationManager(
            repository,
            poll_attempts=self.settings.reservation_poll_attempts,
            poll_delay_seconds=self.settings.reservation_poll_delay_seconds,
            lease_seconds=self.settings.reservation_lease_seconds,
        )
        self.reconciliation = reconciliation or ReconciliationEngine(repository)
        self.webhook_handler = webhook_handler or WebhookHandler(self.gateways, self.reconciliation)

        logger.info("donation_processor_initialized", providers=sorted(self.gateways))

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        repository: SponsorshipRepository,
        kv_store: KeyValueStore,
    ) -> "DonationProcessor":
        """Build a processor wired to the real PayPal and Stripe gateways."""
        gateways: Dict[str, PaymentGateway] = {
            PAYPAL: PayPalGateway(settings, kv_store),
            STRIPE: StripeGateway(settings),
        }
        return cls(settings, repository, gateways)

    def validate_donation_request(
        self,
        identity: Optional[str],
        sponsor_type: str,
        target_identifier: Optional[str],
        amount: Any,
        currency: str,
        message: Optional[str],
        provider: str,
        email: Optional[str] = None,
    ) -> NewSponsorship:
        """
        Validate and normalize donation request parameters.

        Returns:
            NewSponsorship: Normalized row fields

        Raises:
            DonationValidationError: If validation fails
        """
        provider = (provider or "").strip().lower()
        if provider not in SUPPORTED_PROVIDERS:
            raise DonationValidationError(
                f"Unsupported payment provider: {provider!r}. Must be one of {list(SUPPORTED_PROVIDERS)}"
            )
        if provider not in self.gateways:
            raise DonationValidationError(f"Payment provider not available: {provider}")

        sponsor_type = (sponsor_type or "").strip()
        if not sponsor_type:
            raise DonationValidationError("Sponsor type is required")
        if len(sponsor_type) > 50:
            raise DonationValidationError("Sponsor type must be at most 50 characters")

        try:
            value = Decimal(str(amount))
        except (InvalidOperation, ValueError):
            raise DonationValidationError("Amount must be a number")
        if not value.is_finite() or value <= 0:
            raise DonationValidationError("Amount must be positive")
        value = value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
        if value < self.settings.donation_min_amount:
            raise DonationValidationError(
                f"Amount must be at least {self.settings.donation_min_amount}"
            )
        if value > self.settings.donation_max_amount:
            raise DonationValidationError(
                f"Amount must be at most {self.settings.donation_max_amount}"
            )

        currency = (currency or "").strip().upper()
        if len(currency) != 3 or not currency.isalpha():
            raise DonationValidationError("Currency must be 3-letter code")

        if message is not None:
            message = message.strip() or None
        if message is not None:
            if len(message) > self.settings.donation_message_max_length:
                raise DonationValidationError(
                    f"Message must be at most {self.settings.donation_message_max_length} characters"
                )
            lowered = message.lower()
            if any(fragment in lowered for fragment in FORBIDDEN_MESSAGE_FRAGMENTS):
                raise DonationValidationError("Message contains invalid characters")

        return NewSponsorship(
            user_id=(identity or "").strip() or ANONYMOUS,
            user_email=(email or "").strip() or None,
            sponsor_type=sponsor_type,
            target_identifier=(target_identifier or "").strip() or None,
            amount=value,
            currency=currency,
            payment_provider=provider,
            message=message,
        )

    def _order_creator(self, fields: NewSponsorship, idempotency_key: Optional[str]):
        """Bind the gateway call used by whoever owns the reservation."""
        gateway = self.gateways[fields.payment_provider]
        description = f"{self.settings.order_description_prefix} - {fields.sponsor_type}"
        if fields.target_identifier:
            description = f"{description} ({fields.target_identifier})"

        async def create_remote(sponsorship_id: int) -> CreatedOrder:
            metadata = {
                "sponsorship_id": str(sponsorship_id),
                "sponsor_type": fields.sponsor_type,
            }
            if idempotency_key:
                metadata["idempotency_key"] = idempotency_key
            return await gateway.create_order(
                amount=fields.amount,
                currency=fields.currency,
                description=description,
                correlation_id=f"sponsorship-{sponsorship_id}",
                metadata=metadata,
            )

        return create_remote

    async def create_donation(
        self,
        identity: Optional[str],
        sponsor_type: str,
        target_identifier: Optional[str],
        amount: Any,
        currency: str = "USD",
        message: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        provider: str = PAYPAL,
        email: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Create a donation and its remote payment order.

        With an idempotency key, concurrent and repeated calls share one row
        and one remote order. Without a key every call creates a new row.

        Returns:
            Dict[str, Any]: ``status``, sponsorship id, order id, approval handle

        Raises:
            DonationValidationError: If input validation fails
            IdempotencyKeyConflictError: If the key belongs to another donation
            ReservationTimeoutError: If another request with the key is still in flight
            GatewayError: If the provider call fails
        """
        start = time.monotonic()
        fields = self.validate_donation_request(
            identity, sponsor_type, target_identifier, amount, currency, message, provider, email
        )
        if idempotency_key is not None:
            idempotency_key = idempotency_key.strip() or None
        if idempotency_key and len(idempotency_key) > 255:
            raise DonationValidationError("Idempotency key must be at most 255 characters")

        logger.info(
            "donation_creation_started",
            provider=fields.payment_provider,
            amount=str(fields.amount),
            currency=fields.currency,
            sponsor_type=fields.sponsor_type,
            has_idempotency_key=idempotency_key is not None,
        )

        create_remote = self._order_creator(fields, idempotency_key)
        try:
            if idempotency_key:
                reserved = await self.reservation.create_or_reserve(
                    idempotency_key, fields, create_remote
                )
                sponsorship_id = reserved.sponsorship_id
                order_id = reserved.provider_order_id
                order = reserved.order
            else:
                sponsorship_id = await self.repository.insert(fields)
                order = await create_remote(sponsorship_id)
                order_id = order.provider_order_id
                await self.repository.assign_order_id(sponsorship_id, order_id)
        except ReservationTimeoutError:
            metrics.record_donation_request(fields.payment_provider, "timeout", float(fields.amount))
            raise
        except GatewayError as e:
            metrics.record_donation_request(fields.payment_provider, "error", float(fields.amount))
            logger.error(
                "donation_gateway_failed",
                provider=e.provider,
                error_type=e.error_type.value,
                error=str(e),
            )
            raise
        finally:
            metrics.record_donation_duration(time.monotonic() - start)

        existing = order is None
        metrics.record_donation_request(
            fields.payment_provider, "existing" if existing else "created", float(fields.amount)
        )
        logger.info(
            "donation_created",
            sponsorship_id=sponsorship_id,
            provider_order_id=order_id,
            existing=existing,
        )

        return {
            "status": "ok",
            "sponsorship_id": sponsorship_id,
            "order_id": order_id,
            "provider": fields.payment_provider,
            "approval_url": order.approval_url if order else None,
            "client_secret": order.client_secret if order else None,
            "existing": existing,
        }

    async def confirm_donation(self, provider_order_id: str) -> Dict[str, Any]:
        """
        Confirm payment of a remote order and complete its sponsorship.

        Replays are safe: a settled row is reported as such without calling
        the provider again.

        Raises:
            SponsorshipNotFoundError: If no sponsorship owns the order id
            PaymentNotCompletedError: If the provider reports the order unpaid
            GatewayError: If the provider call fails
        """
        provider_order_id = (provider_order_id or "").strip()
        if not provider_order_id:
            raise DonationValidationError("Order id is required")

        row = await self.repository.get_by_order_id(provider_order_id)
        if row is None:
            raise SponsorshipNotFoundError(f"No sponsorship for order {provider_order_id}")

        if is_terminal(row.status):
            logger.info(
                "confirm_already_settled",
                sponsorship_id=row.id,
                provider_order_id=provider_order_id,
                status=row.status,
            )
            return {
                "status": "warning",
                "sponsorship_id": row.id,
                "order_id": provider_order_id,
                "payment_status": row.status,
                "capture_id": row.payment_provider_capture_id,
                "already_settled": True,
                "message": ALREADY_SETTLED_MESSAGE,
            }

        gateway = self.gateways[row.payment_provider]
        confirmation = await gateway.confirm_order(provider_order_id)
        if not confirmation.paid:
            logger.info(
                "confirm_payment_not_completed",
                sponsorship_id=row.id,
                provider_order_id=provider_order_id,
                provider_status=confirmation.provider_status,
            )
            raise PaymentNotCompletedError(
                "Payment has not been completed",
                provider_order_id=provider_order_id,
                provider_status=confirmation.provider_status,
            )

        result = await self.reconciliation.complete_order(provider_order_id, confirmation.capture_id)
        current = await self.repository.get(row.id)

        response = {
            "status": "ok" if result.applied else "warning",
            "sponsorship_id": row.id,
            "order_id": provider_order_id,
            "payment_status": current.status if current else result.status,
            "capture_id": current.payment_provider_capture_id if current else confirmation.capture_id,
            "already_settled": not result.applied,
        }
        if not result.applied:
            response["message"] = ALREADY_SETTLED_MESSAGE
        return response

    async def handle_webhook(
        self, provider: str, headers: Mapping[str, str], raw_body: bytes
    ) -> Dict[str, Any]:
        """Authenticate and apply a provider webhook delivery."""
        return await self.webhook_handler.handle(provider, headers, raw_body)

    async def get_donation(self, sponsorship_id: int, identity: Optional[str] = None) -> Dict[str, Any]:
        """
        Look up a sponsorship owned by ``identity``.

        Raises:
            SponsorshipNotFoundError: If the row does not exist or belongs to someone else
        """
        row = await self.repository.get(sponsorship_id)
        owner = (identity or "").strip() or ANONYMOUS
        if row is None or row.user_id != owner:
            raise SponsorshipNotFoundError(f"Sponsorship {sponsorship_id} not found")
        return {"status": "ok", "sponsorship": serialize_sponsorship(row)}

    async def close(self) -> None:
        for gateway in self.gateways.values():
            await gateway.close()
