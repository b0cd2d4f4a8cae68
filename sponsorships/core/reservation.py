"""
Idempotency reservation protocol.

Serializes concurrent create-donation calls that share an idempotency key so
exactly one of them creates the remote order:

1. Insert a pending row for the key, ignoring the insert if the key exists
2. Reserve the row with a conditional UPDATE on reserved_at
3. The reserving caller alone calls the gateway and writes the order id back
4. Everyone else polls the row until the order id appears
"""
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Awaitable, Callable, Optional

import structlog
from tenacity import AsyncRetrying, RetryError, retry_if_result, stop_after_attempt, wait_fixed

from sponsorships.core.errors import (
    DonationError,
    IdempotencyKeyConflictError,
    ReservationTimeoutError,
)
from sponsorships.core.repository import NewSponsorship, SponsorshipRepository, as_utc, utcnow
from sponsorships.database.models import Sponsorship
from sponsorships.integrations.gateway import CreatedOrder, GatewayError, GatewayErrorType
from sponsorships.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

CreateRemoteOrder = Callable[[int], Awaitable[CreatedOrder]]


@dataclass(frozen=True)
class ReservationResult:
    """Outcome of :meth:`ReservationManager.create_or_reserve`."""

    sponsorship_id: int
    provider_order_id: str
    # The order this call created; None when an existing order was returned
    order: Optional[CreatedOrder] = None

    @property
    def existing(self) -> bool:
        return self.order is None


def _has_order(row: Optional[Sponsorship]) -> bool:
    return row is not None and bool(row.payment_provider_order_id)


class ReservationManager:
    """
    Runs the reservation protocol against the sponsorships table.

    A caller that wins the reservation but fails to create the remote order
    leaves the row reserved and order-less. Once the reservation is older than
    ``lease_seconds`` the next caller with the same key takes it over and
    re-attempts the gateway call on the same row. When the provider reported a
    definite failure the owner back-dates its reservation so the takeover can
    happen immediately; after a timeout the lease has to run out.
    """

    def __init__(
        self,
        repository: SponsorshipRepository,
        poll_attempts: int = 10,
        poll_delay_seconds: float = 0.05,
        lease_seconds: int = 60,
    ):
        self.repository = repository
        self.poll_attempts = poll_attempts
        self.poll_delay_seconds = poll_delay_seconds
        self.lease_seconds = lease_seconds

    @staticmethod
    def _check_same_request(row: Sponsorship, fields: NewSponsorship, idempotency_key: str) -> None:
        """Reject a key reused for a different provider, amount or currency."""
        stored_amount = Decimal(str(row.amount)).quantize(Decimal("0.01"))
        if (
            row.payment_provider != fields.payment_provider
            or row.currency != fields.currency
            or stored_amount != fields.amount.quantize(Decimal("0.01"))
        ):
            logger.warning(
                "idempotency_key_conflict",
                idempotency_key=idempotency_key,
                sponsorship_id=row.id,
            )
            raise IdempotencyKeyConflictError(
                "Idempotency key was already used for a different donation"
            )

    async def create_or_reserve(
        self,
        idempotency_key: str,
        fields: NewSponsorship,
        create_remote: CreateRemoteOrder,
    ) -> ReservationResult:
        """
        Return the single remote order for ``idempotency_key``, creating it at most once.

        Args:
            idempotency_key: Client-supplied key shared by retries
            fields: Row contents used if this call inserts the row
            create_remote: Called with the sponsorship id by the reserving caller only

        Returns:
            ReservationResult: Sponsorship id and provider order id

        Raises:
            IdempotencyKeyConflictError: If the key belongs to a different donation
            ReservationTimeoutError: If another caller holds the reservation and
                no order id appeared while polling
            GatewayError: If this caller reserved and the gateway call failed
        """
        inserted = await self.repository.insert_or_ignore(idempotency_key, fields)
        row = await self.repository.get_by_idempotency_key(idempotency_key)
        if row is None:
            raise DonationError(f"Sponsorship row for idempotency key vanished: {idempotency_key}")

        if not inserted:
            self._check_same_request(row, fields, idempotency_key)

        if _has_order(row):
            metrics.record_reservation_outcome("existing")
            logger.info(
                "reservation_short_circuit",
                sponsorship_id=row.id,
                provider_order_id=row.payment_provider_order_id,
            )
            return ReservationResult(row.id, row.payment_provider_order_id)

        now = utcnow()
        stale_before = now - timedelta(seconds=self.lease_seconds)
        if await self.repository.try_reserve(idempotency_key, stale_before, reserved_at=now):
            reserved_at = as_utc(row.reserved_at)
            takeover = reserved_at is not None and reserved_at < stale_before
            metrics.record_reservation_outcome("stale_takeover" if takeover else "reserved")
            logger.info(
                "reservation_acquired",
                sponsorship_id=row.id,
                idempotency_key=idempotency_key,
                stale_takeover=takeover,
            )
            return await self._create_as_owner(row.id, idempotency_key, now, create_remote)

        return await self._wait_for_order(row.id, idempotency_key)

    async def _create_as_owner(
        self,
        sponsorship_id: int,
        idempotency_key: str,
        reserved_at: datetime,
        create_remote: CreateRemoteOrder,
    ) -> ReservationResult:
        try:
            order = await create_remote(sponsorship_id)
        except GatewayError as e:
            # After a timeout the remote order may exist; keep the lease
            if e.error_type is not GatewayErrorType.TIMEOUT:
                released = await self.repository.expire_reservation(idempotency_key, reserved_at)
                logger.warning(
                    "reservation_released_after_gateway_error",
                    sponsorship_id=sponsorship_id,
                    error_type=e.error_type.value,
                    released=released,
                )
            raise

        if await self.repository.assign_order_id_by_key(idempotency_key, order.provider_order_id):
            logger.info(
                "reservation_order_assigned",
                sponsorship_id=sponsorship_id,
                provider_order_id=order.provider_order_id,
            )
            return ReservationResult(sponsorship_id, order.provider_order_id, order)

        # A caller that took over our lease wrote its order id first
        current = await self.repository.get_by_idempotency_key(idempotency_key)
        logger.warning(
            "reservation_writeback_lost",
            sponsorship_id=sponsorship_id,
            discarded_order_id=order.provider_order_id,
            provider_order_id=current.payment_provider_order_id if current else None,
        )
        if not _has_order(current):
            raise DonationError(f"Order id write-back failed for sponsorship {sponsorship_id}")
        return ReservationResult(sponsorship_id, current.payment_provider_order_id)

    async def _wait_for_order(self, sponsorship_id: int, idempotency_key: str) -> ReservationResult:
        """Poll until the reserving caller publishes the order id."""
        logger.info(
            "reservation_held_elsewhere",
            sponsorship_id=sponsorship_id,
            idempotency_key=idempotency_key,
        )
        start = time.monotonic()
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.poll_attempts),
            wait=wait_fixed(self.poll_delay_seconds),
            retry=retry_if_result(lambda row: not _has_order(row)),
        )
        try:
            row = await retrying(self.repository.get_by_idempotency_key, idempotency_key)
        except RetryError:
            metrics.record_reservation_outcome("timeout")
            logger.warning(
                "reservation_poll_exhausted",
                sponsorship_id=sponsorship_id,
                idempotency_key=idempotency_key,
                waited_seconds=round(time.monotonic() - start, 3),
            )
            raise ReservationTimeoutError(
                "Donation is still being processed; query its status instead of resubmitting",
                sponsorship_id=sponsorship_id,
                idempotency_key=idempotency_key,
            )

        metrics.record_reservation_outcome("waited")
        logger.info(
            "reservation_wait_complete",
            sponsorship_id=sponsorship_id,
            provider_order_id=row.payment_provider_order_id,
            waited_seconds=round(time.monotonic() - start, 3),
        )
        return ReservationResult(row.id, row.payment_provider_order_id)
