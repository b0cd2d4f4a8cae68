"""
Race condition tests for the idempotency reservation protocol.

Concurrent callers share one SQLite database; the only coordination between
them is the conditional writes in the repository.
"""
import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import update

from sponsorships.core.errors import IdempotencyKeyConflictError, ReservationTimeoutError
from sponsorships.core.repository import NewSponsorship, SponsorshipRepository, as_utc, utcnow
from sponsorships.core.reservation import ReservationManager
from sponsorships.database.models import Sponsorship
from sponsorships.integrations.gateway import PAYPAL, GatewayError, GatewayErrorType

from .conftest import FakeGateway


def _creator(gateway: FakeGateway, fields: NewSponsorship):
    async def create_remote(sponsorship_id: int):
        return await gateway.create_order(
            fields.amount, fields.currency, "Sponsorship - project", f"sponsorship-{sponsorship_id}"
        )

    return create_remote


class TestConcurrentReservation:
    """Concurrent callers sharing an idempotency key."""

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_creates_make_one_order(
        self, repository: SponsorshipRepository, new_sponsorship: NewSponsorship
    ) -> None:
        """
        Test concurrent create calls with same idempotency key.

        Exactly one gateway call; every caller sees the same ids.
        """
        gateway = FakeGateway(PAYPAL, create_delay=0.05)
        manager = ReservationManager(repository, poll_attempts=200, poll_delay_seconds=0.01)

        results = await asyncio.gather(
            *[
                manager.create_or_reserve("k1", new_sponsorship, _creator(gateway, new_sponsorship))
                for _ in range(10)
            ]
        )

        assert len(gateway.create_calls) == 1
        assert len({r.sponsorship_id for r in results}) == 1
        assert len({r.provider_order_id for r in results}) == 1
        assert sum(1 for r in results if not r.existing) == 1

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_different_keys_make_distinct_orders(
        self, repository: SponsorshipRepository, new_sponsorship: NewSponsorship
    ) -> None:
        gateway = FakeGateway(PAYPAL)
        manager = ReservationManager(repository)

        results = await asyncio.gather(
            *[
                manager.create_or_reserve(f"key-{i}", new_sponsorship, _creator(gateway, new_sponsorship))
                for i in range(5)
            ]
        )

        assert len(gateway.create_calls) == 5
        assert len({r.sponsorship_id for r in results}) == 5
        assert len({r.provider_order_id for r in results}) == 5


class TestReservationPaths:
    """Short-circuit, timeout, take-over and conflict paths."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_second_call_short_circuits(
        self, repository: SponsorshipRepository, new_sponsorship: NewSponsorship
    ) -> None:
        gateway = FakeGateway(PAYPAL, create_delay=0)
        manager = ReservationManager(repository)

        first = await manager.create_or_reserve("k1", new_sponsorship, _creator(gateway, new_sponsorship))
        second = await manager.create_or_reserve("k1", new_sponsorship, _creator(gateway, new_sponsorship))

        assert len(gateway.create_calls) == 1
        assert first.existing is False
        assert first.order is not None and first.order.approval_url
        assert second.existing is True
        assert second.order is None
        assert second.provider_order_id == first.provider_order_id
        row = await repository.get(first.sponsorship_id)
        # The reservation stamp is left as it was when the order id was written
        assert row.reserved_at is not None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_poll_exhaustion_raises_ambiguous_timeout(
        self, repository: SponsorshipRepository, new_sponsorship: NewSponsorship
    ) -> None:
        await repository.insert_or_ignore("k1", new_sponsorship)
        # Someone else holds a fresh reservation and never writes an order id
        assert await repository.try_reserve("k1", utcnow() - timedelta(seconds=60))

        gateway = FakeGateway(PAYPAL)
        manager = ReservationManager(repository, poll_attempts=3, poll_delay_seconds=0.01)

        with pytest.raises(ReservationTimeoutError) as exc_info:
            await manager.create_or_reserve("k1", new_sponsorship, _creator(gateway, new_sponsorship))

        assert exc_info.value.idempotency_key == "k1"
        assert exc_info.value.sponsorship_id == 1
        assert gateway.create_calls == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_immediate_retry_after_gateway_failure_reuses_row(
        self,
        repository: SponsorshipRepository,
        new_sponsorship: NewSponsorship,
        transient_error: GatewayError,
    ) -> None:
        gateway = FakeGateway(PAYPAL, create_delay=0)
        gateway.fail_next_create = transient_error
        manager = ReservationManager(repository, poll_attempts=2, poll_delay_seconds=0.01, lease_seconds=60)

        with pytest.raises(GatewayError):
            await manager.create_or_reserve("k1", new_sponsorship, _creator(gateway, new_sponsorship))

        row = await repository.get_by_idempotency_key("k1")
        # Still reserved and order-less, but no longer holding a live lease
        assert row.reserved_at is not None
        assert as_utc(row.reserved_at) < utcnow() - timedelta(seconds=60)
        assert row.payment_provider_order_id is None

        result = await manager.create_or_reserve("k1", new_sponsorship, _creator(gateway, new_sponsorship))

        assert result.sponsorship_id == row.id
        assert result.existing is False
        assert len(gateway.create_calls) == 2
        # Both attempts carried the same provider idempotency token
        assert {c["correlation_id"] for c in gateway.create_calls} == {f"sponsorship-{row.id}"}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_gateway_timeout_keeps_lease_until_it_expires(
        self,
        repository: SponsorshipRepository,
        new_sponsorship: NewSponsorship,
        session_factory,
    ) -> None:
        gateway = FakeGateway(PAYPAL, create_delay=0)
        gateway.fail_next_create = GatewayError("read timed out", GatewayErrorType.TIMEOUT, PAYPAL)
        manager = ReservationManager(repository, poll_attempts=2, poll_delay_seconds=0.01, lease_seconds=60)

        with pytest.raises(GatewayError):
            await manager.create_or_reserve("k1", new_sponsorship, _creator(gateway, new_sponsorship))

        # The remote order may exist, so a retry inside the lease only waits
        with pytest.raises(ReservationTimeoutError):
            await manager.create_or_reserve("k1", new_sponsorship, _creator(gateway, new_sponsorship))
        assert len(gateway.create_calls) == 1

        row = await repository.get_by_idempotency_key("k1")
        async with session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(Sponsorship)
                    .where(Sponsorship.id == row.id)
                    .values(reserved_at=utcnow() - timedelta(seconds=120))
                )

        result = await manager.create_or_reserve("k1", new_sponsorship, _creator(gateway, new_sponsorship))

        assert result.sponsorship_id == row.id
        assert result.existing is False
        assert len(gateway.create_calls) == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_key_reused_for_different_donation_conflicts(
        self, repository: SponsorshipRepository, new_sponsorship: NewSponsorship
    ) -> None:
        gateway = FakeGateway(PAYPAL, create_delay=0)
        manager = ReservationManager(repository)
        await manager.create_or_reserve("k1", new_sponsorship, _creator(gateway, new_sponsorship))

        other = NewSponsorship(
            user_id="user-1",
            sponsor_type="project",
            amount=Decimal("7.00"),
            currency="USD",
            payment_provider=PAYPAL,
        )
        with pytest.raises(IdempotencyKeyConflictError):
            await manager.create_or_reserve("k1", other, _creator(gateway, other))
        assert len(gateway.create_calls) == 1
