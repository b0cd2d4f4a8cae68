"""
Tests for the sponsorship repository's conditional writes.
"""
from datetime import timedelta

import pytest

from sponsorships.core.repository import SponsorshipRepository, utcnow


class TestInsert:
    """Inserts with and without idempotency keys."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_insert_creates_pending_row(self, repository: SponsorshipRepository, new_sponsorship) -> None:
        sponsorship_id = await repository.insert(new_sponsorship)

        row = await repository.get(sponsorship_id)
        assert row is not None
        assert row.status == "pending"
        assert row.idempotency_key is None
        assert row.payment_provider_order_id is None
        assert row.user_id == "user-1"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_insert_or_ignore_keeps_single_row_per_key(
        self, repository: SponsorshipRepository, new_sponsorship
    ) -> None:
        first = await repository.insert_or_ignore("k1", new_sponsorship)
        second = await repository.insert_or_ignore("k1", new_sponsorship)

        assert first is True
        assert second is False
        row = await repository.get_by_idempotency_key("k1")
        assert row is not None
        assert row.id == 1


class TestReservationWrites:
    """Reservation compare-and-set and order id write-back."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_try_reserve_succeeds_once(self, repository: SponsorshipRepository, new_sponsorship) -> None:
        await repository.insert_or_ignore("k1", new_sponsorship)
        stale_before = utcnow() - timedelta(seconds=60)

        assert await repository.try_reserve("k1", stale_before) is True
        assert await repository.try_reserve("k1", stale_before) is False

        row = await repository.get_by_idempotency_key("k1")
        assert row.reserved_at is not None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_try_reserve_takes_over_stale_reservation(
        self, repository: SponsorshipRepository, new_sponsorship
    ) -> None:
        await repository.insert_or_ignore("k1", new_sponsorship)
        assert await repository.try_reserve("k1", utcnow() - timedelta(seconds=60))

        # Everything reserved before "one minute from now" counts as stale
        assert await repository.try_reserve("k1", utcnow() + timedelta(seconds=60)) is True

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_expire_reservation_only_by_current_holder(
        self, repository: SponsorshipRepository, new_sponsorship
    ) -> None:
        await repository.insert_or_ignore("k1", new_sponsorship)
        first = utcnow() - timedelta(seconds=120)
        assert await repository.try_reserve("k1", utcnow() - timedelta(seconds=60), reserved_at=first)

        # Taken over by a newer holder: the old stamp no longer matches
        second = utcnow()
        assert await repository.try_reserve("k1", utcnow() - timedelta(seconds=60), reserved_at=second)
        assert await repository.expire_reservation("k1", first) is False

        assert await repository.expire_reservation("k1", second) is True
        assert await repository.try_reserve("k1", utcnow() - timedelta(seconds=60)) is True

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_try_reserve_refuses_once_order_assigned(
        self, repository: SponsorshipRepository, new_sponsorship
    ) -> None:
        await repository.insert_or_ignore("k1", new_sponsorship)
        assert await repository.assign_order_id_by_key("k1", "ORDER-1")

        assert await repository.try_reserve("k1", utcnow() + timedelta(seconds=60)) is False

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_order_id_written_only_once(self, repository: SponsorshipRepository, new_sponsorship) -> None:
        await repository.insert_or_ignore("k1", new_sponsorship)

        assert await repository.assign_order_id_by_key("k1", "ORDER-1") is True
        assert await repository.assign_order_id_by_key("k1", "ORDER-2") is False

        row = await repository.get_by_order_id("ORDER-1")
        assert row is not None
        assert await repository.get_by_order_id("ORDER-2") is None


class TestStatusTransitions:
    """Guarded status updates."""

    async def _ordered(self, repository: SponsorshipRepository, new_sponsorship, order_id: str = "ORDER-1") -> int:
        sponsorship_id = await repository.insert(new_sponsorship)
        await repository.assign_order_id(sponsorship_id, order_id)
        return sponsorship_id

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_complete_applies_once(self, repository: SponsorshipRepository, new_sponsorship) -> None:
        sponsorship_id = await self._ordered(repository, new_sponsorship)

        assert await repository.complete_by_order_id("ORDER-1", "CAP-1") is True
        assert await repository.complete_by_order_id("ORDER-1", "CAP-2") is False

        row = await repository.get(sponsorship_id)
        assert row.status == "completed"
        assert row.payment_provider_capture_id == "CAP-1"
        assert row.completed_at is not None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_fail_never_overwrites_completed(
        self, repository: SponsorshipRepository, new_sponsorship
    ) -> None:
        sponsorship_id = await self._ordered(repository, new_sponsorship)
        await repository.complete_by_order_id("ORDER-1", "CAP-1")

        assert await repository.fail_by_order_id("ORDER-1", "declined") is False
        assert (await repository.get(sponsorship_id)).status == "completed"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refund_requires_completed(self, repository: SponsorshipRepository, new_sponsorship) -> None:
        sponsorship_id = await self._ordered(repository, new_sponsorship)

        assert await repository.refund_by_capture_ids(["CAP-1"]) is False

        await repository.complete_by_order_id("ORDER-1", "CAP-1")
        assert await repository.refund_by_capture_ids(["ch_other", "CAP-1"]) is True
        assert await repository.refund_by_capture_ids(["CAP-1"]) is False
        assert (await repository.get(sponsorship_id)).status == "refunded"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_get_by_capture_ids_matches_any_candidate(
        self, repository: SponsorshipRepository, new_sponsorship
    ) -> None:
        sponsorship_id = await self._ordered(repository, new_sponsorship)
        await repository.complete_by_order_id("ORDER-1", "pi_123")

        row = await repository.get_by_capture_ids(["ch_456", "pi_123"])
        assert row is not None and row.id == sponsorship_id
        assert await repository.get_by_capture_ids([]) is None
