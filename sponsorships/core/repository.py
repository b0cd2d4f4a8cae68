"""
Sponsorship persistence with single-statement conditional writes.

Every method runs in its own short transaction. Race-sensitive changes are a
single guarded INSERT or UPDATE whose affected-row count tells the caller
whether it won; no application-level locks are taken.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional, Sequence

import structlog
from sqlalchemy import insert, or_, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sponsorships.core.state_machine import SponsorshipStatus, source_statuses
from sponsorships.database.models import Sponsorship

logger = structlog.get_logger(__name__)

# Stamp of a reservation whose holder gave up; older than any lease
EXPIRED_RESERVATION = datetime(1970, 1, 1, tzinfo=timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass(frozen=True)
class NewSponsorship:
    """Validated fields for a sponsorship row that does not exist yet."""

    user_id: str
    sponsor_type: str
    amount: Decimal
    currency: str
    payment_provider: str
    user_email: Optional[str] = None
    target_identifier: Optional[str] = None
    message: Optional[str] = None

    def to_values(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "user_email": self.user_email,
            "sponsor_type": self.sponsor_type,
            "target_identifier": self.target_identifier,
            "amount": self.amount,
            "currency": self.currency,
            "payment_provider": self.payment_provider,
            "message": self.message,
            "status": SponsorshipStatus.PENDING.value,
            "created_at": utcnow(),
        }


class SponsorshipRepository:
    """Reads and conditional writes against the sponsorships table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def _execute_write(self, stmt: Any) -> int:
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(stmt)
            return result.rowcount

    async def _fetch_one(self, stmt: Any) -> Optional[Sponsorship]:
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    # ------------------------------------------------------------------ inserts

    async def insert(self, fields: NewSponsorship) -> int:
        """Insert a fresh pending row without an idempotency key."""
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    insert(Sponsorship).values(**fields.to_values()).returning(Sponsorship.id)
                )
                sponsorship_id = result.scalar_one()
        logger.info("sponsorship_inserted", sponsorship_id=sponsorship_id)
        return sponsorship_id

    async def insert_or_ignore(self, idempotency_key: str, fields: NewSponsorship) -> bool:
        """
        Insert a pending row for ``idempotency_key`` unless one already exists.

        Returns:
            bool: True when this call created the row
        """
        values = {**fields.to_values(), "idempotency_key": idempotency_key}

        async with self.session_factory() as session:
            dialect = session.get_bind().dialect.name
            if dialect == "postgresql":
                stmt = postgresql.insert(Sponsorship).values(**values)
            elif dialect == "sqlite":
                stmt = sqlite.insert(Sponsorship).values(**values)
            else:
                stmt = None

            if stmt is not None:
                stmt = stmt.on_conflict_do_nothing(index_elements=["idempotency_key"])
                async with session.begin():
                    result = await session.execute(stmt)
                return result.rowcount > 0

            try:
                async with session.begin():
                    await session.execute(insert(Sponsorship).values(**values))
                return True
            except IntegrityError:
                return False

    # -------------------------------------------------------------------- reads

    async def get(self, sponsorship_id: int) -> Optional[Sponsorship]:
        return await self._fetch_one(select(Sponsorship).where(Sponsorship.id == sponsorship_id))

    async def get_by_idempotency_key(self, idempotency_key: str) -> Optional[Sponsorship]:
        return await self._fetch_one(
            select(Sponsorship).where(Sponsorship.idempotency_key == idempotency_key)
        )

    async def get_by_order_id(self, provider_order_id: str) -> Optional[Sponsorship]:
        return await self._fetch_one(
            select(Sponsorship).where(Sponsorship.payment_provider_order_id == provider_order_id)
        )

    async def get_by_capture_ids(self, capture_ids: Sequence[str]) -> Optional[Sponsorship]:
        if not capture_ids:
            return None
        return await self._fetch_one(
            select(Sponsorship)
            .where(Sponsorship.payment_provider_capture_id.in_(list(capture_ids)))
            .order_by(Sponsorship.id)
            .limit(1)
        )

    # ---------------------------------------------------------- reservation CAS

    async def try_reserve(
        self,
        idempotency_key: str,
        stale_before: datetime,
        reserved_at: Optional[datetime] = None,
    ) -> bool:
        """
        Claim the right to create the remote order for ``idempotency_key``.

        Succeeds only while the order id is empty and the row is unreserved or
        its reservation is older than ``stale_before``. The reservation is
        stamped with ``reserved_at`` (now by default).
        """
        stmt = (
            update(Sponsorship)
            .where(
                Sponsorship.idempotency_key == idempotency_key,
                or_(
                    Sponsorship.payment_provider_order_id.is_(None),
                    Sponsorship.payment_provider_order_id == "",
                ),
                or_(
                    Sponsorship.reserved_at.is_(None),
                    Sponsorship.reserved_at < stale_before,
                ),
            )
            .values(reserved_at=reserved_at or utcnow())
            .execution_options(synchronize_session=False)
        )
        return await self._execute_write(stmt) > 0

    async def expire_reservation(self, idempotency_key: str, reserved_at: datetime) -> bool:
        """
        Back-date a reservation so the next caller can take it over at once.

        Only the holder of the reservation stamped ``reserved_at`` can expire
        it, and only while no order id has been written.
        """
        stmt = (
            update(Sponsorship)
            .where(
                Sponsorship.idempotency_key == idempotency_key,
                or_(
                    Sponsorship.payment_provider_order_id.is_(None),
                    Sponsorship.payment_provider_order_id == "",
                ),
                Sponsorship.reserved_at == reserved_at,
            )
            .values(reserved_at=EXPIRED_RESERVATION)
            .execution_options(synchronize_session=False)
        )
        return await self._execute_write(stmt) > 0

    async def assign_order_id_by_key(self, idempotency_key: str, provider_order_id: str) -> bool:
        """Write the remote order id back unless another caller already did."""
        stmt = (
            update(Sponsorship)
            .where(
                Sponsorship.idempotency_key == idempotency_key,
                or_(
                    Sponsorship.payment_provider_order_id.is_(None),
                    Sponsorship.payment_provider_order_id == "",
                ),
            )
            .values(payment_provider_order_id=provider_order_id)
            .execution_options(synchronize_session=False)
        )
        return await self._execute_write(stmt) > 0

    async def assign_order_id(self, sponsorship_id: int, provider_order_id: str) -> bool:
        stmt = (
            update(Sponsorship)
            .where(
                Sponsorship.id == sponsorship_id,
                Sponsorship.payment_provider_order_id.is_(None),
            )
            .values(payment_provider_order_id=provider_order_id)
            .execution_options(synchronize_session=False)
        )
        return await self._execute_write(stmt) > 0

    # ------------------------------------------------------ status transitions

    async def complete_by_order_id(
        self, provider_order_id: str, capture_id: Optional[str]
    ) -> bool:
        """pending -> completed for the row owning ``provider_order_id``."""
        values: dict[str, Any] = {
            "status": SponsorshipStatus.COMPLETED.value,
            "completed_at": utcnow(),
        }
        if capture_id:
            values["payment_provider_capture_id"] = capture_id
        stmt = (
            update(Sponsorship)
            .where(
                Sponsorship.payment_provider_order_id == provider_order_id,
                Sponsorship.status.in_(source_statuses(SponsorshipStatus.COMPLETED)),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return await self._execute_write(stmt) > 0

    async def fail_by_order_id(self, provider_order_id: str, reason: Optional[str]) -> bool:
        """pending -> failed for the row owning ``provider_order_id``."""
        stmt = (
            update(Sponsorship)
            .where(
                Sponsorship.payment_provider_order_id == provider_order_id,
                Sponsorship.status.in_(source_statuses(SponsorshipStatus.FAILED)),
            )
            .values(status=SponsorshipStatus.FAILED.value, failure_reason=reason)
            .execution_options(synchronize_session=False)
        )
        return await self._execute_write(stmt) > 0

    async def refund_by_capture_ids(self, capture_ids: Sequence[str]) -> bool:
        """completed -> refunded for the row whose capture id is in ``capture_ids``."""
        if not capture_ids:
            return False
        stmt = (
            update(Sponsorship)
            .where(
                Sponsorship.payment_provider_capture_id.in_(list(capture_ids)),
                Sponsorship.status.in_(source_statuses(SponsorshipStatus.REFUNDED)),
            )
            .values(status=SponsorshipStatus.REFUNDED.value)
            .execution_options(synchronize_session=False)
        )
        return await self._execute_write(stmt) > 0
