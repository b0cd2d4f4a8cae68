"""
Reconciliation engine for sponsorship terminal states.

Applies completed/failed/refunded transitions coming from either a
synchronous confirm call or an asynchronous provider webhook. Each transition
is one conditional UPDATE, so duplicate, replayed and racing deliveries
resolve to a single winner and everyone else observes a no-op.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence

import structlog

from sponsorships.core.repository import SponsorshipRepository
from sponsorships.core.state_machine import SponsorshipStatus, can_transition, is_terminal
from sponsorships.database.models import Sponsorship
from sponsorships.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class TransitionOutcome(str, Enum):
    """Result of attempting a state transition."""

    APPLIED = "applied"  # this call moved the row
    ALREADY_SETTLED = "already_settled"  # the row was already terminal
    UNMATCHED = "unmatched"  # no row owns the order/capture id
    IGNORED = "ignored"  # row exists but the transition is not allowed from its state


@dataclass(frozen=True)
class TransitionResult:
    outcome: TransitionOutcome
    sponsorship_id: Optional[int] = None
    status: Optional[str] = None

    @property
    def applied(self) -> bool:
        return self.outcome is TransitionOutcome.APPLIED


class ReconciliationEngine:
    """Drives the sponsorship state machine with conditional writes."""

    def __init__(self, repository: SponsorshipRepository):
        self.repository = repository
        logger.info("reconciliation_engine_initialized")

    @staticmethod
    def _resolve(
        target: SponsorshipStatus, applied: bool, row: Optional[Sponsorship], match_key: str
    ) -> TransitionResult:
        """Classify a write by re-reading the row it was aimed at."""
        if row is None:
            outcome = TransitionOutcome.UNMATCHED
        elif applied:
            outcome = TransitionOutcome.APPLIED
        elif is_terminal(row.status) and not can_transition(row.status, target):
            outcome = TransitionOutcome.ALREADY_SETTLED
        else:
            outcome = TransitionOutcome.IGNORED

        metrics.record_state_transition(target.value, outcome.value)
        log = logger.info if outcome is not TransitionOutcome.IGNORED else logger.warning
        log(
            "state_transition",
            target=target.value,
            outcome=outcome.value,
            match_key=match_key,
            sponsorship_id=row.id if row else None,
            status=row.status if row else None,
        )
        return TransitionResult(
            outcome=outcome,
            sponsorship_id=row.id if row else None,
            status=row.status if row else None,
        )

    async def complete_order(
        self, provider_order_id: str, capture_id: Optional[str] = None
    ) -> TransitionResult:
        """pending -> completed for the row owning ``provider_order_id``."""
        applied = await self.repository.complete_by_order_id(provider_order_id, capture_id)
        row = await self.repository.get_by_order_id(provider_order_id)
        return self._resolve(SponsorshipStatus.COMPLETED, applied, row, provider_order_id)

    async def fail_order(
        self, provider_order_id: str, reason: Optional[str] = None
    ) -> TransitionResult:
        """pending -> failed; never overwrites a completed or refunded row."""
        applied = await self.repository.fail_by_order_id(provider_order_id, reason)
        row = await self.repository.get_by_order_id(provider_order_id)
        return self._resolve(SponsorshipStatus.FAILED, applied, row, provider_order_id)

    async def refund_capture(self, capture_ids: Sequence[str]) -> TransitionResult:
        """
        completed -> refunded for the row whose capture id is one of ``capture_ids``.

        Providers identify the refunded payment in more than one way (charge
        id, payment intent id, capture id), so every candidate is matched.
        """
        applied = await self.repository.refund_by_capture_ids(capture_ids)
        row = await self.repository.get_by_capture_ids(capture_ids)
        return self._resolve(SponsorshipStatus.REFUNDED, applied, row, ",".join(capture_ids))
