"""
Sponsorship status state machine.

    pending --(reserve)--> pending+reserved_at --(order id)--> ordered
    ordered --> completed | failed
    completed --> refunded

"ordered" is not stored: it is a pending row whose provider order id is set.
completed, failed and refunded are terminal for automatic transitions; the
only move out of a terminal state is completed -> refunded.
"""
from enum import Enum
from typing import FrozenSet


class SponsorshipStatus(str, Enum):
    """Persisted sponsorship statuses."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


TERMINAL_STATUSES: FrozenSet[SponsorshipStatus] = frozenset(
    {SponsorshipStatus.COMPLETED, SponsorshipStatus.FAILED, SponsorshipStatus.REFUNDED}
)

# target -> statuses it may be entered from
ALLOWED_SOURCES: dict[SponsorshipStatus, FrozenSet[SponsorshipStatus]] = {
    SponsorshipStatus.COMPLETED: frozenset({SponsorshipStatus.PENDING}),
    SponsorshipStatus.FAILED: frozenset({SponsorshipStatus.PENDING}),
    SponsorshipStatus.REFUNDED: frozenset({SponsorshipStatus.COMPLETED}),
}


def is_terminal(status: str) -> bool:
    """Check whether a stored status is terminal."""
    return SponsorshipStatus(status) in TERMINAL_STATUSES


def can_transition(current: str, target: SponsorshipStatus) -> bool:
    """Check whether ``current`` may move to ``target``."""
    return SponsorshipStatus(current) in ALLOWED_SOURCES.get(target, frozenset())


def source_statuses(target: SponsorshipStatus) -> list[str]:
    """Status values a conditional write into ``target`` must guard on."""
    return sorted(status.value for status in ALLOWED_SOURCES[target])
