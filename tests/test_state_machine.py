"""
Tests for the sponsorship status state machine.
"""
import pytest

from sponsorships.core.state_machine import (
    SponsorshipStatus,
    can_transition,
    is_terminal,
    source_statuses,
)


@pytest.mark.unit
@pytest.mark.parametrize(
    "current, target, allowed",
    [
        ("pending", SponsorshipStatus.COMPLETED, True),
        ("pending", SponsorshipStatus.FAILED, True),
        ("pending", SponsorshipStatus.REFUNDED, False),
        ("completed", SponsorshipStatus.REFUNDED, True),
        ("completed", SponsorshipStatus.FAILED, False),
        ("failed", SponsorshipStatus.COMPLETED, False),
        ("refunded", SponsorshipStatus.COMPLETED, False),
    ],
)
def test_can_transition(current: str, target: SponsorshipStatus, allowed: bool) -> None:
    assert can_transition(current, target) is allowed


@pytest.mark.unit
def test_terminal_statuses() -> None:
    assert not is_terminal("pending")
    assert all(is_terminal(s) for s in ("completed", "failed", "refunded"))


@pytest.mark.unit
def test_source_statuses_guard_updates() -> None:
    assert source_statuses(SponsorshipStatus.COMPLETED) == ["pending"]
    assert source_statuses(SponsorshipStatus.REFUNDED) == ["completed"]
