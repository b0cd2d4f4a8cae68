"""Core donation processing logic."""
from .donation_processor import DonationProcessor
from .reconciliation import ReconciliationEngine, TransitionOutcome
from .repository import NewSponsorship, SponsorshipRepository
from .reservation import ReservationManager
from .webhooks import WebhookHandler

__all__ = [
    "DonationProcessor",
    "NewSponsorship",
    "ReconciliationEngine",
    "ReservationManager",
    "SponsorshipRepository",
    "TransitionOutcome",
    "WebhookHandler",
]
