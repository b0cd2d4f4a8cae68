"""Exceptions raised by the donation engine."""
from typing import Optional


class DonationError(Exception):
    """Base exception for donation processing errors."""

    pass


class DonationValidationError(DonationError):
    """Raised when donation input validation fails."""

    pass


class IdempotencyKeyConflictError(DonationError):
    """Raised when an idempotency key is reused for a different donation."""

    pass


class SponsorshipNotFoundError(DonationError):
    """Raised when no sponsorship matches the given identifier."""

    pass


class PaymentNotCompletedError(DonationError):
    """Raised when the provider reports the remote order as unpaid."""

    def __init__(self, message: str, provider_order_id: str, provider_status: Optional[str] = None):
        super().__init__(message)
        self.provider_order_id = provider_order_id
        self.provider_status = provider_status


class ReservationTimeoutError(DonationError):
    """
    Raised when another caller holds the reservation and no order id appeared in time.

    The outcome is ambiguous rather than failed: the other caller may still
    finish creating the order, so clients should re-query the sponsorship
    instead of submitting a new donation.
    """

    def __init__(self, message: str, sponsorship_id: int, idempotency_key: str):
        super().__init__(message)
        self.sponsorship_id = sponsorship_id
        self.idempotency_key = idempotency_key


class WebhookSignatureError(DonationError):
    """Raised when a webhook fails signature verification."""

    pass


class WebhookPayloadError(DonationError):
    """Raised when an authenticated webhook body cannot be parsed."""

    pass
