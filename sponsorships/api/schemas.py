"""
Pydantic schemas for API request/response models.
"""
from decimal import Decimal
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator


class CreateDonationRequest(BaseModel):
    """Request schema for creating a donation."""

    sponsor_type: str = Field(..., description="What is being sponsored (e.g. project, feature)")
    target_identifier: Optional[str] = Field(default=None, description="Campaign or target id")
    amount: Decimal = Field(..., description="Donation amount in major units (e.g. 5.00)")
    currency: str = Field(default="USD", description="Currency code (e.g., USD)")
    message: Optional[str] = Field(default=None, description="Optional donor message")
    idempotency_key: Optional[str] = Field(
        default=None, description="Client key shared by retries of the same donation"
    )
    provider: str = Field(default="paypal", description="Payment provider (paypal or stripe)")
    email: Optional[str] = Field(default=None, description="Donor email")

    @field_validator("currency", "provider")
    @classmethod
    def strip_value(cls, v: str) -> str:
        return v.strip()

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "sponsor_type": "project",
                    "target_identifier": "spring-campaign",
                    "amount": "5.00",
                    "currency": "USD",
                    "message": "Keep it up!",
                    "idempotency_key": "k1",
                    "provider": "paypal",
                }
            ]
        }
    }


class CreateDonationResponse(BaseModel):
    """Response schema for donation creation."""

    status: str = Field(..., description="ok")
    sponsorship_id: int = Field(..., description="Sponsorship id")
    order_id: str = Field(..., description="Provider order/session id")
    provider: str = Field(..., description="Payment provider")
    approval_url: Optional[str] = Field(
        default=None, description="Where the donor approves the payment; null for existing orders"
    )
    client_secret: Optional[str] = Field(default=None, description="Stripe client secret")
    existing: bool = Field(..., description="True when an earlier request created the order")


class ConfirmDonationRequest(BaseModel):
    """Request schema for confirming a donation."""

    order_id: str = Field(..., min_length=1, description="Provider order/session id")


class ConfirmDonationResponse(BaseModel):
    """Response schema for donation confirmation."""

    status: str = Field(..., description="ok, or warning when the donation was already settled")
    sponsorship_id: int
    order_id: str
    payment_status: str = Field(..., description="Sponsorship status after confirmation")
    capture_id: Optional[str] = None
    already_settled: bool = Field(..., description="True when the row was already terminal")
    message: Optional[str] = None


class SponsorshipView(BaseModel):
    sponsorship_id: int
    status: str
    sponsor_type: str
    target_identifier: Optional[str] = None
    amount: str
    currency: str
    provider: str
    order_id: Optional[str] = None
    capture_id: Optional[str] = None
    message: Optional[str] = None
    created_at: Optional[str] = None
    completed_at: Optional[str] = None


class DonationStatusResponse(BaseModel):
    """Response schema for donation lookup."""

    status: str
    sponsorship: SponsorshipView


class WebhookResponse(BaseModel):
    """Response schema for webhook processing."""

    status: str
    provider: str
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    outcome: str = Field(..., description="applied, already_settled, unmatched or ignored")
    sponsorship_id: Optional[int] = None


class HealthCheckResponse(BaseModel):
    """Response schema for health check."""

    status: str
    checks: Optional[Dict[str, Any]] = None
    message: Optional[str] = None


class ErrorResponse(BaseModel):
    """Body of every error response."""

    status: str = Field(..., description="error or warning")
    message: str
    sponsorship_id: Optional[int] = None
