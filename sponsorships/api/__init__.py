"""FastAPI application and routes."""
from .main import create_app
from .schemas import (
    ConfirmDonationRequest,
    ConfirmDonationResponse,
    CreateDonationRequest,
    CreateDonationResponse,
    DonationStatusResponse,
)

__all__ = [
    "create_app",
    "ConfirmDonationRequest",
    "ConfirmDonationResponse",
    "CreateDonationRequest",
    "CreateDonationResponse",
    "DonationStatusResponse",
]
