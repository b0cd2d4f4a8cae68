"""Payment provider integrations."""
from .gateway import (
    PAYPAL,
    STRIPE,
    SUPPORTED_PROVIDERS,
    CreatedOrder,
    EventKind,
    GatewayError,
    GatewayErrorType,
    OrderConfirmation,
    PaymentGateway,
    WebhookEvent,
)
from .paypal_gateway import PayPalGateway
from .stripe_gateway import StripeGateway

__all__ = [
    "PAYPAL",
    "STRIPE",
    "SUPPORTED_PROVIDERS",
    "CreatedOrder",
    "EventKind",
    "GatewayError",
    "GatewayErrorType",
    "OrderConfirmation",
    "PaymentGateway",
    "PayPalGateway",
    "StripeGateway",
    "WebhookEvent",
]
