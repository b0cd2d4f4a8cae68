"""
Provider gateway contract shared by the PayPal and Stripe implementations.

Gateways hide provider response shapes (nested link arrays, charge lists,
event envelopes) behind the typed values below so the donation engine never
inspects raw provider payloads.
"""
import json
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping, Optional, TypeVar

import structlog

from sponsorships.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

T = TypeVar("T")

PAYPAL = "paypal"
STRIPE = "stripe"
SUPPORTED_PROVIDERS = (PAYPAL, STRIPE)

# ISO 4217 currencies without a minor unit
ZERO_DECIMAL_CURRENCIES = frozenset(
    {"BIF", "CLP", "DJF", "GNF", "JPY", "KMF", "KRW", "MGA", "PYG", "RWF", "UGX", "VND", "VUV", "XAF", "XOF", "XPF"}
)


class GatewayErrorType(Enum):
    """Classification of provider errors."""

    TRANSIENT = "transient"  # network errors, 5xx
    PERMANENT = "permanent"  # 4xx, invalid request
    RATE_LIMIT = "rate_limit"
    TIMEOUT = "timeout"  # outcome unknown: the remote side may have acted
    CONFIGURATION = "configuration"  # missing credentials


class GatewayError(Exception):
    """Raised when a provider call fails."""

    def __init__(
        self,
        message: str,
        error_type: GatewayErrorType,
        provider: str,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(message)
        self.error_type = error_type
        self.provider = provider
        self.original_error = original_error

    @property
    def is_retryable(self) -> bool:
        return self.error_type in (
            GatewayErrorType.TRANSIENT,
            GatewayErrorType.RATE_LIMIT,
            GatewayErrorType.TIMEOUT,
        )


@dataclass(frozen=True)
class CreatedOrder:
    """A remote order/session created by a gateway."""

    provider_order_id: str
    approval_url: Optional[str] = None
    client_secret: Optional[str] = None
    raw: Mapping[str, Any] = field(default_factory=dict, compare=False, repr=False)


@dataclass(frozen=True)
class OrderConfirmation:
    """Result of asking a gateway whether a remote order is paid."""

    paid: bool
    capture_id: Optional[str] = None
    provider_status: Optional[str] = None


class EventKind(Enum):
    """What a webhook event means for the sponsorship state machine."""

    ORDER_COMPLETED = "order_completed"  # matched by order id
    PAYMENT_FAILED = "payment_failed"  # matched by order id
    REFUNDED = "refunded"  # matched by capture id
    IGNORED = "ignored"


@dataclass(frozen=True)
class WebhookEvent:
    """Provider-agnostic view of an authenticated webhook event."""

    provider: str
    event_id: Optional[str]
    event_type: str
    kind: EventKind
    order_id: Optional[str] = None
    capture_id: Optional[str] = None
    capture_ids: tuple[str, ...] = ()
    failure_reason: Optional[str] = None


def to_minor_units(amount: Decimal, currency: str) -> int:
    """Convert a decimal amount to the provider's integer minor units."""
    if currency.upper() in ZERO_DECIMAL_CURRENCIES:
        return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def format_decimal_amount(amount: Decimal, currency: str) -> str:
    """Format an amount as the decimal string PayPal expects."""
    if currency.upper() in ZERO_DECIMAL_CURRENCIES:
        return str(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return str(amount.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


class CircuitBreaker:
    """
    Circuit breaker for provider API calls.

    Opens after ``failure_threshold`` consecutive retryable failures and fails
    fast until ``timeout`` seconds have passed. It never retries a call.
    """

    def __init__(
        self,
        provider: str,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        self.provider = provider
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    async def call(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """
        Await ``func`` with circuit breaker protection.

        Raises:
            GatewayError: If the circuit is open
        """
        if self.state == "open":
            if self.last_failure_time and time.monotonic() - self.last_failure_time > self.timeout:
                self._set_state("half_open")
                self.success_count = 0
            else:
                raise GatewayError(
                    f"{self.provider} circuit breaker is open",
                    GatewayErrorType.TRANSIENT,
                    self.provider,
                )

        try:
            result = await func(*args, **kwargs)
        except GatewayError as e:
            if e.is_retryable:
                self.on_failure()
            raise
        self.on_success()
        return result

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self._set_state("closed")

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.monotonic()
        if self.failure_count >= self.failure_threshold or self.state == "half_open":
            self._set_state("open")
            logger.warning(
                "circuit_breaker_opened",
                provider=self.provider,
                failure_count=self.failure_count,
            )

    def _set_state(self, state: str) -> None:
        self.state = state
        metrics.set_circuit_breaker_state(self.provider, state)
        logger.info("circuit_breaker_state_changed", provider=self.provider, state=state)


class PaymentGateway(ABC):
    """Contract every payment provider implementation fulfils."""

    provider: str

    @abstractmethod
    async def create_order(
        self,
        amount: Decimal,
        currency: str,
        description: str,
        correlation_id: str,
        metadata: Optional[Mapping[str, str]] = None,
    ) -> CreatedOrder:
        """Create the remote order; ``correlation_id`` doubles as the provider idempotency token."""

    @abstractmethod
    async def confirm_order(self, provider_order_id: str) -> OrderConfirmation:
        """Capture or look up the remote order and report whether it is paid."""

    @abstractmethod
    async def verify_webhook_signature(self, headers: Mapping[str, str], raw_body: bytes) -> bool:
        """Authenticate ``raw_body`` exactly as received."""

    @abstractmethod
    def parse_webhook_event(self, raw_body: bytes) -> WebhookEvent:
        """Translate an authenticated payload into a :class:`WebhookEvent`."""

    async def close(self) -> None:
        """Release network resources held by the gateway."""
        return None


def decode_event(raw_body: bytes) -> dict[str, Any]:
    """
    Decode a webhook body into a JSON object.

    Raises:
        ValueError: If the body is not a JSON object
    """
    event = json.loads(raw_body)
    if not isinstance(event, dict):
        raise ValueError("webhook body is not a JSON object")
    return event
