"""
Pytest configuration and fixtures.

Every test gets its own SQLite database file, so tests can run the real
conditional writes (including concurrent ones) without a database server.
"""
import asyncio
import itertools
import json
from decimal import Decimal
from pathlib import Path
from typing import Any, AsyncGenerator, Mapping, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from sponsorships.config import Settings
from sponsorships.core.donation_processor import DonationProcessor
from sponsorships.core.repository import NewSponsorship, SponsorshipRepository
from sponsorships.database.connection import (
    create_engine_from_settings,
    create_session_factory,
    init_db,
)
from sponsorships.integrations.gateway import (
    PAYPAL,
    STRIPE,
    CreatedOrder,
    EventKind,
    GatewayError,
    GatewayErrorType,
    OrderConfirmation,
    PaymentGateway,
    WebhookEvent,
    decode_event,
)


class FakeGateway(PaymentGateway):
    """
    In-process gateway that records every call.

    Webhook bodies are JSON objects of the form
    ``{"id", "type", "kind", "order_id", "capture_id", "capture_ids", "reason"}``;
    ``verify_webhook_signature`` accepts a body when the ``x-fake-signature``
    header equals ``"valid"``.
    """

    _order_numbers = itertools.count(1)

    def __init__(self, provider: str, create_delay: float = 0.02):
        self.provider = provider
        self.create_delay = create_delay
        self.create_calls: list[dict[str, Any]] = []
        self.confirm_calls: list[str] = []
        self.fail_next_create: Optional[GatewayError] = None
        self.confirmation = OrderConfirmation(paid=True, capture_id="CAPTURE-1", provider_status="COMPLETED")

    async def create_order(
        self,
        amount: Decimal,
        currency: str,
        description: str,
        correlation_id: str,
        metadata: Optional[Mapping[str, str]] = None,
    ) -> CreatedOrder:
        self.create_calls.append(
            {
                "amount": amount,
                "currency": currency,
                "description": description,
                "correlation_id": correlation_id,
                "metadata": dict(metadata or {}),
            }
        )
        # Yield so concurrent callers interleave while the "remote" call is in flight
        await asyncio.sleep(self.create_delay)
        if self.fail_next_create is not None:
            error, self.fail_next_create = self.fail_next_create, None
            raise error
        order_id = f"{self.provider.upper()}-ORDER-{next(self._order_numbers)}"
        return CreatedOrder(
            provider_order_id=order_id,
            approval_url=f"https://{self.provider}.example/approve/{order_id}",
        )

    async def confirm_order(self, provider_order_id: str) -> OrderConfirmation:
        self.confirm_calls.append(provider_order_id)
        return self.confirmation

    async def verify_webhook_signature(self, headers: Mapping[str, str], raw_body: bytes) -> bool:
        return {k.lower(): v for k, v in headers.items()}.get("x-fake-signature") == "valid"

    def parse_webhook_event(self, raw_body: bytes) -> WebhookEvent:
        event = decode_event(raw_body)
        return WebhookEvent(
            provider=self.provider,
            event_id=event.get("id"),
            event_type=event.get("type", "fake.event"),
            kind=EventKind(event["kind"]),
            order_id=event.get("order_id"),
            capture_id=event.get("capture_id"),
            capture_ids=tuple(event.get("capture_ids", ())),
            failure_reason=event.get("reason"),
        )


def fake_webhook_body(kind: EventKind, **fields: Any) -> bytes:
    return json.dumps({"id": "EVT-1", "type": f"fake.{kind.value}", "kind": kind.value, **fields}).encode()


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Create test settings backed by a temporary SQLite file."""
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'sponsorships.db'}",
        stripe_secret_key="sk_test_fake_key_for_testing",
        stripe_webhook_secret="whsec_test_fake_secret",
        paypal_client_id="paypal-client",
        paypal_client_secret="paypal-secret",
        paypal_webhook_id="WH-TEST",
        reservation_poll_attempts=100,
        reservation_poll_delay_seconds=0.01,
        reservation_lease_seconds=60,
        app_name="sponsorship-payments-test",
        app_env="test",
        log_level="DEBUG",
    )


@pytest_asyncio.fixture
async def engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine, Any]:
    engine = create_engine_from_settings(test_settings)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest.fixture
def repository(session_factory: async_sessionmaker[AsyncSession]) -> SponsorshipRepository:
    return SponsorshipRepository(session_factory)


@pytest.fixture
def gateways() -> dict[str, FakeGateway]:
    return {PAYPAL: FakeGateway(PAYPAL), STRIPE: FakeGateway(STRIPE)}


@pytest.fixture
def processor(
    test_settings: Settings,
    repository: SponsorshipRepository,
    gateways: dict[str, FakeGateway],
) -> DonationProcessor:
    return DonationProcessor(test_settings, repository, gateways)


@pytest.fixture
def new_sponsorship() -> NewSponsorship:
    """Sample validated donation fields."""
    return NewSponsorship(
        user_id="user-1",
        sponsor_type="project",
        amount=Decimal("5.00"),
        currency="USD",
        payment_provider=PAYPAL,
        target_identifier="spring-campaign",
    )


@pytest.fixture
def transient_error() -> GatewayError:
    return GatewayError("connection reset", GatewayErrorType.TRANSIENT, PAYPAL)
