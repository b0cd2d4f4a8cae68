"""
Integration tests for the HTTP surface.

The app is driven in-process through httpx's ASGI transport with fake
gateways injected into a real processor and SQLite database.
"""
import asyncio
import json
from typing import Any, AsyncGenerator

import httpx
import pytest
import pytest_asyncio

from sponsorships.api.main import create_app
from sponsorships.config import Settings
from sponsorships.core.donation_processor import DonationProcessor
from sponsorships.integrations.gateway import PAYPAL, STRIPE, EventKind, GatewayError, GatewayErrorType

from .conftest import fake_webhook_body

VALID = {"X-Fake-Signature": "valid"}


@pytest_asyncio.fixture
async def client(test_settings: Settings, processor: DonationProcessor) -> AsyncGenerator[httpx.AsyncClient, Any]:
    """Create test HTTP client."""
    app = create_app(test_settings, processor=processor)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def donation_payload() -> dict[str, Any]:
    """Sample donation request data."""
    return {
        "sponsor_type": "project",
        "target_identifier": "spring-campaign",
        "amount": "5.00",
        "currency": "USD",
        "provider": "paypal",
    }


class TestDonationEndpoints:
    """Create, confirm and lookup."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_create_with_header_key_is_idempotent(
        self, client: httpx.AsyncClient, donation_payload, gateways
    ) -> None:
        headers = {"Idempotency-Key": "k1", "X-User-Id": "user-1"}

        first, second = await asyncio.gather(
            client.post("/donations/create", json=donation_payload, headers=headers),
            client.post("/donations/create", json=donation_payload, headers=headers),
        )

        assert first.status_code == 200
        assert second.status_code == 200
        assert first.json()["sponsorship_id"] == second.json()["sponsorship_id"]
        assert first.json()["order_id"] == second.json()["order_id"]
        assert len(gateways[PAYPAL].create_calls) == 1
        assert "X-Request-ID" in first.headers

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_validation_error_is_400(self, client: httpx.AsyncClient, donation_payload) -> None:
        response = await client.post("/donations/create", json={**donation_payload, "provider": "venmo"})

        assert response.status_code == 400
        assert response.json()["status"] == "error"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_malformed_body_is_400(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/donations/create", json={"amount": "lots"})

        assert response.status_code == 400
        assert response.json()["status"] == "error"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_key_conflict_is_409(self, client: httpx.AsyncClient, donation_payload) -> None:
        await client.post("/donations/create", json={**donation_payload, "idempotency_key": "k1"})
        response = await client.post(
            "/donations/create", json={**donation_payload, "idempotency_key": "k1", "amount": "9.00"}
        )

        assert response.status_code == 409

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_gateway_failure_is_503(self, client: httpx.AsyncClient, donation_payload, gateways) -> None:
        gateways[PAYPAL].fail_next_create = GatewayError("down", GatewayErrorType.TRANSIENT, PAYPAL)

        response = await client.post("/donations/create", json=donation_payload)

        assert response.status_code == 503
        assert response.json()["error_type"] == "transient"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_create_confirm_lookup(self, client: httpx.AsyncClient, donation_payload) -> None:
        headers = {"X-User-Id": "user-1"}
        created = (await client.post("/donations/create", json=donation_payload, headers=headers)).json()

        confirmed = await client.post("/donations/confirm", json={"order_id": created["order_id"]})
        replay = await client.post("/donations/confirm", json={"order_id": created["order_id"]})
        lookup = await client.get(f"/donations/{created['sponsorship_id']}", headers=headers)
        hidden = await client.get(f"/donations/{created['sponsorship_id']}", headers={"X-User-Id": "user-2"})

        assert confirmed.status_code == 200
        assert confirmed.json()["payment_status"] == "completed"
        assert replay.status_code == 200
        assert replay.json()["status"] == "warning"
        assert replay.json()["already_settled"] is True
        assert lookup.json()["sponsorship"]["status"] == "completed"
        assert hidden.status_code == 404

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_confirm_unknown_order_is_404(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/donations/confirm", json={"order_id": "NOPE"})

        assert response.status_code == 404
        assert response.json()["status"] == "error"


class TestWebhookEndpoints:
    """Webhook intake over HTTP."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_stripe_flow_complete_then_refund(self, client: httpx.AsyncClient, donation_payload) -> None:
        created = (
            await client.post("/donations/create", json={**donation_payload, "amount": "1.00", "provider": "stripe"})
        ).json()
        assert created["provider"] == STRIPE

        completed = await client.post(
            "/webhooks/stripe",
            content=fake_webhook_body(EventKind.ORDER_COMPLETED, order_id=created["order_id"], capture_id="pi_1"),
            headers=VALID,
        )
        refund_body = fake_webhook_body(EventKind.REFUNDED, capture_ids=["ch_1", "pi_1"])
        refunded = await client.post("/webhooks/stripe", content=refund_body, headers=VALID)
        replay = await client.post("/webhooks/stripe", content=refund_body, headers=VALID)

        assert completed.json()["outcome"] == "applied"
        assert refunded.json()["outcome"] == "applied"
        assert replay.status_code == 200
        assert replay.json()["outcome"] == "already_settled"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_invalid_signature_is_400(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            "/webhooks/paypal",
            content=json.dumps({"kind": "order_completed", "order_id": "X"}),
            headers={"X-Fake-Signature": "nope"},
        )

        assert response.status_code == 400
        assert response.json()["status"] == "error"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unmatched_event_is_acknowledged(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            "/webhooks/paypal",
            content=fake_webhook_body(EventKind.ORDER_COMPLETED, order_id="UNKNOWN"),
            headers=VALID,
        )

        assert response.status_code == 200
        assert response.json()["outcome"] == "unmatched"


class TestOpenAPI:
    """Documented error bodies."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_error_responses_documented(self, client: httpx.AsyncClient) -> None:
        schema = (await client.get("/openapi.json")).json()

        create_responses = schema["paths"]["/donations/create"]["post"]["responses"]
        assert set(create_responses) >= {"200", "400", "409", "502", "503"}
        assert create_responses["409"]["content"]["application/json"]["schema"] == {
            "$ref": "#/components/schemas/ErrorResponse"
        }
        assert "404" in schema["paths"]["/donations/{sponsorship_id}"]["get"]["responses"]
        assert "ErrorResponse" in schema["components"]["schemas"]


class TestMonitoringEndpoints:
    """Health and metrics."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_metrics(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "donation_requests_total" in response.text

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_health_without_lifespan(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "alive"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_health_checks(self, test_settings: Settings, processor, session_factory) -> None:
        from sponsorships.cache import InMemoryKeyValueStore
        from sponsorships.monitoring.health import HealthCheck

        app = create_app(
            test_settings,
            processor=processor,
            health_check=HealthCheck(session_factory, InMemoryKeyValueStore()),
        )
        async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as ac:
            response = await ac.get("/health")

        assert response.status_code == 200
        assert response.json()["checks"]["database"]["status"] == "healthy"
        assert response.json()["checks"]["kv_store"]["status"] == "healthy"
