"""
PayPal Orders v2 gateway.

Implements:
- OAuth client-credentials token, cached in the key-value store until shortly before expiry
- Order creation with a PayPal-Request-Id so repeated creates return the same order
- Capture, tolerating orders that were already captured
- Webhook verification through the verify-webhook-signature API
"""
import json
import time
from decimal import Decimal
from typing import Any, Mapping, Optional

import httpx
import structlog

from sponsorships.cache import InMemoryKeyValueStore, KeyValueStore
from sponsorships.config import Settings, get_settings
from sponsorships.integrations.gateway import (
    PAYPAL,
    CircuitBreaker,
    CreatedOrder,
    EventKind,
    GatewayError,
    GatewayErrorType,
    OrderConfirmation,
    PaymentGateway,
    WebhookEvent,
    decode_event,
    format_decimal_amount,
)
from sponsorships.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

TRANSMISSION_HEADERS = {
    "transmission_id": "paypal-transmission-id",
    "transmission_time": "paypal-transmission-time",
    "cert_url": "paypal-cert-url",
    "auth_algo": "paypal-auth-algo",
    "transmission_sig": "paypal-transmission-sig",
}

COMPLETED_EVENTS = {"PAYMENT.CAPTURE.COMPLETED", "PAYMENT.CAPTURE.DONE"}
FAILED_EVENTS = {"PAYMENT.CAPTURE.DENIED", "PAYMENT.CAPTURE.DECLINED"}
REFUND_EVENTS = {"PAYMENT.CAPTURE.REFUNDED", "PAYMENT.CAPTURE.REVERSED"}

# Refresh the token this many seconds before PayPal expires it
TOKEN_EXPIRY_MARGIN_SECONDS = 60


def _first_capture(order: Mapping[str, Any]) -> Optional[Mapping[str, Any]]:
    for unit in order.get("purchase_units") or []:
        captures = (unit.get("payments") or {}).get("captures") or []
        if captures:
            return captures[0]
    return None


def _link(resource: Mapping[str, Any], *rels: str) -> Optional[str]:
    for rel in rels:
        for link in resource.get("links") or []:
            if link.get("rel") == rel:
                return link.get("href")
    return None


class PayPalGateway(PaymentGateway):
    """PayPal REST client behind the shared gateway contract."""

    provider = PAYPAL

    def __init__(
        self,
        settings: Optional[Settings] = None,
        kv_store: Optional[KeyValueStore] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.kv_store = kv_store or InMemoryKeyValueStore()
        self.api_base = self.settings.paypal_api_base
        self.http_client = http_client or httpx.AsyncClient(
            base_url=self.api_base,
            timeout=httpx.Timeout(self.settings.gateway_timeout_seconds, connect=5.0),
        )
        self.circuit_breaker = CircuitBreaker(PAYPAL)

        logger.info("paypal_gateway_initialized", mode=self.settings.paypal_mode)

    @property
    def _token_cache_key(self) -> str:
        return f"paypal:access_token:{self.settings.paypal_mode}:{self.settings.paypal_client_id}"

    def _require(self, value: str, name: str) -> str:
        if not value:
            raise GatewayError(
                f"{name} not configured", GatewayErrorType.CONFIGURATION, PAYPAL
            )
        return value

    @staticmethod
    def _classify_status(status_code: int) -> GatewayErrorType:
        if status_code == 429:
            return GatewayErrorType.RATE_LIMIT
        if status_code >= 500:
            return GatewayErrorType.TRANSIENT
        return GatewayErrorType.PERMANENT

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        timeout: Optional[float] = None,
        **kwargs: Any,
    ) -> httpx.Response:
        """
        Send a request, translating transport failures into GatewayError.

        Non-2xx responses are returned to the caller, which decides whether
        they are errors.
        """
        start = time.monotonic()
        if timeout is not None:
            kwargs["timeout"] = httpx.Timeout(timeout, connect=5.0)
        try:
            response = await self.http_client.request(method, f"{self.api_base}{path}", **kwargs)
        except httpx.TimeoutException as e:
            metrics.record_gateway_call(PAYPAL, operation, "timeout", time.monotonic() - start)
            metrics.record_gateway_error(PAYPAL, GatewayErrorType.TIMEOUT.value)
            logger.error("paypal_request_timeout", operation=operation, error=str(e))
            raise GatewayError(
                f"PayPal {operation} timed out", GatewayErrorType.TIMEOUT, PAYPAL, e
            )
        except httpx.HTTPError as e:
            metrics.record_gateway_call(PAYPAL, operation, "error", time.monotonic() - start)
            metrics.record_gateway_error(PAYPAL, GatewayErrorType.TRANSIENT.value)
            logger.error("paypal_request_failed", operation=operation, error=str(e))
            raise GatewayError(
                f"PayPal {operation} failed: {e}", GatewayErrorType.TRANSIENT, PAYPAL, e
            )
        metrics.record_gateway_call(
            PAYPAL, operation, str(response.status_code), time.monotonic() - start
        )
        return response

    def _error_from_response(self, operation: str, response: httpx.Response) -> GatewayError:
        error_type = self._classify_status(response.status_code)
        metrics.record_gateway_error(PAYPAL, error_type.value)
        logger.error(
            "paypal_api_error",
            operation=operation,
            status_code=response.status_code,
            error_type=error_type.value,
            body=response.text[:500],
        )
        return GatewayError(
            f"PayPal {operation} failed: {response.status_code} {response.text[:300]}",
            error_type,
            PAYPAL,
        )

    async def _access_token(self) -> str:
        cached = await self.kv_store.get(self._token_cache_key)
        if cached:
            return cached

        client_id = self._require(self.settings.paypal_client_id, "PAYPAL_CLIENT_ID")
        client_secret = self._require(self.settings.paypal_client_secret, "PAYPAL_CLIENT_SECRET")
        response = await self._request(
            "oauth_token",
            "POST",
            "/v1/oauth2/token",
            auth=(client_id, client_secret),
            data={"grant_type": "client_credentials"},
            headers={"Accept": "application/json"},
        )
        if response.status_code != 200:
            raise self._error_from_response("oauth_token", response)

        data = response.json()
        token = data["access_token"]
        ttl = int(data.get("expires_in", 0)) - TOKEN_EXPIRY_MARGIN_SECONDS
        if ttl > 0:
            await self.kv_store.set(self._token_cache_key, token, ttl_seconds=ttl)
        return token

    async def _auth_headers(self, **extra: str) -> dict[str, str]:
        token = await self._access_token()
        return {"Authorization": f"Bearer {token}", "Content-Type": "application/json", **extra}

    async def create_order(
        self,
        amount: Decimal,
        currency: str,
        description: str,
        correlation_id: str,
        metadata: Optional[Mapping[str, str]] = None,
    ) -> CreatedOrder:
        """
        Create a CAPTURE-intent order.

        ``correlation_id`` is sent as both ``custom_id`` and PayPal-Request-Id,
        so PayPal answers a repeated create with the original order.
        """
        return await self.circuit_breaker.call(
            self._create_order, amount, currency, description, correlation_id
        )

    async def _create_order(
        self, amount: Decimal, currency: str, description: str, correlation_id: str
    ) -> CreatedOrder:
        payload = {
            "intent": "CAPTURE",
            "purchase_units": [
                {
                    "amount": {
                        "currency_code": currency.upper(),
                        "value": format_decimal_amount(amount, currency),
                    },
                    "description": description[:127],
                    "custom_id": correlation_id[:127],
                }
            ],
        }
        logger.info("creating_paypal_order", amount=str(amount), currency=currency)

        headers = await self._auth_headers(**{"PayPal-Request-Id": correlation_id})
        response = await self._request(
            "create_order", "POST", "/v2/checkout/orders", json=payload, headers=headers
        )
        if response.status_code not in (200, 201):
            raise self._error_from_response("create_order", response)

        order = response.json()
        logger.info("paypal_order_created", order_id=order["id"], status=order.get("status"))
        return CreatedOrder(
            provider_order_id=order["id"],
            approval_url=_link(order, "approve", "payer-action", "approval_url"),
            raw=order,
        )

    async def confirm_order(self, provider_order_id: str) -> OrderConfirmation:
        """Capture the order; an order captured earlier is read back instead."""
        return await self.circuit_breaker.call(self._confirm_order, provider_order_id)

    async def _confirm_order(self, provider_order_id: str) -> OrderConfirmation:
        headers = await self._auth_headers(
            **{"PayPal-Request-Id": f"capture-{provider_order_id}"}
        )
        response = await self._request(
            "capture_order",
            "POST",
            f"/v2/checkout/orders/{provider_order_id}/capture",
            headers=headers,
        )

        if response.status_code in (200, 201):
            return self._confirmation_from_order(response.json())

        if response.status_code == 422:
            issues = {d.get("issue") for d in response.json().get("details") or []}
            if "ORDER_ALREADY_CAPTURED" in issues:
                logger.info("paypal_order_already_captured", order_id=provider_order_id)
                return await self._read_order(provider_order_id)
            if "ORDER_NOT_APPROVED" in issues:
                return OrderConfirmation(paid=False, provider_status="NOT_APPROVED")

        raise self._error_from_response("capture_order", response)

    async def _read_order(self, provider_order_id: str) -> OrderConfirmation:
        response = await self._request(
            "get_order",
            "GET",
            f"/v2/checkout/orders/{provider_order_id}",
            headers=await self._auth_headers(),
            timeout=self.settings.gateway_read_timeout_seconds,
        )
        if response.status_code != 200:
            raise self._error_from_response("get_order", response)
        return self._confirmation_from_order(response.json())

    @staticmethod
    def _confirmation_from_order(order: Mapping[str, Any]) -> OrderConfirmation:
        capture = _first_capture(order)
        capture_status = capture.get("status") if capture else None
        paid = order.get("status") == "COMPLETED" and capture_status in (None, "COMPLETED")
        return OrderConfirmation(
            paid=paid,
            capture_id=capture.get("id") if capture else None,
            provider_status=order.get("status"),
        )

    async def verify_webhook_signature(self, headers: Mapping[str, str], raw_body: bytes) -> bool:
        """
        Ask PayPal to verify a delivery.

        The received body is embedded verbatim as ``webhook_event``;
        re-serializing it would change the bytes PayPal signed.
        """
        webhook_id = self._require(self.settings.paypal_webhook_id, "PAYPAL_WEBHOOK_ID")
        lowered = {k.lower(): v for k, v in headers.items()}
        fields = {name: lowered.get(header) for name, header in TRANSMISSION_HEADERS.items()}
        missing = [header for name, header in TRANSMISSION_HEADERS.items() if not fields[name]]
        if missing:
            logger.warning("paypal_webhook_headers_missing", missing=missing)
            return False

        try:
            body_text = raw_body.decode("utf-8")
            if not isinstance(json.loads(body_text), dict):
                return False
        except (UnicodeDecodeError, ValueError):
            logger.warning("paypal_webhook_body_not_json")
            return False

        fields["webhook_id"] = webhook_id
        content = json.dumps(fields)[:-1] + ', "webhook_event": ' + body_text + "}"

        return await self.circuit_breaker.call(self._verify, content)

    async def _verify(self, content: str) -> bool:
        response = await self._request(
            "verify_webhook",
            "POST",
            "/v1/notifications/verify-webhook-signature",
            content=content.encode("utf-8"),
            headers=await self._auth_headers(),
            timeout=self.settings.gateway_read_timeout_seconds,
        )
        if response.status_code != 200:
            raise self._error_from_response("verify_webhook", response)
        return response.json().get("verification_status") == "SUCCESS"

    def parse_webhook_event(self, raw_body: bytes) -> WebhookEvent:
        """Map PayPal webhook payloads onto the state machine's event kinds."""
        event = decode_event(raw_body)
        event_type = event.get("event_type") or ""
        resource = event.get("resource") or {}
        related = (resource.get("supplementary_data") or {}).get("related_ids") or {}
        order_id = related.get("order_id") or resource.get("order_id")

        if event_type in COMPLETED_EVENTS:
            return WebhookEvent(
                provider=PAYPAL,
                event_id=event.get("id"),
                event_type=event_type,
                kind=EventKind.ORDER_COMPLETED,
                order_id=order_id,
                capture_id=resource.get("id") or resource.get("capture_id"),
            )

        if event_type == "CHECKOUT.ORDER.COMPLETED":
            capture = _first_capture(resource)
            return WebhookEvent(
                provider=PAYPAL,
                event_id=event.get("id"),
                event_type=event_type,
                kind=EventKind.ORDER_COMPLETED,
                order_id=resource.get("id"),
                capture_id=capture.get("id") if capture else None,
            )

        if event_type in FAILED_EVENTS:
            reason = (resource.get("status_details") or {}).get("reason")
            return WebhookEvent(
                provider=PAYPAL,
                event_id=event.get("id"),
                event_type=event_type,
                kind=EventKind.PAYMENT_FAILED,
                order_id=order_id,
                capture_id=resource.get("id"),
                failure_reason=reason or event_type,
            )

        if event_type in REFUND_EVENTS:
            # REFUNDED carries the refund, whose "up" link points at the capture;
            # REVERSED carries the capture itself.
            candidates = []
            up = _link(resource, "up")
            if up:
                candidates.append(up.rstrip("/").rsplit("/", 1)[-1])
            if resource.get("id"):
                candidates.append(resource["id"])
            return WebhookEvent(
                provider=PAYPAL,
                event_id=event.get("id"),
                event_type=event_type,
                kind=EventKind.REFUNDED,
                capture_ids=tuple(candidates),
            )

        return WebhookEvent(
            provider=PAYPAL,
            event_id=event.get("id"),
            event_type=event_type,
            kind=EventKind.IGNORED,
        )

    async def close(self) -> None:
        await self.http_client.aclose()
