"""
Prometheus metrics for sponsorship payment monitoring.

Tracks:
- Donation requests by provider and outcome
- Reservation protocol outcomes
- Provider gateway calls, errors and circuit breaker state
- Webhook deliveries and their reconciliation outcome
- Sponsorship state transitions
"""
from prometheus_client import Counter, Gauge, Histogram

# Donation metrics
donation_requests_total = Counter(
    "donation_requests_total",
    "Total number of create-donation requests",
    ["provider", "outcome"],  # created, existing, error, timeout
)

donation_amount = Histogram(
    "donation_amount",
    "Donation amounts in major currency units",
    buckets=(1, 5, 10, 25, 50, 100, 250, 500, 1000, 5000, 10000),
)

donation_processing_duration_seconds = Histogram(
    "donation_processing_duration_seconds",
    "Create-donation processing duration in seconds",
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

# Reservation metrics
reservation_outcomes_total = Counter(
    "reservation_outcomes_total",
    "Reservation protocol outcomes",
    ["outcome"],  # reserved, existing, waited, timeout, stale_takeover, lost_writeback
)

# Gateway metrics
gateway_requests_total = Counter(
    "gateway_requests_total",
    "Total provider gateway requests",
    ["provider", "operation", "status"],
)

gateway_errors_total = Counter(
    "gateway_errors_total",
    "Total provider gateway errors",
    ["provider", "error_type"],
)

gateway_request_duration_seconds = Histogram(
    "gateway_request_duration_seconds",
    "Provider gateway call duration in seconds",
    ["provider", "operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0, 30.0),
)

gateway_circuit_breaker_state = Gauge(
    "gateway_circuit_breaker_state",
    "Gateway circuit breaker state (0=closed, 1=open, 2=half_open)",
    ["provider"],
)

# Webhook metrics
webhook_events_received_total = Counter(
    "webhook_events_received_total",
    "Total webhook events received",
    ["provider", "event_type"],
)

webhook_events_processed_total = Counter(
    "webhook_events_processed_total",
    "Total webhook events processed",
    ["provider", "outcome"],  # applied, already_settled, unmatched, ignored
)

webhook_signature_failures_total = Counter(
    "webhook_signature_failures_total",
    "Webhook deliveries rejected by signature verification",
    ["provider"],
)

webhook_processing_duration_seconds = Histogram(
    "webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    ["provider"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

# State machine metrics
state_transitions_total = Counter(
    "state_transitions_total",
    "Sponsorship state transition attempts",
    ["target", "outcome"],
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_donation_request(provider: str, outcome: str, amount: float) -> None:
        """Record a create-donation request."""
        donation_requests_total.labels(provider=provider, outcome=outcome).inc()
        donation_amount.observe(amount)

    @staticmethod
    def record_donation_duration(duration_seconds: float) -> None:
        donation_processing_duration_seconds.observe(duration_seconds)

    @staticmethod
    def record_reservation_outcome(outcome: str) -> None:
        reservation_outcomes_total.labels(outcome=outcome).inc()

    @staticmethod
    def record_gateway_call(
        provider: str, operation: str, status: str, duration_seconds: float
    ) -> None:
        """Record a provider gateway call."""
        gateway_requests_total.labels(provider=provider, operation=operation, status=status).inc()
        gateway_request_duration_seconds.labels(provider=provider, operation=operation).observe(
            duration_seconds
        )

    @staticmethod
    def record_gateway_error(provider: str, error_type: str) -> None:
        gateway_errors_total.labels(provider=provider, error_type=error_type).inc()

    @staticmethod
    def set_circuit_breaker_state(provider: str, state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        gateway_circuit_breaker_state.labels(provider=provider).set(state_map.get(state, 0))

    @staticmethod
    def record_webhook_event(
        provider: str, event_type: str, outcome: str, duration_seconds: float
    ) -> None:
        """Record webhook event processing."""
        webhook_events_received_total.labels(provider=provider, event_type=event_type).inc()
        webhook_events_processed_total.labels(provider=provider, outcome=outcome).inc()
        webhook_processing_duration_seconds.labels(provider=provider).observe(duration_seconds)

    @staticmethod
    def record_webhook_signature_failure(provider: str) -> None:
        webhook_signature_failures_total.labels(provider=provider).inc()

    @staticmethod
    def record_state_transition(target: str, outcome: str) -> None:
        state_transitions_total.labels(target=target, outcome=outcome).inc()


# Export singleton instance
metrics = MetricsCollector()
