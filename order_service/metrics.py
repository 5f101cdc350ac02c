from prometheus_client import Counter, Gauge, Histogram

SAGA_OUTCOMES = Counter(
    "order_saga_outcomes_total",
    "Order saga outcomes",
    ["outcome"],  # confirmed | payment_declined | insufficient_stock | invalid_input | service_unavailable
)

SAGA_DURATION = Histogram(
    "order_saga_duration_seconds",
    "End-to-end order saga duration",
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0],
)

CIRCUIT_STATE = Gauge(
    "circuit_breaker_state",
    "Circuit breaker state (0=closed, 1=half_open, 2=open)",
    ["breaker"],
)

CIRCUIT_CALLS = Counter(
    "circuit_breaker_calls_total",
    "Calls seen by a circuit breaker",
    ["breaker", "result"],  # success | failure | rejected
)

EVENTS_REPUBLISHED = Counter(
    "order_events_republished_total",
    "Events re-published by the reconciliation sweep",
    ["event_type"],
)
