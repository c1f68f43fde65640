"""
Prometheus-based metrics for production monitoring.
Provides /metrics endpoint for scraping.
"""
from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST
from fastapi import APIRouter, Response


# Counters
orders_created_total = Counter(
    "orders_created_total",
    "Total number of orders created",
    ["kind"],  # pending, zero_price, payment
)

checkout_rejected_total = Counter(
    "checkout_rejected_total",
    "Checkout attempts rejected before an order was created",
    ["reason"],
)

reservations_total = Counter(
    "reservations_total",
    "Card reservation outcomes per unit",
    ["outcome"],  # claimed, stolen, promoted_owner, locked
)

fulfillments_total = Counter(
    "fulfillments_total",
    "Fulfillment outcomes",
    ["outcome"],  # delivered, paid_no_stock, payment, already_processed, amount_mismatch
)

compensations_total = Counter(
    "compensations_total",
    "Compensating actions",
    ["comp_type", "status"],
)

webhook_requests_total = Counter(
    "webhook_requests_total",
    "Payment notifications received",
    ["result"],  # success, bad_signature, amount_mismatch, ignored, error
)

gateway_requests_total = Counter(
    "gateway_requests_total",
    "Total payment gateway API requests",
    ["method", "status"],
)

telegram_requests_total = Counter(
    "telegram_requests_total",
    "Total Telegram API requests",
    ["method", "status"],
)

circuit_breaker_state = Gauge(
    "circuit_breaker_state",
    "Circuit breaker state (0=closed, 1=open, 2=half-open)",
    ["name"],
)

# Histograms
gateway_request_duration_seconds = Histogram(
    "gateway_request_duration_seconds",
    "Payment gateway request duration",
    ["method"],
    buckets=[0.1, 0.5, 1, 2, 5, 10],
)

# Gauges
expired_orders_cancelled = Gauge(
    "expired_orders_cancelled",
    "Pending orders cancelled by the last expiry sweep",
)


# Metrics endpoint router
router = APIRouter()


@router.get("/metrics")
def metrics_endpoint() -> Response:
    """Prometheus metrics endpoint for scraping."""
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST,
    )
