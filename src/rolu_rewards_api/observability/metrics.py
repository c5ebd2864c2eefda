from __future__ import annotations

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response

operation_total = Counter(
    "rolu_operation_total",
    "Count of critical operations.",
    labelnames=("operation", "outcome", "error_code"),
)
operation_duration_seconds = Histogram(
    "rolu_operation_duration_seconds",
    "Duration of critical operations in seconds.",
    labelnames=("operation", "outcome"),
    buckets=(
        0.01,
        0.05,
        0.1,
        0.25,
        0.5,
        1.0,
        2.5,
        5.0,
        10.0,
        30.0,
        60.0,
        120.0,
        300.0,
    ),
)

settlement_batches_total = Counter(
    "rolu_settlement_batches_total",
    "Count of settlement batch transactions by outcome.",
    labelnames=("outcome",),
)

settlement_transfers_total = Counter(
    "rolu_settlement_transfers_total",
    "Count of individual queued transfers by settlement outcome.",
    labelnames=("outcome",),
)

admin_wallet_balance_wei = Gauge(
    "rolu_admin_wallet_balance_wei",
    "Last observed native balance of the settlement admin wallet, in wei.",
)

claim_confirmations_total = Counter(
    "rolu_claim_confirmations_total",
    "Count of client-reported claim confirmations by outcome.",
    labelnames=("outcome",),
)


def render_metrics() -> Response:
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
