from __future__ import annotations

"""
Prometheus metrics for token exchanges and background refreshes.

From these, you can derive things like:
- IAM exchange error rate:
    sum(rate(memorystore_iam_token_exchanges_total{outcome="error"}[5m]))
- exchanges per opened connection, to spot connection storms
"""

from prometheus_client import Counter, Histogram, start_http_server

TOKEN_EXCHANGES = Counter(
    "memorystore_iam_token_exchanges_total",
    "Number of GenerateAccessToken calls, by outcome (success/error)",
    labelnames=("outcome",),
)

TOKEN_EXCHANGE_DURATION = Histogram(
    "memorystore_iam_token_exchange_duration_seconds",
    "GenerateAccessToken latency in seconds, retries included",
)

TOKEN_REFRESH_FAILURES = Counter(
    "memorystore_iam_token_refresh_failures_total",
    "Number of failed background token refreshes",
)


def serve_metrics(port: int) -> None:
    """
    Expose the default registry over HTTP on the given port.
    """
    start_http_server(port)
