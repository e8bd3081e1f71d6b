"""
Prometheus metrics for the Bazzarly API.
"""

from typing import Tuple

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

validation_failures_total = Counter(
    'bazzarly_validation_failures_total',
    'Requests rejected by validation',
    ['schema']
)

business_events_total = Counter(
    'bazzarly_business_events_total',
    'Marketplace business events',
    ['event']
)

auth_events_total = Counter(
    'bazzarly_auth_events_total',
    'Authentication events by outcome',
    ['event', 'outcome']
)

errors_total = Counter(
    'bazzarly_errors_total',
    'Error responses by exception type and status',
    ['error_type', 'status']
)

request_duration_seconds = Histogram(
    'bazzarly_request_duration_seconds',
    'HTTP request duration',
    ['method', 'endpoint'],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0)
)


def render_metrics() -> Tuple[bytes, str]:
    """Current metrics in the Prometheus text format, with its content type."""
    return generate_latest(), CONTENT_TYPE_LATEST
