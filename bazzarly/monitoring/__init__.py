"""Observability: structlog configuration, audit/business event loggers and Prometheus metrics."""

from bazzarly.monitoring.logging import (
    BusinessEventLogger,
    SecurityAuditLogger,
    init_request_logging,
    setup_structured_logging,
)
from bazzarly.monitoring.metrics import render_metrics

__all__ = [
    'BusinessEventLogger',
    'SecurityAuditLogger',
    'init_request_logging',
    'render_metrics',
    'setup_structured_logging',
]
