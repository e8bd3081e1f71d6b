"""
Structured logging for the Bazzarly API using structlog.

Key Features:
- JSON log lines for aggregation (console rendering in development)
- Request id propagation through structlog context variables
- Request/response logging hooks with timing
- Security audit events: failed logins, suspicious activity, rate limiting
- Business events: listings created/viewed/sold/moderated, searches, sign-ups
"""

import logging
import logging.config
import time
import uuid
from typing import Any, Optional

import structlog
from flask import Flask, g, request

from bazzarly.monitoring.metrics import auth_events_total, business_events_total, request_duration_seconds


def setup_structured_logging(
    log_level: str = 'INFO',
    log_format: str = 'json',
    app: Optional[Flask] = None
) -> structlog.stdlib.BoundLogger:
    """
    Configure structlog on top of the standard library logging module.

    Args:
        log_level: Root log level
        log_format: ``json`` or ``console``
        app: Optional Flask application whose config overrides the arguments

    Returns:
        Logger bound to the application name
    """
    if app is not None:
        log_level = app.config.get('LOG_LEVEL', log_level)
        log_format = app.config.get('LOG_FORMAT', log_format)

    renderer = (
        structlog.dev.ConsoleRenderer(colors=False)
        if log_format == 'console'
        else structlog.processors.JSONRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )

    logging.config.dictConfig({
        'version': 1,
        'disable_existing_loggers': False,
        'formatters': {'plain': {'format': '%(message)s'}},
        'handlers': {
            'console': {
                'class': 'logging.StreamHandler',
                'formatter': 'plain',
                'stream': 'ext://sys.stdout',
            },
        },
        'root': {'handlers': ['console'], 'level': log_level},
    })

    name = app.config.get('APP_NAME', 'bazzarly-api') if app is not None else 'bazzarly-api'
    return structlog.get_logger(name)


def init_request_logging(app: Flask, logger: Optional[structlog.stdlib.BoundLogger] = None) -> None:
    """Install before/after request hooks that log every request with its duration."""
    logger = logger or structlog.get_logger('bazzarly.requests')

    @app.before_request
    def bind_request_context():
        request_id = request.headers.get('X-Request-ID') or uuid.uuid4().hex
        g.request_id = request_id
        g.request_started = time.perf_counter()
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)

    @app.after_request
    def log_request(response):
        duration = time.perf_counter() - getattr(g, 'request_started', time.perf_counter())
        endpoint = request.endpoint or 'unknown'
        request_duration_seconds.labels(method=request.method, endpoint=endpoint).observe(duration)

        if app.config.get('REQUEST_LOGGING_ENABLED', True):
            current_user = getattr(g, 'current_user', None)
            logger.info(
                "HTTP Request",
                method=request.method,
                path=request.path,
                status_code=response.status_code,
                duration_ms=round(duration * 1000, 2),
                ip=request.remote_addr,
                user_agent=(request.headers.get('User-Agent') or '')[:200],
                user_id=str(current_user.id) if current_user is not None else None,
            )

        request_id = getattr(g, 'request_id', None)
        if request_id:
            response.headers['X-Request-ID'] = request_id
        return response


class SecurityAuditLogger:
    """Security events for audit trails."""

    def __init__(self, logger: Optional[structlog.stdlib.BoundLogger] = None):
        self.logger = logger or structlog.get_logger('bazzarly.security')

    def log_failed_login(self, identifier: str, reason: str, ip: Optional[str] = None) -> None:
        auth_events_total.labels(event='login', outcome='failure').inc()
        self.logger.warning(
            "Failed login attempt",
            event_category='security',
            identifier=identifier,
            reason=reason,
            ip=ip,
        )

    def log_successful_login(self, user_id: Any, ip: Optional[str] = None) -> None:
        auth_events_total.labels(event='login', outcome='success').inc()
        self.logger.info("User logged in", event_category='security', user_id=str(user_id), ip=ip)

    def log_account_locked(self, user_id: Any, locked_until: Any) -> None:
        auth_events_total.labels(event='lockout', outcome='locked').inc()
        self.logger.warning(
            "Account locked after repeated failures",
            event_category='security',
            user_id=str(user_id),
            locked_until=str(locked_until),
        )

    def log_suspicious_activity(self, activity: str, **details: Any) -> None:
        self.logger.warning(
            "Suspicious activity detected",
            event_category='security',
            activity=activity,
            **details
        )

    def log_rate_limit_exceeded(self, ip: Optional[str], endpoint: Optional[str], limit: Optional[str] = None) -> None:
        self.logger.warning(
            "Rate limit exceeded",
            event_category='security',
            ip=ip,
            endpoint=endpoint,
            limit=limit,
        )


class BusinessEventLogger:
    """Marketplace activity events."""

    def __init__(self, logger: Optional[structlog.stdlib.BoundLogger] = None):
        self.logger = logger or structlog.get_logger('bazzarly.business')

    def _event(self, event: str, message: str, **fields: Any) -> None:
        business_events_total.labels(event=event).inc()
        self.logger.info(message, event_category='business', business_event=event, **fields)

    def product_created(self, product_id: Any, seller_id: Any, category: str, price: float) -> None:
        self._event(
            'product_created', "Product created",
            product_id=str(product_id), seller_id=str(seller_id), category=category, price=price,
        )

    def product_viewed(self, product_id: Any, viewer_id: Any = None) -> None:
        self._event(
            'product_viewed', "Product viewed",
            product_id=str(product_id), viewer_id=str(viewer_id) if viewer_id else None,
        )

    def product_sold(self, product_id: Any, buyer_id: Any = None, price: Optional[float] = None) -> None:
        self._event(
            'product_sold', "Product sold",
            product_id=str(product_id), buyer_id=str(buyer_id) if buyer_id else None, price=price,
        )

    def product_moderated(self, product_id: Any, admin_id: Any, status: str) -> None:
        self._event(
            'product_moderated', "Product moderated",
            product_id=str(product_id), admin_id=str(admin_id), status=status,
        )

    def search_performed(self, query: str, results_count: int, user_id: Any = None) -> None:
        self._event(
            'search_performed', "Search performed",
            query=query, results_count=results_count, user_id=str(user_id) if user_id else None,
        )

    def user_registered(self, user_id: Any, role: str) -> None:
        self._event('user_registered', "User registered", user_id=str(user_id), role=role)


__all__ = [
    'BusinessEventLogger',
    'SecurityAuditLogger',
    'init_request_logging',
    'setup_structured_logging',
]
