"""
Flask error handlers mapping every exception family onto the API envelope.

- ``BaseBusinessException`` subclasses answer with their own status and message
- ``DatabaseException`` answers 503 for connectivity problems, 500 otherwise
- ``SchemaNotFoundError`` is a server misconfiguration (500)
- HTTP errors (404, 405, 429, ...) keep their status with a JSON body
- Anything else is a 500 whose details are only exposed in DEBUG
"""

import structlog
from flask import Flask, current_app, request
from werkzeug.exceptions import HTTPException

from bazzarly.business.exceptions import BaseBusinessException
from bazzarly.data.exceptions import ConnectionException, DatabaseException, TimeoutException
from bazzarly.monitoring.logging import SecurityAuditLogger
from bazzarly.monitoring.metrics import errors_total
from bazzarly.utils.response import error_response
from bazzarly.utils.validators import SchemaNotFoundError

logger = structlog.get_logger(__name__)

DEFAULT_RATE_LIMIT_MESSAGE = 'Too many requests from this IP, please try again later.'


def _count(error: Exception, status: int) -> None:
    errors_total.labels(error_type=type(error).__name__, status=str(status)).inc()


def register_error_handlers(app: Flask, security_log: SecurityAuditLogger = None) -> None:
    """Install the JSON error handlers on ``app``."""
    security_log = security_log or SecurityAuditLogger()

    @app.errorhandler(BaseBusinessException)
    def handle_business_exception(error: BaseBusinessException):
        _count(error, error.http_status_code)
        logger.info(
            "Business rule rejected request",
            error_code=error.error_code,
            category=error.category.value,
            status=error.http_status_code,
            message=error.message,
            path=request.path,
        )
        return error.to_dict(), error.http_status_code

    @app.errorhandler(DatabaseException)
    def handle_database_exception(error: DatabaseException):
        status = 503 if isinstance(error, (ConnectionException, TimeoutException)) else 500
        _count(error, status)
        message = "Service temporarily unavailable" if status == 503 else "Internal server error"
        extra = {'details': error.to_dict()} if current_app.debug else {}
        return error_response(message, status, error_code="DATABASE_ERROR", **extra)

    @app.errorhandler(SchemaNotFoundError)
    def handle_schema_not_found(error: SchemaNotFoundError):
        _count(error, 500)
        logger.error("Validation schema not found", schema=error.schema_name, path=request.path)
        return error_response("Validation schema not found", 500, error_code="SCHEMA_NOT_FOUND")

    @app.errorhandler(HTTPException)
    def handle_http_exception(error: HTTPException):
        status = error.code or 500
        _count(error, status)

        if status == 404:
            logger.warning("Route not found", path=request.path, method=request.method, ip=request.remote_addr)
            return error_response("Route not found", 404, error_code="NOT_FOUND", endpoint=request.path)

        if status == 429:
            limit = getattr(error, 'limit', None)
            message = getattr(limit, 'error_message', None) or DEFAULT_RATE_LIMIT_MESSAGE
            security_log.log_rate_limit_exceeded(
                request.remote_addr, request.path, str(getattr(limit, 'limit', '')) or None
            )
            return error_response(message, 429, error_code="RATE_LIMIT_EXCEEDED")

        if status == 405:
            return error_response("Method not allowed", 405, error_code="METHOD_NOT_ALLOWED")

        if status == 400:
            return error_response("Malformed request", 400, error_code="BAD_REQUEST")

        return error_response(error.description or error.name, status, error_code=error.name.upper().replace(' ', '_'))

    @app.errorhandler(Exception)
    def handle_unexpected_exception(error: Exception):
        _count(error, 500)
        logger.error(
            "Unhandled application error",
            error_type=type(error).__name__,
            error=str(error),
            path=request.path,
            method=request.method,
            ip=request.remote_addr,
            exc_info=True,
        )
        extra = {'details': str(error)} if current_app.debug else {}
        return error_response("Something went wrong!", 500, error_code="INTERNAL_ERROR", **extra)


__all__ = ['register_error_handlers']
