"""
Database exception hierarchy and pymongo error translation.

PyMongo errors raised by the data layer are converted into
``DatabaseException`` subclasses carrying the operation and collection, counted
in Prometheus and logged through structlog. Transient failures (connection
loss, timeouts) are retried with exponential backoff via tenacity.
"""

import logging
from enum import Enum
from functools import wraps
from typing import Any, Callable, Dict, Optional, Type

import pymongo.errors
import structlog
from prometheus_client import Counter
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

logger = structlog.get_logger(__name__)

database_errors_total = Counter(
    'bazzarly_database_errors_total',
    'Total database errors by type and operation',
    ['error_type', 'operation']
)


class DatabaseOperationType(Enum):
    READ = "read"
    WRITE = "write"
    AGGREGATE = "aggregate"
    INDEX = "index"
    HEALTH = "health"


class DatabaseException(Exception):
    """Base exception for all database failures."""

    retry_recommended = False

    def __init__(
        self,
        message: str,
        operation: Optional[DatabaseOperationType] = None,
        database: Optional[str] = None,
        collection: Optional[str] = None,
        original_error: Optional[Exception] = None
    ):
        super().__init__(message)
        self.message = message
        self.operation = operation
        self.database = database
        self.collection = collection
        self.original_error = original_error

        database_errors_total.labels(
            error_type=self.__class__.__name__,
            operation=operation.value if operation else "unknown"
        ).inc()

        logger.error(
            "Database exception occurred",
            error_type=self.__class__.__name__,
            message=message,
            operation=operation.value if operation else None,
            database=database,
            collection=collection,
            original_error=str(original_error) if original_error else None
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "operation": self.operation.value if self.operation else None,
            "database": self.database,
            "collection": self.collection,
        }


class ConnectionException(DatabaseException):
    """Server unreachable or connection pool exhausted."""
    retry_recommended = True


class TimeoutException(DatabaseException):
    """Operation exceeded its server or network timeout."""
    retry_recommended = True


class QueryException(DatabaseException):
    """Malformed query or invalid identifier."""


class DuplicateKeyException(DatabaseException):
    """Unique index violation."""

    def __init__(self, message: str, key_value: Optional[Dict[str, Any]] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.key_value = key_value or {}


PYMONGO_ERROR_MAPPING: Dict[Type[Exception], Type[DatabaseException]] = {
    pymongo.errors.DuplicateKeyError: DuplicateKeyException,
    pymongo.errors.ServerSelectionTimeoutError: ConnectionException,
    pymongo.errors.AutoReconnect: ConnectionException,
    pymongo.errors.ConnectionFailure: ConnectionException,
    pymongo.errors.ExecutionTimeout: TimeoutException,
    pymongo.errors.NetworkTimeout: TimeoutException,
    pymongo.errors.OperationFailure: QueryException,
}


def classify_pymongo_error(error: Exception) -> Type[DatabaseException]:
    """Map a pymongo error onto the most specific database exception class."""
    for error_type in type(error).__mro__:
        if error_type in PYMONGO_ERROR_MAPPING:
            return PYMONGO_ERROR_MAPPING[error_type]
    return DatabaseException


def handle_database_error(
    error: Exception,
    operation: DatabaseOperationType,
    database: Optional[str] = None,
    collection: Optional[str] = None
) -> DatabaseException:
    """
    Convert a pymongo error into the matching ``DatabaseException``.

    Returns:
        The exception instance for the caller to raise
    """
    exception_class = classify_pymongo_error(error)
    kwargs = dict(operation=operation, database=database, collection=collection, original_error=error)
    if exception_class is DuplicateKeyException:
        details = getattr(error, 'details', None) or {}
        return DuplicateKeyException(
            f"Duplicate key in collection '{collection}'",
            key_value=details.get('keyValue'),
            **kwargs
        )
    return exception_class(f"Database operation failed: {str(error)}", **kwargs)


def with_database_retry(
    operation: DatabaseOperationType = DatabaseOperationType.READ,
    max_attempts: int = 3,
    min_wait: float = 0.5,
    max_wait: float = 5.0
) -> Callable:
    """
    Retry transient database failures with exponential backoff.

    Only ``ConnectionException`` and ``TimeoutException`` are retried; other
    database errors propagate immediately.
    """

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs):
            retrying = Retrying(
                stop=stop_after_attempt(max_attempts),
                wait=wait_exponential(multiplier=1, min=min_wait, max=max_wait),
                retry=retry_if_exception_type((ConnectionException, TimeoutException)),
                before_sleep=before_sleep_log(logging.getLogger(__name__), logging.WARNING),
                reraise=True,
            )
            for attempt in retrying:
                with attempt:
                    return func(*args, **kwargs)

        return wrapper

    return decorator


__all__ = [
    'ConnectionException',
    'DatabaseException',
    'DatabaseOperationType',
    'DuplicateKeyException',
    'QueryException',
    'TimeoutException',
    'classify_pymongo_error',
    'handle_database_error',
    'with_database_retry',
]
