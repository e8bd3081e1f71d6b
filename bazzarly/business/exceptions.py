"""
Business exception hierarchy for the Bazzarly marketplace.

Every exception carries a user-facing message, a stable error code and the
HTTP status the API boundary should answer with. ``to_dict`` produces the
payload used by the Flask error handlers in ``bazzarly.utils.errors``.

Hierarchy:
    BaseBusinessException
        DataValidationError     400  malformed or rule-violating input
        ResourceNotFoundError   404  id or slug does not resolve
        ConflictError           409  uniqueness or capacity violation
        StateTransitionError    409  operation not allowed in the current state
        AuthenticationError     401  bad credentials or inactive account
            AccountLockedError  401  too many failed login attempts
        AuthorizationError      403  caller lacks the required role/permission
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCategory(Enum):
    """Classification used for logging and metrics labels."""
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    STATE = "state"
    AUTHENTICATION = "authentication"
    AUTHORIZATION = "authorization"


class BaseBusinessException(Exception):
    """
    Base class for all business rule failures.

    Attributes:
        message (str): User-facing error message
        error_code (str): Stable identifier for client handling
        http_status_code (int): Status code returned by the API boundary
        category (ErrorCategory): Classification for logging
        context (Dict[str, Any]): Additional non-sensitive context
        errors (Optional[Dict[str, str]]): Per-field messages, when relevant
    """

    default_status = 400
    default_code = "BUSINESS_ERROR"
    category = ErrorCategory.VALIDATION

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        http_status_code: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None,
        errors: Optional[Dict[str, str]] = None
    ) -> None:
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.default_code
        self.http_status_code = http_status_code or self.default_status
        self.context = context or {}
        self.errors = errors
        self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        """Convert the exception into the API error envelope."""
        payload: Dict[str, Any] = {
            'success': False,
            'message': self.message,
            'error_code': self.error_code,
        }
        if self.errors:
            payload['errors'] = self.errors
        return payload

    def __str__(self) -> str:
        return self.message


class DataValidationError(BaseBusinessException):
    """Input failed validation."""

    default_status = 400
    default_code = "VALIDATION_ERROR"
    category = ErrorCategory.VALIDATION


class ResourceNotFoundError(BaseBusinessException):
    """A referenced entity does not exist."""

    default_status = 404
    default_code = "RESOURCE_NOT_FOUND"
    category = ErrorCategory.NOT_FOUND

    def __init__(self, resource_type: str, resource_id: Optional[str] = None, **kwargs) -> None:
        super().__init__(
            f"{resource_type} not found",
            context={'resource_type': resource_type, 'resource_id': resource_id},
            **kwargs
        )
        self.resource_type = resource_type
        self.resource_id = resource_id


class ConflictError(BaseBusinessException):
    """Uniqueness violation, duplicate entry or exhausted capacity."""

    default_status = 409
    default_code = "RESOURCE_CONFLICT"
    category = ErrorCategory.CONFLICT


class StateTransitionError(BaseBusinessException):
    """
    An operation was attempted against an entity in a state that does not
    allow it, such as selling a product that is already sold.
    """

    default_status = 409
    default_code = "INVALID_STATE_TRANSITION"
    category = ErrorCategory.STATE

    def __init__(
        self,
        message: str,
        current_state: Optional[str] = None,
        target_state: Optional[str] = None,
        **kwargs
    ) -> None:
        context = kwargs.pop('context', None) or {}
        context.update({'current_state': current_state, 'target_state': target_state})
        super().__init__(message, context=context, **kwargs)
        self.current_state = current_state
        self.target_state = target_state


class AuthenticationError(BaseBusinessException):
    """
    Credential check failed.

    The message never distinguishes an unknown identifier from a wrong
    password.
    """

    default_status = 401
    default_code = "AUTHENTICATION_FAILED"
    category = ErrorCategory.AUTHENTICATION


class AccountLockedError(AuthenticationError):
    default_code = "ACCOUNT_LOCKED"

    def __init__(self, locked_until: Optional[datetime] = None, **kwargs) -> None:
        super().__init__(
            "Account temporarily locked due to too many failed login attempts",
            context={'locked_until': locked_until.isoformat() if locked_until else None},
            **kwargs
        )
        self.locked_until = locked_until


class AuthorizationError(BaseBusinessException):
    """Authenticated caller lacks the role or permission for an action."""

    default_status = 403
    default_code = "ACCESS_FORBIDDEN"
    category = ErrorCategory.AUTHORIZATION


__all__ = [
    'AccountLockedError',
    'AuthenticationError',
    'AuthorizationError',
    'BaseBusinessException',
    'ConflictError',
    'DataValidationError',
    'ErrorCategory',
    'ResourceNotFoundError',
    'StateTransitionError',
]
