"""
Route decorators for bearer-token authentication and role/permission checks.

The authenticated account is reloaded from storage on every request and
stored on ``g.current_user``; token claims other than the subject are never
trusted for authorization.

Example:
    @bp.route('/dashboard')
    @require_roles('admin', 'super_admin')
    def dashboard():
        ...
"""

from functools import wraps
from typing import Any, Callable, Optional, TypeVar

import structlog
from flask import current_app, g, request

from bazzarly.auth.tokens import decode_access_token
from bazzarly.business.exceptions import AuthenticationError, AuthorizationError
from bazzarly.business.models import UserStatus
from bazzarly.business.users import User
from bazzarly.monitoring.metrics import auth_events_total

logger = structlog.get_logger(__name__)

F = TypeVar('F', bound=Callable[..., Any])

BLOCKED_STATUSES = frozenset({UserStatus.SUSPENDED.value, UserStatus.BANNED.value})


def extract_bearer_token() -> Optional[str]:
    header = request.headers.get('Authorization', '')
    scheme, _, token = header.partition(' ')
    if scheme.lower() != 'bearer' or not token.strip():
        return None
    return token.strip()


def load_user_from_token(token: str) -> User:
    """
    Decode ``token`` and load its account.

    Raises:
        AuthenticationError: Bad token, unknown account, or a suspended/banned account
    """
    config = current_app.config
    claims = decode_access_token(token, config['JWT_SECRET_KEY'], config.get('JWT_ALGORITHM', 'HS256'))
    registry = current_app.extensions['bazzarly']
    user = registry.user_repository.get(claims.get('sub'))
    if user is None:
        raise AuthenticationError("Invalid token", error_code="INVALID_TOKEN")
    if user.status in BLOCKED_STATUSES:
        raise AuthenticationError("Account is not active", error_code="ACCOUNT_INACTIVE")
    return user


def get_current_user() -> Optional[User]:
    return getattr(g, 'current_user', None)


def require_authentication(func: F) -> F:
    """Reject the request with 401 unless it carries a valid bearer token."""
    @wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        token = extract_bearer_token()
        if token is None:
            auth_events_total.labels(event='token', outcome='missing').inc()
            raise AuthenticationError("Authentication required", error_code="AUTH_REQUIRED")
        try:
            g.current_user = load_user_from_token(token)
        except AuthenticationError:
            auth_events_total.labels(event='token', outcome='rejected').inc()
            raise
        return func(*args, **kwargs)
    return wrapper


def optional_authentication(func: F) -> F:
    """Attach the caller when a valid token is present; anonymous otherwise."""
    @wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        g.current_user = None
        token = extract_bearer_token()
        if token is not None:
            try:
                g.current_user = load_user_from_token(token)
            except AuthenticationError as e:
                logger.debug("Ignoring invalid optional token", reason=e.message)
        return func(*args, **kwargs)
    return wrapper


def require_roles(*roles: str) -> Callable[[F], F]:
    """Require an authenticated caller holding any of ``roles``."""
    allowed = frozenset(getattr(role, 'value', role) for role in roles)

    def decorator(func: F) -> F:
        @require_authentication
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            user = g.current_user
            if user.role not in allowed:
                auth_events_total.labels(event='authorization', outcome='denied').inc()
                logger.warning(
                    "Role check failed",
                    user_id=str(user.id),
                    role=user.role,
                    required_roles=sorted(allowed),
                    path=request.path,
                )
                raise AuthorizationError("Insufficient permissions")
            return func(*args, **kwargs)
        return wrapper
    return decorator


def require_permission(permission: str) -> Callable[[F], F]:
    """
    Require a caller for whom ``User.has_permission`` holds.

    Stacked under ``require_roles`` it checks the account already loaded for
    the request; on its own it authenticates the bearer token first.
    """
    required = getattr(permission, 'value', permission)

    def decorator(func: F) -> F:
        @wraps(func)
        def checked(*args: Any, **kwargs: Any) -> Any:
            user = g.current_user
            if not user.has_permission(required):
                auth_events_total.labels(event='authorization', outcome='denied').inc()
                logger.warning(
                    "Permission check failed",
                    user_id=str(user.id),
                    permission=required,
                    path=request.path,
                )
                raise AuthorizationError("Insufficient permissions")
            return func(*args, **kwargs)

        authenticated = require_authentication(checked)

        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            if get_current_user() is None:
                return authenticated(*args, **kwargs)
            return checked(*args, **kwargs)
        return wrapper
    return decorator


__all__ = [
    'extract_bearer_token',
    'get_current_user',
    'load_user_from_token',
    'optional_authentication',
    'require_authentication',
    'require_permission',
    'require_roles',
]
