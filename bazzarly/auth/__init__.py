"""
Authentication package: JWT access tokens and route decorators.
"""

from bazzarly.auth.decorators import (
    get_current_user,
    optional_authentication,
    require_authentication,
    require_permission,
    require_roles,
)
from bazzarly.auth.tokens import create_access_token, decode_access_token

__all__ = [
    'create_access_token',
    'decode_access_token',
    'get_current_user',
    'optional_authentication',
    'require_authentication',
    'require_permission',
    'require_roles',
]
