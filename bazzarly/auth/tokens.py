"""
Access token issuance and verification using PyJWT (HS256).
"""

from datetime import datetime, timedelta
from typing import Any, Dict, Optional

import jwt

from bazzarly.business.exceptions import AuthenticationError
from bazzarly.business.models import utc_now


def create_access_token(
    user_id: Any,
    role: str,
    secret: str,
    lifetime: timedelta,
    algorithm: str = 'HS256',
    now: Optional[datetime] = None
) -> str:
    """
    Args:
        user_id: Subject of the token
        role: User role, carried for logging only; authorization reloads the user
        secret: Signing key
        lifetime: Time until expiry
    """
    now = now or utc_now()
    payload = {
        'sub': str(user_id),
        'role': role,
        'iat': now,
        'exp': now + lifetime,
    }
    return jwt.encode(payload, secret, algorithm=algorithm)


def decode_access_token(token: str, secret: str, algorithm: str = 'HS256') -> Dict[str, Any]:
    """
    Raises:
        AuthenticationError: When the token is expired, tampered or malformed
    """
    try:
        return jwt.decode(token, secret, algorithms=[algorithm], options={'require': ['sub', 'exp']})
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Token has expired", error_code="TOKEN_EXPIRED")
    except jwt.InvalidTokenError:
        raise AuthenticationError("Invalid token", error_code="INVALID_TOKEN")
