"""
Flask extension instances shared by the application factory and blueprints.
"""

from flask import current_app
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

# Limits, storage and the enabled flag come from the RATELIMIT_* config keys
limiter = Limiter(key_func=get_remote_address)


def config_limit(key: str):
    """Rate limit string read from the app config at request time."""
    return lambda: current_app.config[key]


def get_services():
    """The ``ServiceRegistry`` installed by ``create_app``."""
    return current_app.extensions['bazzarly']


__all__ = ['config_limit', 'get_services', 'limiter']
