"""
Bazzarly Application Configuration Module

Environment-driven configuration for the marketplace API using python-dotenv.
Configuration classes are resolved per environment through ``get_config`` and
loaded into Flask with ``app.config.from_object``.

Key Features:
- python-dotenv ``.env`` discovery with typed environment variable access
- Environment-specific inheritance (development, staging, production, testing)
- Rate limiting, CORS and security header settings for the Flask extensions
- ``LifecycleSettings`` value object carrying the domain rule constants
  (lockout window, listing lifetime, slug length, token lifetimes)

The lifecycle rules never read the process environment themselves; they
receive a ``LifecycleSettings`` instance from the caller.
"""

import os
import secrets
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv, find_dotenv

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised when the configuration is missing or invalid."""
    pass


@dataclass(frozen=True)
class LifecycleSettings:
    """
    Immutable constants consumed by the entity lifecycle rules and services.

    Attributes:
        max_login_attempts: Consecutive failures before the account locks
        lock_duration: How long a locked account stays locked
        listing_lifetime: Default time to expiry for new product listings
        offer_expiry_days: Default validity of an offer embedded in a comment
        slug_max_length: Maximum length of derived slugs
        password_reset_ttl: Validity of a password reset token
        jwt_lifetime: Lifetime of issued access tokens
        password_hash_method: werkzeug hash method for stored passwords
        low_stock_threshold: Quantity at or below which stock counts as low
        default_region: Region used to parse phone numbers without a prefix
    """

    max_login_attempts: int = 5
    lock_duration: timedelta = timedelta(hours=2)
    listing_lifetime: timedelta = timedelta(days=30)
    offer_expiry_days: int = 7
    slug_max_length: int = 100
    password_reset_ttl: timedelta = timedelta(minutes=10)
    jwt_lifetime: timedelta = timedelta(days=7)
    password_hash_method: str = 'pbkdf2:sha256'
    low_stock_threshold: int = 5
    default_region: str = 'US'


DEFAULT_LIFECYCLE = LifecycleSettings()


class EnvironmentManager:
    """
    Environment variable access with ``.env`` loading and type conversion.
    """

    def __init__(self, env_file: Optional[str] = None):
        self.env_file = env_file or find_dotenv(usecwd=True)
        load_dotenv(self.env_file, override=False)

    @staticmethod
    def _convert(value: str, var_type: type) -> Any:
        if var_type == bool:
            return value.lower() in ('true', '1', 'yes', 'on')
        if var_type == int:
            return int(value)
        if var_type == float:
            return float(value)
        return var_type(value)

    def get_optional_env(self, key: str, default: Any = None, var_type: type = str) -> Any:
        """Get an optional environment variable, falling back to ``default``."""
        value = os.getenv(key)
        if value is None:
            return default
        try:
            return self._convert(value, var_type)
        except (ValueError, TypeError):
            logger.warning(f"Invalid type for '{key}', using default: {default}")
            return default


class BaseConfig:
    """
    Base configuration shared by every environment.
    """

    def __init__(self):
        self.env_manager = EnvironmentManager()
        self._configure_base_settings()
        self._configure_security_settings()
        self._configure_database_settings()
        self._configure_rate_limiting()
        self._configure_cors()
        self._configure_logging()
        self._configure_lifecycle()

    def _configure_base_settings(self) -> None:
        """Configure core Flask application settings."""
        self.FLASK_ENV = self.env_manager.get_optional_env('FLASK_ENV', 'production')
        self.DEBUG = self.env_manager.get_optional_env('FLASK_DEBUG', False, bool)
        self.TESTING = False
        self.APP_NAME = self.env_manager.get_optional_env('APP_NAME', 'bazzarly-api')
        self.APP_VERSION = self.env_manager.get_optional_env('APP_VERSION', '1.0.0')
        self.JSON_SORT_KEYS = False
        self.MAX_CONTENT_LENGTH = self.env_manager.get_optional_env(
            'MAX_CONTENT_LENGTH', 10 * 1024 * 1024, int
        )

    def _configure_security_settings(self) -> None:
        """Configure secrets, token signing and security headers."""
        self.SECRET_KEY = self.env_manager.get_optional_env('SECRET_KEY') or secrets.token_hex(32)
        self.JWT_SECRET_KEY = self.env_manager.get_optional_env('JWT_SECRET_KEY') or self.SECRET_KEY
        self.JWT_ALGORITHM = 'HS256'
        self.FORCE_HTTPS = self.env_manager.get_optional_env('FORCE_HTTPS', False, bool)
        self.CONTENT_SECURITY_POLICY = {
            'default-src': "'self'",
            'style-src': ["'self'", "'unsafe-inline'"],
            'script-src': "'self'",
            'img-src': ["'self'", 'data:', 'https:'],
        }

    def _configure_database_settings(self) -> None:
        """Configure MongoDB connection settings."""
        self.MONGODB_URI = self.env_manager.get_optional_env(
            'MONGODB_URI', 'mongodb://localhost:27017/bazzarly'
        )
        self.MONGODB_DATABASE = self.env_manager.get_optional_env('MONGODB_DATABASE', 'bazzarly')
        self.MONGODB_SETTINGS = {
            'maxPoolSize': self.env_manager.get_optional_env('MONGODB_MAX_POOL_SIZE', 50, int),
            'serverSelectionTimeoutMS': self.env_manager.get_optional_env(
                'MONGODB_SERVER_SELECTION_TIMEOUT_MS', 5000, int
            ),
        }

    def _configure_rate_limiting(self) -> None:
        """Configure Flask-Limiter limits."""
        self.RATELIMIT_ENABLED = self.env_manager.get_optional_env('RATELIMIT_ENABLED', True, bool)
        self.RATELIMIT_STORAGE_URI = self.env_manager.get_optional_env(
            'RATELIMIT_STORAGE_URI', 'memory://'
        )
        self.RATELIMIT_DEFAULT = self.env_manager.get_optional_env(
            'RATELIMIT_DEFAULT', '100 per 15 minutes'
        )
        self.RATELIMIT_AUTH = self.env_manager.get_optional_env('RATELIMIT_AUTH', '5 per 15 minutes')
        self.RATELIMIT_REGISTRATION = self.env_manager.get_optional_env(
            'RATELIMIT_REGISTRATION', '3 per hour'
        )
        self.RATELIMIT_SEARCH = self.env_manager.get_optional_env(
            'RATELIMIT_SEARCH', '30 per 15 minutes'
        )
        self.RATELIMIT_HEADERS_ENABLED = True

    def _configure_cors(self) -> None:
        """Configure Flask-CORS origins."""
        self.FRONTEND_URL = self.env_manager.get_optional_env('FRONTEND_URL', 'http://localhost:3000')
        self.CORS_ORIGINS = self._get_cors_origins()

    def _get_cors_origins(self) -> List[str]:
        extra = self.env_manager.get_optional_env('CORS_ORIGINS', '')
        origins = [self.FRONTEND_URL]
        origins.extend(origin.strip() for origin in extra.split(',') if origin.strip())
        return origins

    def _configure_logging(self) -> None:
        """Configure structlog output."""
        self.LOG_LEVEL = self.env_manager.get_optional_env('LOG_LEVEL', 'INFO').upper()
        self.LOG_FORMAT = self.env_manager.get_optional_env('LOG_FORMAT', 'json')
        self.REQUEST_LOGGING_ENABLED = self.env_manager.get_optional_env(
            'REQUEST_LOGGING_ENABLED', True, bool
        )

    def _configure_lifecycle(self) -> None:
        """Build the lifecycle value object from the environment."""
        self.LIFECYCLE = LifecycleSettings(
            max_login_attempts=self.env_manager.get_optional_env('MAX_LOGIN_ATTEMPTS', 5, int),
            lock_duration=timedelta(
                minutes=self.env_manager.get_optional_env('LOCK_DURATION_MINUTES', 120, int)
            ),
            listing_lifetime=timedelta(
                days=self.env_manager.get_optional_env('LISTING_LIFETIME_DAYS', 30, int)
            ),
            offer_expiry_days=self.env_manager.get_optional_env('OFFER_EXPIRY_DAYS', 7, int),
            password_reset_ttl=timedelta(
                minutes=self.env_manager.get_optional_env('PASSWORD_RESET_TTL_MINUTES', 10, int)
            ),
            jwt_lifetime=timedelta(
                days=self.env_manager.get_optional_env('JWT_LIFETIME_DAYS', 7, int)
            ),
            default_region=self.env_manager.get_optional_env('PHONE_DEFAULT_REGION', 'US'),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Return the upper-case settings, as Flask's ``from_object`` would read them."""
        return {key: value for key, value in vars(self).items() if key.isupper()}


class DevelopmentConfig(BaseConfig):
    """Local development settings."""

    def __init__(self):
        super().__init__()
        self.FLASK_ENV = 'development'
        self.DEBUG = True
        self.LOG_FORMAT = self.env_manager.get_optional_env('LOG_FORMAT', 'console')
        self.LOG_LEVEL = self.env_manager.get_optional_env('LOG_LEVEL', 'DEBUG').upper()


class StagingConfig(BaseConfig):
    """Staging settings mirror production without the strict secret checks."""

    def __init__(self):
        super().__init__()
        self.FLASK_ENV = 'staging'
        self.DEBUG = False
        self.FORCE_HTTPS = self.env_manager.get_optional_env('FORCE_HTTPS', True, bool)


class ProductionConfig(BaseConfig):
    """Production settings."""

    def __init__(self):
        super().__init__()
        self.FLASK_ENV = 'production'
        self.DEBUG = False
        self.FORCE_HTTPS = self.env_manager.get_optional_env('FORCE_HTTPS', True, bool)
        self._validate_production_requirements()

    def _validate_production_requirements(self) -> None:
        """
        Raises:
            ConfigurationError: When signing secrets are not provided explicitly
        """
        for key in ('SECRET_KEY', 'JWT_SECRET_KEY'):
            if not os.getenv(key):
                raise ConfigurationError(f"{key} must be set in production")


class TestingConfig(BaseConfig):
    """Isolated settings for the test suite."""

    def __init__(self):
        super().__init__()
        self.FLASK_ENV = 'testing'
        self.TESTING = True
        self.DEBUG = False
        self.SECRET_KEY = 'testing-secret-key'
        self.JWT_SECRET_KEY = 'testing-jwt-secret-key'
        self.MONGODB_DATABASE = 'bazzarly_test'
        self.RATELIMIT_ENABLED = False
        self.RATELIMIT_STORAGE_URI = 'memory://'
        self.REQUEST_LOGGING_ENABLED = False
        self.LOG_FORMAT = 'console'
        self.LOG_LEVEL = 'WARNING'
        self.LIFECYCLE = DEFAULT_LIFECYCLE


def get_config(config_name: Optional[str] = None) -> BaseConfig:
    """
    Resolve the configuration class for an environment.

    Args:
        config_name: Optional configuration name, defaults to ``FLASK_ENV``

    Returns:
        Environment-specific configuration instance

    Raises:
        ConfigurationError: When the name is unknown
    """
    config_name = config_name or os.getenv('FLASK_ENV', 'production')

    config_mapping = {
        'development': DevelopmentConfig,
        'staging': StagingConfig,
        'production': ProductionConfig,
        'testing': TestingConfig,
    }

    config_class = config_mapping.get(config_name.lower())
    if not config_class:
        available_configs = ', '.join(config_mapping.keys())
        raise ConfigurationError(
            f"Invalid configuration name '{config_name}'. "
            f"Available configurations: {available_configs}"
        )
    return config_class()


__all__ = [
    'BaseConfig',
    'DevelopmentConfig',
    'StagingConfig',
    'ProductionConfig',
    'TestingConfig',
    'LifecycleSettings',
    'DEFAULT_LIFECYCLE',
    'EnvironmentManager',
    'ConfigurationError',
    'get_config',
]
