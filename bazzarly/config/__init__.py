"""Configuration package for the Bazzarly API."""

from bazzarly.config.settings import (
    BaseConfig,
    ConfigurationError,
    DEFAULT_LIFECYCLE,
    DevelopmentConfig,
    LifecycleSettings,
    ProductionConfig,
    StagingConfig,
    TestingConfig,
    get_config,
)

__all__ = [
    'BaseConfig',
    'ConfigurationError',
    'DEFAULT_LIFECYCLE',
    'DevelopmentConfig',
    'LifecycleSettings',
    'ProductionConfig',
    'StagingConfig',
    'TestingConfig',
    'get_config',
]
