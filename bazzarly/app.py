"""
Flask application factory for the Bazzarly API.

Initialization order:
1. Environment configuration (``bazzarly.config``) plus keyword overrides
2. structlog setup and request logging hooks
3. Flask-CORS, Flask-Limiter and Flask-Talisman
4. MongoDB manager, repositories and services (``app.extensions['bazzarly']``)
5. Indexes, blueprints and JSON error handlers

Example:
    app = create_app('development')
    app = create_app('testing', mongo_client=mongomock.MongoClient(tz_aware=True))
"""

from typing import Any, Optional

import structlog
from flask import Flask
from flask_cors import CORS
from flask_talisman import Talisman
from pymongo import MongoClient

from bazzarly.blueprints import register_all_blueprints
from bazzarly.business.services import Clock, build_services
from bazzarly.config import get_config
from bazzarly.data.mongodb import MongoDBManager
from bazzarly.extensions import limiter
from bazzarly.monitoring.logging import (
    BusinessEventLogger,
    SecurityAuditLogger,
    init_request_logging,
    setup_structured_logging,
)
from bazzarly.utils.errors import register_error_handlers

logger = structlog.get_logger(__name__)


def _init_extensions(app: Flask) -> None:
    CORS(
        app,
        origins=app.config['CORS_ORIGINS'],
        methods=['GET', 'POST', 'PUT', 'DELETE', 'OPTIONS'],
        supports_credentials=True,
    )
    limiter.init_app(app)
    Talisman(
        app,
        force_https=app.config['FORCE_HTTPS'],
        content_security_policy=app.config['CONTENT_SECURITY_POLICY'],
        session_cookie_secure=app.config['FORCE_HTTPS'],
    )
    logger.info(
        "Flask extensions initialized",
        cors_origins=app.config['CORS_ORIGINS'],
        rate_limiting_enabled=app.config['RATELIMIT_ENABLED'],
        force_https=app.config['FORCE_HTTPS'],
    )


def _init_database(app: Flask, mongo_client: Optional[MongoClient]) -> MongoDBManager:
    if mongo_client is not None:
        return MongoDBManager(mongo_client, app.config['MONGODB_DATABASE'])
    return MongoDBManager.from_uri(
        app.config['MONGODB_URI'],
        app.config['MONGODB_DATABASE'],
        **app.config['MONGODB_SETTINGS']
    )


def create_app(
    config_name: Optional[str] = None,
    mongo_client: Optional[MongoClient] = None,
    clock: Optional[Clock] = None,
    **config_overrides: Any
) -> Flask:
    """
    Build a configured application.

    Args:
        config_name: development, testing, staging or production; defaults to ``FLASK_ENV``
        mongo_client: Client to use instead of connecting to ``MONGODB_URI``
        clock: Time source for the services, defaults to the UTC wall clock
        **config_overrides: Settings applied on top of the environment configuration

    Raises:
        ConfigurationError: Missing production secrets or an unknown environment
    """
    config = get_config(config_name)
    app = Flask(__name__)
    app.config.update(config.to_dict())
    app.config.update(config_overrides)

    setup_structured_logging(app=app)
    init_request_logging(app)
    _init_extensions(app)

    db = _init_database(app, mongo_client)
    services = build_services(
        db,
        token_secret=app.config['JWT_SECRET_KEY'],
        token_algorithm=app.config['JWT_ALGORITHM'],
        settings=app.config['LIFECYCLE'],
        clock=clock,
        security_log=SecurityAuditLogger(),
        business_log=BusinessEventLogger(),
    )
    services.ensure_indexes()
    app.extensions['bazzarly'] = services

    register_all_blueprints(app)
    register_error_handlers(app)

    logger.info(
        "Bazzarly application created",
        environment=app.config['FLASK_ENV'],
        version=app.config['APP_VERSION'],
        database=db.database_name,
    )
    return app


__all__ = ['create_app']
