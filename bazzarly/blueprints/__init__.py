"""
Blueprint registration for the Bazzarly application factory.

- Health (/api/health, /api/metrics)
- Auth (/api/auth/*)
- Products (/api/products/*) and search (/api/search)
- Stores (/api/stores/*)
- Admin (/api/admin/*)
"""

import structlog
from flask import Flask

from bazzarly.blueprints.admin import admin_bp
from bazzarly.blueprints.auth import auth_bp
from bazzarly.blueprints.health import health_bp
from bazzarly.blueprints.products import products_bp, search_bp
from bazzarly.blueprints.stores import stores_bp

logger = structlog.get_logger(__name__)

ALL_BLUEPRINTS = (health_bp, auth_bp, products_bp, search_bp, stores_bp, admin_bp)


def register_all_blueprints(app: Flask) -> None:
    for blueprint in ALL_BLUEPRINTS:
        app.register_blueprint(blueprint)
    logger.info(
        "Blueprints registered",
        blueprints=[blueprint.name for blueprint in ALL_BLUEPRINTS],
        routes=len(list(app.url_map.iter_rules())),
    )


__all__ = ['ALL_BLUEPRINTS', 'register_all_blueprints']
