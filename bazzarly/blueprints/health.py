"""
Health and metrics endpoints.

- ``GET /api/health``: liveness plus a MongoDB ping
- ``GET /api/metrics``: Prometheus text exposition
"""

import structlog
from flask import Blueprint, Response, current_app

from bazzarly.extensions import get_services
from bazzarly.monitoring.metrics import render_metrics

logger = structlog.get_logger(__name__)

health_bp = Blueprint('health', __name__, url_prefix='/api')


@health_bp.route('/health', methods=['GET'])
def health_check():
    database = get_services().db.health_check()
    healthy = database['status'] == 'healthy'
    if not healthy:
        logger.warning("Health check degraded", database_status=database['status'])
    body = {
        'success': healthy,
        'status': 'OK' if healthy else 'DEGRADED',
        'message': 'Bazzarly API is running',
        'version': current_app.config.get('APP_VERSION'),
        'database': database,
    }
    return body, 200 if healthy else 503


@health_bp.route('/metrics', methods=['GET'])
def metrics():
    payload, content_type = render_metrics()
    return Response(payload, mimetype=None, content_type=content_type)
