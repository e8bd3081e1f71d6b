"""
Gunicorn configuration for the Bazzarly API.

Run with:
    gunicorn -c gunicorn.conf.py app:application
"""

import multiprocessing
import os

# =============================================================================
# SERVER SOCKET AND WORKERS
# =============================================================================

bind = os.getenv("GUNICORN_BIND", f"0.0.0.0:{os.getenv('PORT', '5000')}")
backlog = 2048

workers = int(os.getenv("GUNICORN_WORKERS", max(2, min(8, (2 * multiprocessing.cpu_count()) + 1))))
worker_class = "sync"
max_requests = 1000
max_requests_jitter = 100
timeout = 60
keepalive = 5
graceful_timeout = 30

# Each worker opens its own MongoClient after the fork
preload_app = False

# =============================================================================
# LOGGING
# =============================================================================

# Request lines are logged by the application through structlog
accesslog = None
errorlog = "-"
loglevel = os.getenv("GUNICORN_LOG_LEVEL", "info")
capture_output = True

# =============================================================================
# LIMITS
# =============================================================================

limit_request_line = 8192
limit_request_fields = 100
limit_request_field_size = 8192

if os.getenv("FLASK_ENV") == "development":
    workers = 1
    reload = True
    loglevel = "debug"


def on_starting(server):
    server.log.info("Bazzarly API starting with %d workers on %s", workers, bind)


def post_fork(server, worker):
    worker.log.info("Worker %s ready to handle requests", worker.pid)


def worker_int(worker):
    worker.log.info("Worker %s shutting down gracefully", worker.pid)


def validate_configuration():
    """Production readiness problems with the settings above."""
    issues = []
    if workers < 2:
        issues.append("Worker count should be at least 2 for production")
    if timeout < 30:
        issues.append("Timeout should be at least 30 seconds for production")
    if loglevel == "debug" and os.getenv("FLASK_ENV") == "production":
        issues.append("Debug logging should not be used in production")
    return issues
