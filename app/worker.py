"""
Dramatiq Worker Entrypoint

Imports the actor package so the dramatiq CLI registers every certificate
job with the broker.

Usage:
    dramatiq app.worker --processes 2 --threads 4 --verbose

Procfile Configuration:
    worker: dramatiq app.worker --processes 2 --threads 4 --verbose

Status polling and retries are I/O-bound (issuer HTTP calls, short DB
transactions) so threads are preferred over processes. Each issuer call is
still capped by the circuit breaker timeout.
"""

import structlog

from app.database import init_db
from app.services.monitoring.error_tracking import init_sentry
from app.services.monitoring.logging import setup_logging

setup_logging()
init_sentry()
init_db()

from app.actors import broker  # noqa: E402
from app.actors import certificate_jobs  # noqa: F401, E402

logger = structlog.get_logger()

# Worker health check log
logger.info("worker_ready", broker=type(broker).__name__)
