"""
Certificate job queue

Status polling and scheduled retries run as Dramatiq actors so the API
process never blocks on the issuer. With REDIS_URL set, jobs go through
Redis under the ``certificate_issuance`` namespace. Without it a StubBroker
is installed, which keeps imports cheap for tests and local runs.

Usage:
    from app.actors import broker, poll_certificate_status
    poll_certificate_status.send(certificate_id)
"""

import dramatiq
import structlog
from dramatiq.brokers.stub import StubBroker

from app.config import settings

logger = structlog.get_logger()

BROKER_NAMESPACE = "certificate_issuance"
# Dead letters are kept one day for operators to inspect failed polls
DEAD_MESSAGE_TTL_MS = 24 * 60 * 60 * 1000


def _redis_broker(url: str):
    from dramatiq.brokers.redis import RedisBroker

    return RedisBroker(
        url=url,
        namespace=BROKER_NAMESPACE,
        max_connections=10,
        socket_timeout=5,
        socket_connect_timeout=5,
        socket_keepalive=True,
        retry_on_timeout=True,
        heartbeat_timeout=30000,
        dead_message_ttl=DEAD_MESSAGE_TTL_MS,
    )


def setup_broker():
    """
    Install the process-wide Dramatiq broker.

    Returns:
        RedisBroker when REDIS_URL is configured, StubBroker otherwise
    """
    if settings.redis_url:
        broker = _redis_broker(settings.redis_url)
        logger.info("broker_configured", type="RedisBroker", namespace=BROKER_NAMESPACE)
    else:
        broker = StubBroker()
        logger.info("broker_configured", type="StubBroker", environment=settings.environment)

    dramatiq.set_broker(broker)
    return broker


broker = setup_broker()

# Actors register themselves with the broker on import
from app.actors.certificate_jobs import poll_certificate_status, retry_certificate  # noqa: F401, E402
