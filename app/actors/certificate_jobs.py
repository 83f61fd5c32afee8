"""
Certificate Job Actors
Dramatiq actors for issuer status polling and scheduled retries of
certificates that failed on a transient upstream error.
"""

import dramatiq
import structlog

from app.actors import broker

logger = structlog.get_logger(__name__)

MAX_JOB_RETRIES = 3


def should_retry(retries_so_far: int, exception: Exception) -> bool:
    """
    Decide whether Dramatiq should redeliver a failed certificate job.

    Certificate service errors carry their own retryable flag (breaker
    open, issuer unreachable, store unavailable). Invalid transitions and
    missing certificates are permanent.

    Args:
        retries_so_far: Number of retries attempted so far
        exception: The exception that was raised

    Returns:
        True if the message should be retried
    """
    from sqlalchemy.exc import OperationalError
    from app.exceptions import CertificateServiceError

    if isinstance(exception, CertificateServiceError):
        will_retry = exception.retryable and retries_so_far < MAX_JOB_RETRIES
        logger.info("certificate_job_error",
                    code=exception.code,
                    retries=retries_so_far,
                    will_retry=will_retry)
        return will_retry

    if isinstance(exception, (ConnectionError, TimeoutError, OperationalError)):
        return retries_so_far < MAX_JOB_RETRIES

    if isinstance(exception, (ValueError, KeyError)):
        logger.info("non_retryable_exception",
                    exception_type=type(exception).__name__,
                    retries=retries_so_far)
        return False

    logger.warning("unknown_exception_type",
                   exception_type=type(exception).__name__,
                   retries=retries_so_far)
    return retries_so_far < MAX_JOB_RETRIES


@dramatiq.actor(
    broker=broker,
    max_retries=MAX_JOB_RETRIES,
    min_backoff=15000,  # 15 seconds
    max_backoff=300000,  # 5 minutes
    retry_when=should_retry,
    queue_name="certificate_status"
)
def poll_certificate_status(certificate_id: str) -> None:
    """
    Reconcile one processing certificate with the issuer.

    Enqueued by the status polling job; applies processing -> completed or
    failed when the issuer reports a final outcome.

    Example:
        >>> poll_certificate_status.send("0b7c...")
    """
    from app.middleware.correlation_id import bind_job_correlation_id
    from app.services.orchestrator import get_orchestrator

    bind_job_correlation_id("poll_certificate_status", certificate_id)
    logger.info("poll_certificate_status_started", certificate_id=certificate_id)
    result = get_orchestrator().check_status(certificate_id)
    logger.info(
        "poll_certificate_status_finished",
        certificate_id=certificate_id,
        status=result["certificate"]["status"],
        transitioned=result["transitioned"],
    )


@dramatiq.actor(
    broker=broker,
    max_retries=MAX_JOB_RETRIES,
    min_backoff=60000,  # 1 minute
    max_backoff=900000,  # 15 minutes
    retry_when=should_retry,
    queue_name="certificate_retry"
)
def retry_certificate(certificate_id: str) -> None:
    """
    Resubmit a failed certificate to the issuer as the system actor.

    Enqueued by the scheduled retry job for transient failures only.
    """
    from app.exceptions import InvalidStateTransition
    from app.middleware.correlation_id import bind_job_correlation_id
    from app.services.orchestrator import get_orchestrator

    bind_job_correlation_id("retry_certificate", certificate_id)
    logger.info("retry_certificate_started", certificate_id=certificate_id)
    try:
        response = get_orchestrator().retry(certificate_id)
    except InvalidStateTransition:
        # Already retried or moved on since the job was enqueued
        logger.info("retry_certificate_skipped", certificate_id=certificate_id, reason="not_failed")
        return

    logger.info(
        "retry_certificate_finished",
        certificate_id=certificate_id,
        status=response.body["status"],
        retry_count=response.body["retry_count"],
    )
