"""
APScheduler Background Jobs

Scheduled jobs for idempotency key cleanup, issuer status polling,
automatic retries of transient failures and audit retention.
Jobs run via BackgroundScheduler in FastAPI process; polling and retries
are only selected here and executed by Dramatiq workers.
"""

import structlog
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.triggers.cron import CronTrigger

logger = structlog.get_logger(__name__)


def _maintenance_service():
    from app.database import SessionLocal
    from app.services.maintenance import MaintenanceService

    if SessionLocal is None:
        return None
    return MaintenanceService(SessionLocal)


def run_idempotency_sweep():
    """
    Wrapper function for the hourly idempotency key sweep.

    Deletes expired keys so the table does not grow without bound.
    """
    try:
        service = _maintenance_service()
        if service is None:
            logger.warning("idempotency_sweep_skipped", reason="database_not_configured")
            return

        deleted = service.sweep_idempotency_keys()
        logger.info("idempotency_sweep_completed", deleted=deleted)

    except Exception as e:
        logger.error("idempotency_sweep_crashed", error=str(e), exc_info=True)


def run_status_polling():
    """
    Wrapper function for issuer status polling (every 5 minutes).

    Enqueues one poll_certificate_status message per processing certificate
    that has been waiting longer than status_poll_min_age_minutes.
    """
    try:
        from app.actors.certificate_jobs import poll_certificate_status

        service = _maintenance_service()
        if service is None:
            logger.warning("status_polling_skipped", reason="database_not_configured")
            return

        certificate_ids = service.certificates_to_poll()
        for certificate_id in certificate_ids:
            poll_certificate_status.send(certificate_id)
        logger.info("status_polling_enqueued", count=len(certificate_ids))

    except Exception as e:
        logger.error("status_polling_crashed", error=str(e), exc_info=True)


def run_scheduled_retries():
    """
    Wrapper function for automatic retries (every 15 minutes).

    Only failures caused by an unavailable issuer are retried, and only
    while retry_count is below max_automatic_retries.
    """
    try:
        from app.actors.certificate_jobs import retry_certificate

        service = _maintenance_service()
        if service is None:
            logger.warning("scheduled_retries_skipped", reason="database_not_configured")
            return

        certificate_ids = service.certificates_to_retry()
        for certificate_id in certificate_ids:
            retry_certificate.send(certificate_id)
        logger.info("scheduled_retries_enqueued", count=len(certificate_ids))

    except Exception as e:
        logger.error("scheduled_retries_crashed", error=str(e), exc_info=True)


def run_audit_purge():
    """
    Wrapper function for the daily audit retention purge (at 02:00).

    No-op unless audit_retention_days is configured.
    """
    try:
        service = _maintenance_service()
        if service is None:
            logger.warning("audit_purge_skipped", reason="database_not_configured")
            return

        deleted = service.purge_audit()
        logger.info("audit_purge_completed", deleted=deleted)

    except Exception as e:
        logger.error("audit_purge_crashed", error=str(e), exc_info=True)


def start_scheduler(environment: str = "production") -> BackgroundScheduler:
    """
    Start background scheduler with all jobs.

    Args:
        environment: Current environment (skip scheduler in testing)

    Returns:
        BackgroundScheduler instance
    """
    from app.config import settings

    scheduler = BackgroundScheduler(timezone="UTC")

    if environment == "testing":
        logger.info("scheduler_skipped", reason="testing_environment")
        return scheduler

    jobs = []

    # Job 1: Hourly idempotency key sweep
    scheduler.add_job(
        run_idempotency_sweep,
        trigger=IntervalTrigger(hours=1),
        id="idempotency_sweep",
        name="Hourly Idempotency Key Sweep",
        replace_existing=True
    )
    jobs.append("idempotency_sweep")

    # Job 2: Issuer status polling
    scheduler.add_job(
        run_status_polling,
        trigger=IntervalTrigger(minutes=5),
        id="status_polling",
        name="Issuer Status Polling",
        replace_existing=True
    )
    jobs.append("status_polling")

    # Job 3: Automatic retry of transient failures
    scheduler.add_job(
        run_scheduled_retries,
        trigger=IntervalTrigger(minutes=15),
        id="scheduled_retries",
        name="Transient Failure Retries",
        replace_existing=True
    )
    jobs.append("scheduled_retries")

    # Job 4: Daily audit retention purge (at 02:00)
    if settings.audit_retention_days:
        scheduler.add_job(
            run_audit_purge,
            trigger=CronTrigger(hour=2, minute=0),
            id="audit_purge",
            name="Audit Retention Purge",
            replace_existing=True
        )
        jobs.append("audit_purge")

    for job in jobs:
        logger.info("job_registered", job=job)

    scheduler.start()
    logger.info("scheduler_started", jobs=jobs)

    return scheduler


def stop_scheduler(scheduler: BackgroundScheduler):
    """
    Stop background scheduler gracefully.

    Args:
        scheduler: BackgroundScheduler instance to stop
    """
    if scheduler and scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("scheduler_stopped")


__all__ = [
    "start_scheduler",
    "stop_scheduler",
    "run_idempotency_sweep",
    "run_status_polling",
    "run_scheduled_retries",
    "run_audit_purge",
]
