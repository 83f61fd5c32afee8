"""
MaintenanceService
Periodic upkeep of the certificate store: picks certificates to poll or retry,
purges old audit entries and sweeps expired idempotency keys.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from app.config import settings
from app.exceptions import RETRYABLE_FAILURE_CODES
from app.models.certificate import Certificate, CertificateStatus
from app.services.audit import AuditTrailWriter
from app.services.idempotency import IdempotencyService

logger = structlog.get_logger(__name__)

BATCH_SIZE = 100


class MaintenanceService:
    """
    Read-mostly queries behind the scheduled jobs.

    Selection only: the actual status checks and retries run through the
    orchestrator in worker actors.
    """

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def certificates_to_poll(self, min_age_minutes: Optional[int] = None, limit: int = BATCH_SIZE) -> List[str]:
        """
        Processing certificates that have not moved for min_age_minutes.

        Returns:
            Certificate ids, oldest first
        """
        min_age = min_age_minutes if min_age_minutes is not None else settings.status_poll_min_age_minutes
        cutoff = datetime.now(timezone.utc) - timedelta(minutes=min_age)

        session = self.session_factory()
        try:
            rows = session.query(Certificate.id).filter(
                Certificate.status == CertificateStatus.PROCESSING.value,
                Certificate.issuer_request_number.isnot(None),
                Certificate.updated_at <= cutoff,
            ).order_by(Certificate.updated_at.asc()).limit(limit).all()
            return [row.id for row in rows]
        finally:
            session.close()

    def certificates_to_retry(self, max_retries: Optional[int] = None, limit: int = BATCH_SIZE) -> List[str]:
        """
        Failed certificates whose failure was transient (breaker open, issuer
        unreachable, timeout) and that are still under the retry ceiling.
        """
        ceiling = max_retries if max_retries is not None else settings.max_automatic_retries

        session = self.session_factory()
        try:
            rows = session.query(Certificate.id).filter(
                Certificate.status == CertificateStatus.FAILED.value,
                Certificate.error_code.in_(RETRYABLE_FAILURE_CODES),
                Certificate.retry_count < ceiling,
            ).order_by(Certificate.updated_at.asc()).limit(limit).all()
            return [row.id for row in rows]
        finally:
            session.close()

    def purge_audit(self, retention_days: Optional[int] = None) -> int:
        """
        Delete audit entries older than the retention period.

        Returns:
            Number of entries deleted (0 when retention is not configured)
        """
        days = retention_days if retention_days is not None else settings.audit_retention_days
        if not days:
            logger.info("audit_purge_skipped", reason="retention_not_configured")
            return 0

        session = self.session_factory()
        try:
            deleted = AuditTrailWriter(session).purge_older_than(days)
            session.commit()
            return deleted
        except SQLAlchemyError as e:
            logger.error("audit_purge_failed", error=str(e))
            session.rollback()
            raise
        finally:
            session.close()

    def sweep_idempotency_keys(self) -> int:
        return IdempotencyService(self.session_factory).cleanup_expired()

    def summary(self) -> Dict[str, Any]:
        """Counts per status, for the health endpoint."""
        session = self.session_factory()
        try:
            counts = {status.value: 0 for status in CertificateStatus}
            rows = session.query(Certificate.status, func.count(Certificate.id)).group_by(Certificate.status).all()
            for status, count in rows:
                counts[status] = count
            return counts
        finally:
            session.close()
