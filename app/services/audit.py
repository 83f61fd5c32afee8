"""
Audit Trail Writer

Appends immutable records of every certificate lifecycle transition and
operator action, and serves the paginated read-side queries.

Follows the DualDatabaseWriter pattern: does NOT commit, the caller owns the
transaction so an audit entry is written atomically with the status change
it describes.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy.orm import Session

from app.models.certificate_audit_log import AuditAction, CertificateAuditLog

logger = structlog.get_logger(__name__)

SENSITIVE_FIELDS = ("password", "token", "api_key", "apikey", "secret", "authorization")
REDACTED = "[REDACTED]"

MAX_PAGE_SIZE = 200


@dataclass(frozen=True)
class ActorContext:
    """Who performed an action, and from where."""
    actor_id: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    session_id: Optional[str] = None


SYSTEM_ACTOR = ActorContext(actor_id="system")


@dataclass
class Page:
    items: List[Any]
    total: int
    page: int
    page_size: int

    @property
    def pages(self) -> int:
        if self.page_size <= 0:
            return 0
        return (self.total + self.page_size - 1) // self.page_size

    def to_dict(self) -> dict:
        return {
            "items": [item.to_dict() if hasattr(item, "to_dict") else item for item in self.items],
            "meta": {
                "total": self.total,
                "page": self.page,
                "page_size": self.page_size,
                "pages": self.pages,
            },
        }


def sanitize_values(values: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Redact credential-like keys from a value snapshot."""
    if values is None:
        return None
    sanitized = {}
    for key, value in values.items():
        if key.lower() in SENSITIVE_FIELDS and value:
            sanitized[key] = REDACTED
        elif isinstance(value, dict):
            sanitized[key] = sanitize_values(value)
        else:
            sanitized[key] = value
    return sanitized


def paginate(query, page: int, page_size: int) -> Page:
    """Apply page/page_size to an ordered query."""
    page = max(page, 1)
    page_size = min(max(page_size, 1), MAX_PAGE_SIZE)
    total = query.count()
    items = query.offset((page - 1) * page_size).limit(page_size).all()
    return Page(items=items, total=total, page=page, page_size=page_size)


class AuditTrailWriter:
    """
    Append-only audit log over certificate_audit_logs.

    Does NOT commit - caller controls transaction.
    """

    def __init__(self, db: Session):
        """
        Args:
            db: Database session (caller-managed)
        """
        self.db = db

    def record(
        self,
        certificate_id: str,
        actor: ActorContext,
        action: AuditAction,
        old_status: Optional[str],
        new_status: Optional[str],
        old_values: Optional[Dict[str, Any]] = None,
        new_values: Optional[Dict[str, Any]] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> CertificateAuditLog:
        """
        Append one audit entry to the current transaction.

        Flushes so a store failure surfaces here and aborts the enclosing
        transaction together with the change being audited.
        """
        entry = CertificateAuditLog(
            certificate_id=certificate_id,
            actor_id=actor.actor_id,
            action=action.value if isinstance(action, AuditAction) else action,
            old_status=old_status,
            new_status=new_status,
            old_values=sanitize_values(old_values),
            new_values=sanitize_values(new_values),
            details=sanitize_values(details),
            ip_address=actor.ip_address,
            user_agent=actor.user_agent,
            session_id=actor.session_id,
            timestamp=datetime.now(timezone.utc),
        )
        self.db.add(entry)
        self.db.flush()

        logger.debug(
            "audit_entry_recorded",
            certificate_id=certificate_id,
            actor_id=actor.actor_id,
            action=entry.action,
            old_status=old_status,
            new_status=new_status,
        )
        return entry

    # Read side

    def _base_query(self):
        return self.db.query(CertificateAuditLog).order_by(
            CertificateAuditLog.timestamp.desc(),
            CertificateAuditLog.id.desc(),
        )

    def by_certificate(self, certificate_id: str, page: int = 1, page_size: int = 50) -> Page:
        query = self._base_query().filter(CertificateAuditLog.certificate_id == certificate_id)
        return paginate(query, page, page_size)

    def by_actor(self, actor_id: str, page: int = 1, page_size: int = 50) -> Page:
        query = self._base_query().filter(CertificateAuditLog.actor_id == actor_id)
        return paginate(query, page, page_size)

    def by_action(self, action: AuditAction, page: int = 1, page_size: int = 50) -> Page:
        value = action.value if isinstance(action, AuditAction) else action
        query = self._base_query().filter(CertificateAuditLog.action == value)
        return paginate(query, page, page_size)

    def by_time_range(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        page: int = 1,
        page_size: int = 50,
    ) -> Page:
        query = self._base_query()
        if start is not None:
            query = query.filter(CertificateAuditLog.timestamp >= start)
        if end is not None:
            query = query.filter(CertificateAuditLog.timestamp <= end)
        return paginate(query, page, page_size)

    def purge_older_than(self, days: int) -> int:
        """
        Retention purge, the only delete path for audit entries.

        Returns:
            Number of entries deleted
        """
        cutoff = datetime.now(timezone.utc) - timedelta(days=days)
        deleted = self.db.query(CertificateAuditLog).filter(
            CertificateAuditLog.timestamp < cutoff
        ).delete(synchronize_session=False)
        logger.info("audit_retention_purge", retention_days=days, deleted=deleted)
        return deleted
