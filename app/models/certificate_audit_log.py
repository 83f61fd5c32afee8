"""
CertificateAuditLog Model
Append-only trail of certificate lifecycle transitions and operator actions
"""

import enum
import uuid

from sqlalchemy import Column, String, DateTime, Text, JSON, ForeignKey, Index
from sqlalchemy.sql import func
from app.database import Base


class AuditAction(str, enum.Enum):
    CREATED = "created"
    STATUS_CHANGED = "status_changed"
    CANCELLED = "cancelled"
    SUSPENDED = "suspended"
    DOWNLOADED = "downloaded"
    STATUS_CHECKED = "status_checked"


class CertificateAuditLog(Base):
    """
    One row per lifecycle transition or operator action.

    Never updated or deleted by the application; only the retention job
    purges rows by age.
    """
    __tablename__ = "certificate_audit_logs"

    # Primary Key
    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    # Subject and actor
    certificate_id = Column(String(36), ForeignKey("certificates.id"), nullable=False)
    actor_id = Column(String(100), nullable=False)
    action = Column(String(30), nullable=False)

    # Transition
    old_status = Column(String(20), nullable=True)
    new_status = Column(String(20), nullable=True)
    old_values = Column(JSON, nullable=True)
    new_values = Column(JSON, nullable=True)
    details = Column(JSON, nullable=True)  # reason, issuer code, operation code, ...

    # Actor context
    ip_address = Column(String(45), nullable=True)
    user_agent = Column(Text, nullable=True)
    session_id = Column(String(255), nullable=True)

    timestamp = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        Index('ix_audit_certificate_id', 'certificate_id'),
        Index('ix_audit_timestamp', 'timestamp'),
        Index('ix_audit_actor_id', 'actor_id'),
        Index('ix_audit_action', 'action'),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "certificate_id": self.certificate_id,
            "actor_id": self.actor_id,
            "action": self.action,
            "old_status": self.old_status,
            "new_status": self.new_status,
            "old_values": self.old_values,
            "new_values": self.new_values,
            "details": self.details,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "session_id": self.session_id,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def __repr__(self):
        return f"<CertificateAuditLog(id={self.id}, certificate_id={self.certificate_id}, action='{self.action}')>"
