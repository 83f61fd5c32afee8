"""
Certificate Model
Stores one digital insurance certificate issuance and its cross-system linkage
"""

import enum
import uuid

from sqlalchemy import Column, Integer, String, DateTime, Text, JSON, Index, text
from sqlalchemy.sql import func
from app.database import Base


class CertificateStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    SUSPENDED = "suspended"


# Statuses that occupy a business-key slot
ACTIVE_STATUSES = (
    CertificateStatus.PENDING.value,
    CertificateStatus.PROCESSING.value,
    CertificateStatus.COMPLETED.value,
)

_ACTIVE_STATUS_CLAUSE = text(
    "status IN (%s)" % ", ".join(f"'{status}'" for status in ACTIVE_STATUSES)
)


def _new_certificate_id() -> str:
    return str(uuid.uuid4())


class Certificate(Base):
    """
    Represents a certificate issuance request and its outcome

    Status writes go through app.services.lifecycle only.
    """
    __tablename__ = "certificates"

    # Primary Key
    id = Column(String(36), primary_key=True, default=_new_certificate_id)

    # Externally visible reference
    reference_number = Column(String(50), nullable=False, unique=True)

    # Issuer linkage
    issuer_request_number = Column(String(100), nullable=True, index=True)  # set when issuer accepts
    certificate_number = Column(String(100), nullable=True, index=True)  # set when issued
    download_url = Column(Text, nullable=True)
    download_expires_at = Column(DateTime(timezone=True), nullable=True)

    # Business key (unique among active statuses, see __table_args__)
    policy_number = Column(String(50), nullable=False, index=True)
    registration_number = Column(String(20), nullable=False, index=True)
    company_code = Column(String(20), nullable=False, index=True)
    agent_code = Column(String(20), nullable=True)

    # Registry linkage
    registry_policy_id = Column(String(100), nullable=True)
    registry_insured_id = Column(String(100), nullable=True)

    # Lifecycle
    # State machine: pending -> processing -> completed | failed | cancelled | suspended
    # failed -> pending on explicit retry
    status = Column(String(20), nullable=False, default=CertificateStatus.PENDING.value, index=True)

    # Diagnostics
    issuer_status_code = Column(Integer, nullable=True)
    error_code = Column(String(50), nullable=True)
    error_message = Column(Text, nullable=True)
    retry_count = Column(Integer, default=0, nullable=False)
    last_retry_at = Column(DateTime(timezone=True), nullable=True)

    # Provenance
    requested_by = Column(String(100), nullable=False, index=True)
    idempotency_key = Column(String(255), nullable=True, index=True)
    certificate_metadata = Column("metadata", JSON, nullable=True)
    """
    Example metadata structure:
    {
        "request": {"channel": "agency-portal"},
        "registry_snapshot": {"policy": {...}, "insured": {...}},
        "transitions": [
            {"event": "issuer_accepted", "from": "pending", "to": "processing", "at": "2026-10-18T10:30:00+00:00"}
        ]
    }
    """

    # Timestamps
    processed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False, index=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        # The store-level authority for duplicate prevention
        Index(
            'uq_active_certificate',
            'policy_number', 'registration_number', 'company_code',
            unique=True,
            postgresql_where=_ACTIVE_STATUS_CLAUSE,
            sqlite_where=_ACTIVE_STATUS_CLAUSE,
        ),
    )

    def to_dict(self) -> dict:
        """JSON-safe representation used in API responses and cached replays."""
        return {
            "id": self.id,
            "reference_number": self.reference_number,
            "status": self.status,
            "policy_number": self.policy_number,
            "registration_number": self.registration_number,
            "company_code": self.company_code,
            "agent_code": self.agent_code,
            "issuer_request_number": self.issuer_request_number,
            "certificate_number": self.certificate_number,
            "download_url": self.download_url,
            "issuer_status_code": self.issuer_status_code,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "retry_count": self.retry_count,
            "last_retry_at": self.last_retry_at.isoformat() if self.last_retry_at else None,
            "requested_by": self.requested_by,
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<Certificate(id={self.id}, ref='{self.reference_number}', status='{self.status}')>"
