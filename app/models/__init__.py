"""
Database Models
"""

from app.models.certificate import Certificate, CertificateStatus, ACTIVE_STATUSES
from app.models.certificate_audit_log import CertificateAuditLog, AuditAction
from app.models.idempotency_key import IdempotencyKey

__all__ = [
    "Certificate",
    "CertificateStatus",
    "ACTIVE_STATUSES",
    "CertificateAuditLog",
    "AuditAction",
    "IdempotencyKey",
]
