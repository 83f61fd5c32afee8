"""
Duplicate Certificate Check

Fast pre-check for an active certificate on a business key. The partial
unique index uq_active_certificate is the authority; this query only lets
the orchestrator refuse early, before any external call is made.
"""

from typing import Optional

from sqlalchemy.orm import Session

from app.models.certificate import ACTIVE_STATUSES, Certificate


def find_active_duplicate(
    db: Session,
    policy_number: str,
    registration_number: str,
    company_code: str,
) -> Optional[Certificate]:
    """
    Find the certificate occupying a (policy, registration, company) slot.

    Args:
        db: Database session (caller-managed)
        policy_number: Registry policy number
        registration_number: Vehicle registration number
        company_code: Issuing company code

    Returns:
        The pending, processing or completed certificate for the triple, or None
    """
    return db.query(Certificate).filter(
        Certificate.policy_number == policy_number,
        Certificate.registration_number == registration_number,
        Certificate.company_code == company_code,
        Certificate.status.in_(ACTIVE_STATUSES),
    ).order_by(Certificate.created_at.desc()).first()
