"""
Certificate Lifecycle State Machine

pending -> processing -> completed | failed | cancelled | suspended
failed -> pending (explicit retry only)

apply_transition() is the single writer of Certificate.status after creation.
It validates the move against TRANSITIONS, applies the side effects of the
event and appends the audit entry in the same session; the caller commits
both together.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Any, Dict, Optional

import structlog
from sqlalchemy.orm import Session

from app.exceptions import InvalidStateTransition
from app.models.certificate import Certificate, CertificateStatus
from app.models.certificate_audit_log import AuditAction, CertificateAuditLog
from app.services.audit import ActorContext, AuditTrailWriter

logger = structlog.get_logger(__name__)


class LifecycleEvent(str, Enum):
    ISSUER_ACCEPTED = "issuer_accepted"
    ISSUER_SUCCEEDED = "issuer_succeeded"
    ISSUER_ERROR = "issuer_error"
    ISSUER_REJECTED = "issuer_rejected"
    OPERATOR_CANCELLED = "operator_cancelled"
    OPERATOR_SUSPENDED = "operator_suspended"
    RETRY_REQUESTED = "retry_requested"


S = CertificateStatus
E = LifecycleEvent

TRANSITIONS = {
    (S.PENDING, E.ISSUER_ACCEPTED): S.PROCESSING,
    (S.PROCESSING, E.ISSUER_SUCCEEDED): S.COMPLETED,
    (S.PROCESSING, E.ISSUER_ERROR): S.FAILED,
    (S.PENDING, E.ISSUER_REJECTED): S.FAILED,
    (S.PROCESSING, E.ISSUER_REJECTED): S.FAILED,
    (S.COMPLETED, E.OPERATOR_CANCELLED): S.CANCELLED,
    (S.PROCESSING, E.OPERATOR_CANCELLED): S.CANCELLED,
    (S.COMPLETED, E.OPERATOR_SUSPENDED): S.SUSPENDED,
    (S.PROCESSING, E.OPERATOR_SUSPENDED): S.SUSPENDED,
    (S.FAILED, E.RETRY_REQUESTED): S.PENDING,
}

TERMINAL_STATUSES = frozenset({S.COMPLETED, S.FAILED, S.CANCELLED, S.SUSPENDED})

_AUDIT_ACTIONS = {
    E.OPERATOR_CANCELLED: AuditAction.CANCELLED,
    E.OPERATOR_SUSPENDED: AuditAction.SUSPENDED,
}


def next_status(current: str, event: LifecycleEvent, certificate_id: Optional[str] = None) -> CertificateStatus:
    """
    Resolve the target status of an event.

    Raises:
        InvalidStateTransition: The event is not allowed from current
    """
    try:
        target = TRANSITIONS.get((CertificateStatus(current), event))
    except ValueError:
        target = None
    if target is None:
        raise InvalidStateTransition(certificate_id, str(current), event.value)
    return target


def can_transition(current: str, event: LifecycleEvent) -> bool:
    try:
        return (CertificateStatus(current), event) in TRANSITIONS
    except ValueError:
        return False


# Issuer status codes

class IssuerStatusCode(IntEnum):
    SUCCESS = 0
    PENDING_GENERATION = 121
    GENERATING = 122
    READY_FOR_TRANSFER = 123
    TRANSFERRED = 124

    RATE_LIMIT_EXCEEDED = -37
    UNAUTHORIZED = -36
    DUPLICATE_EXISTS = -35
    INVALID_CIRCULATION_ZONE = -34
    INVALID_SUBSCRIBER_TYPE = -33
    INVALID_INSURED_TYPE = -32
    INVALID_PROFESSION = -31
    INVALID_VEHICLE_TYPE = -30
    INVALID_VEHICLE_USAGE = -29
    INVALID_VEHICLE_GENRE = -28
    INVALID_ENERGY_SOURCE = -27
    INVALID_VEHICLE_CATEGORY = -26
    NO_INTERMEDIARY_RELATION = -25
    INVALID_INSURED_EMAIL = -24
    INVALID_SUBSCRIBER_EMAIL = -23
    INVALID_CERTIFICATE_COLOR = -22
    INVALID_SUBSCRIPTION_DATE = -21
    INVALID_EFFECT_DATE = -20
    INVALID_DATE_FORMAT = -19
    DATA_ERROR = -18
    SYSTEM_ERROR = -17
    SAVE_ERROR = -16
    EDITION_FAILED = -15
    AUTHORIZATION_ERROR = -14
    AUTHENTICATION_ERROR = -13
    INCORRECT_ACCESS_CODE = -12
    INVALID_FILE_FORMAT = -11
    INVALID_FILE_STRUCTURE = -10
    INVALID_FILE_DATA = -9
    INCORRECT_AUTHENTICATION = -8
    DATE_ERROR = -7
    CONTRACT_DURATION_ERROR = -6
    COMPANY_STOCK_ERROR = -5
    INTERMEDIARY_STOCK_ERROR = -4
    INVALID_INTERMEDIARY_CODE = -3
    INVALID_COMPANY_CODE = -2
    DUPLICATE_ERROR = -1


ISSUER_STATUS_DESCRIPTIONS = {
    IssuerStatusCode.SUCCESS: "Request processed successfully",
    IssuerStatusCode.PENDING_GENERATION: "Certificate pending generation",
    IssuerStatusCode.GENERATING: "Certificate generation in progress",
    IssuerStatusCode.READY_FOR_TRANSFER: "Certificate ready for transfer",
    IssuerStatusCode.TRANSFERRED: "Certificate transferred",
    IssuerStatusCode.RATE_LIMIT_EXCEEDED: "Request rate limit exceeded",
    IssuerStatusCode.UNAUTHORIZED: "Not authorized to perform this operation",
    IssuerStatusCode.DUPLICATE_EXISTS: "A certificate already exists for this vehicle",
    IssuerStatusCode.INVALID_CIRCULATION_ZONE: "Invalid circulation zone",
    IssuerStatusCode.INVALID_SUBSCRIBER_TYPE: "Invalid subscriber type",
    IssuerStatusCode.INVALID_INSURED_TYPE: "Invalid insured type",
    IssuerStatusCode.INVALID_PROFESSION: "Invalid insured profession",
    IssuerStatusCode.INVALID_VEHICLE_TYPE: "Invalid vehicle type",
    IssuerStatusCode.INVALID_VEHICLE_USAGE: "Invalid vehicle usage",
    IssuerStatusCode.INVALID_VEHICLE_GENRE: "Invalid vehicle genre",
    IssuerStatusCode.INVALID_ENERGY_SOURCE: "Invalid energy source",
    IssuerStatusCode.INVALID_VEHICLE_CATEGORY: "Invalid vehicle category",
    IssuerStatusCode.NO_INTERMEDIARY_RELATION: "No relation between company and intermediary",
    IssuerStatusCode.INVALID_INSURED_EMAIL: "Invalid insured email address",
    IssuerStatusCode.INVALID_SUBSCRIBER_EMAIL: "Invalid subscriber email address",
    IssuerStatusCode.INVALID_CERTIFICATE_COLOR: "Invalid certificate color",
    IssuerStatusCode.INVALID_SUBSCRIPTION_DATE: "Invalid subscription date",
    IssuerStatusCode.INVALID_EFFECT_DATE: "Invalid effect date",
    IssuerStatusCode.INVALID_DATE_FORMAT: "Invalid date format",
    IssuerStatusCode.DATA_ERROR: "Data error",
    IssuerStatusCode.SYSTEM_ERROR: "Issuer system error",
    IssuerStatusCode.SAVE_ERROR: "Issuer failed to save the request",
    IssuerStatusCode.EDITION_FAILED: "Certificate edition failed",
    IssuerStatusCode.AUTHORIZATION_ERROR: "Authorization error",
    IssuerStatusCode.AUTHENTICATION_ERROR: "Authentication error",
    IssuerStatusCode.INCORRECT_ACCESS_CODE: "Incorrect access code",
    IssuerStatusCode.INVALID_FILE_FORMAT: "Invalid file format",
    IssuerStatusCode.INVALID_FILE_STRUCTURE: "Invalid file structure",
    IssuerStatusCode.INVALID_FILE_DATA: "Invalid file data",
    IssuerStatusCode.INCORRECT_AUTHENTICATION: "Incorrect authentication",
    IssuerStatusCode.DATE_ERROR: "Date error",
    IssuerStatusCode.CONTRACT_DURATION_ERROR: "Invalid contract duration",
    IssuerStatusCode.COMPANY_STOCK_ERROR: "Company certificate stock exhausted",
    IssuerStatusCode.INTERMEDIARY_STOCK_ERROR: "Intermediary certificate stock exhausted",
    IssuerStatusCode.INVALID_INTERMEDIARY_CODE: "Invalid intermediary code",
    IssuerStatusCode.INVALID_COMPANY_CODE: "Invalid company code",
    IssuerStatusCode.DUPLICATE_ERROR: "Duplicate request",
}

_COMPLETED_CODES = frozenset({
    IssuerStatusCode.SUCCESS,
    IssuerStatusCode.READY_FOR_TRANSFER,
    IssuerStatusCode.TRANSFERRED,
})
_PROCESSING_CODES = frozenset({
    IssuerStatusCode.PENDING_GENERATION,
    IssuerStatusCode.GENERATING,
})


@dataclass(frozen=True)
class IssuerStatusMapping:
    code: int
    target_status: CertificateStatus
    description: str
    known: bool

    @property
    def needs_review(self) -> bool:
        """Unmapped non-error codes are parked in pending for a human to look at."""
        return not self.known and self.target_status == CertificateStatus.PENDING


def describe_issuer_status(code: int) -> str:
    try:
        return ISSUER_STATUS_DESCRIPTIONS[IssuerStatusCode(code)]
    except ValueError:
        if code < 0:
            return f"Unknown issuer error (code {code})"
        return f"Unmapped issuer status (code {code})"


def map_issuer_status(code: int) -> IssuerStatusMapping:
    """
    Map an issuer status code to a certificate status.

    0, ready-for-transfer, transferred -> completed
    pending-generation, generating -> processing
    any negative code -> failed
    anything else -> pending, flagged unknown for human review
    """
    try:
        known_code = IssuerStatusCode(code)
    except ValueError:
        known_code = None

    if known_code in _COMPLETED_CODES:
        target = CertificateStatus.COMPLETED
    elif known_code in _PROCESSING_CODES:
        target = CertificateStatus.PROCESSING
    elif code < 0:
        target = CertificateStatus.FAILED
    else:
        target = CertificateStatus.PENDING

    return IssuerStatusMapping(
        code=code,
        target_status=target,
        description=describe_issuer_status(code),
        known=known_code is not None,
    )


# Transition function

_SNAPSHOT_FIELDS = (
    "status",
    "issuer_request_number",
    "certificate_number",
    "download_url",
    "issuer_status_code",
    "error_code",
    "error_message",
    "retry_count",
)


def _snapshot(certificate: Certificate) -> Dict[str, Any]:
    return {name: getattr(certificate, name) for name in _SNAPSHOT_FIELDS}


def _changed(before: Dict[str, Any], after: Dict[str, Any]):
    old_values = {k: v for k, v in before.items() if after.get(k) != v}
    new_values = {k: after[k] for k in old_values}
    return old_values, new_values


def apply_transition(
    db: Session,
    certificate: Certificate,
    event: LifecycleEvent,
    actor: ActorContext,
    request_number: Optional[str] = None,
    certificate_number: Optional[str] = None,
    download_url: Optional[str] = None,
    issuer_status_code: Optional[int] = None,
    error_code: Optional[str] = None,
    error_message: Optional[str] = None,
    reason: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> CertificateAuditLog:
    """
    Move a certificate along the state machine and audit the move.

    Does NOT commit. The certificate must have been loaded for update by
    the caller so transitions on one certificate are serialized.

    Raises:
        InvalidStateTransition: The event is not allowed from the current
            status; the certificate is left untouched
    """
    old_status = certificate.status
    target = next_status(old_status, event, certificate.id)
    now = datetime.now(timezone.utc)
    before = _snapshot(certificate)

    if event == E.ISSUER_ACCEPTED:
        certificate.issuer_request_number = request_number
    elif event == E.ISSUER_SUCCEEDED:
        certificate.certificate_number = certificate_number
        if download_url:
            certificate.download_url = download_url
        certificate.issuer_status_code = issuer_status_code
        certificate.error_code = None
        certificate.error_message = None
        certificate.processed_at = now
    elif event in (E.ISSUER_ERROR, E.ISSUER_REJECTED):
        certificate.issuer_status_code = issuer_status_code
        certificate.error_code = error_code
        certificate.error_message = error_message
        certificate.processed_at = now
    elif event == E.RETRY_REQUESTED:
        certificate.retry_count = (certificate.retry_count or 0) + 1
        certificate.last_retry_at = now
        certificate.issuer_request_number = None
        certificate.issuer_status_code = None
        certificate.error_code = None
        certificate.error_message = None
        certificate.processed_at = None

    certificate.status = target.value
    certificate.updated_at = now

    # Reassign so the JSON column is flagged dirty
    metadata = dict(certificate.certificate_metadata or {})
    history = list(metadata.get("transitions", []))
    history.append({
        "event": event.value,
        "from": old_status,
        "to": target.value,
        "at": now.isoformat(),
        "actor": actor.actor_id,
    })
    metadata["transitions"] = history
    certificate.certificate_metadata = metadata

    old_values, new_values = _changed(before, _snapshot(certificate))

    audit_details = dict(details or {})
    audit_details["event"] = event.value
    if reason:
        audit_details["reason"] = reason

    entry = AuditTrailWriter(db).record(
        certificate_id=certificate.id,
        actor=actor,
        action=_AUDIT_ACTIONS.get(event, AuditAction.STATUS_CHANGED),
        old_status=old_status,
        new_status=target.value,
        old_values=old_values,
        new_values=new_values,
        details=audit_details,
    )

    logger.info(
        "certificate_transition",
        certificate_id=certificate.id,
        transition_event=event.value,
        old_status=old_status,
        new_status=target.value,
        actor_id=actor.actor_id,
    )
    return entry
