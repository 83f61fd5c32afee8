"""
Issuance Orchestrator

Drives a certificate request across the idempotency guard, the duplicate
check, the registry, the certificate store and the issuer:

1. idempotency begin (short-circuit on replay / conflict / in-progress)
2. duplicate check on (policy, registration, company)
3. registry lookup through the registry breaker
4. certificate record created in pending + `created` audit entry
5. issuer submission through the issuer breaker
6. success: pending -> processing, issuer request number stored
7. failure: -> failed, reason recorded (retry is a separate operation)
8. idempotency complete / fail with the response about to be returned

Nothing before step 4 is visible outside the idempotency record. Each step
that writes runs in its own short transaction; a transition and its audit
entry always share one.
"""

import secrets
import string
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

import structlog
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from app.config import settings
from app.exceptions import (
    CertificateNotFound,
    CertificateServiceError,
    CircuitOpenError,
    DuplicateCertificate,
    IdempotencyConflict,
    IdempotencyInProgress,
    InvalidStateTransition,
    IssuerRejected,
    IssuerUnavailable,
    PersistenceError,
    UpstreamTimeout,
    ValidationError,
)
from app.models.certificate import Certificate, CertificateStatus
from app.models.certificate_audit_log import AuditAction
from app.models.certificate_schemas import CertificateRequest, CertificateSearchCriteria
from app.services.audit import SYSTEM_ACTOR, ActorContext, AuditTrailWriter, paginate
from app.services.duplicate_check import find_active_duplicate
from app.services.idempotency import IdempotencyOutcome, IdempotencyService, compute_request_hash
from app.services.issuer_client import IssuerClient, IssuerCredentials, build_production_payload
from app.services.lifecycle import LifecycleEvent, apply_transition, can_transition, map_issuer_status
from app.services.monitoring.circuit_breakers import ISSUER, ExternalServiceBreaker, get_issuer_breaker
from app.services.monitoring.error_tracking import (
    add_breadcrumb,
    capture_transition_failure,
    set_certificate_context,
)
from app.services.registry_client import RegistryCredentials
from app.services.registry_lookup import RegistryLookup, RegistryRecord

logger = structlog.get_logger(__name__)

CERTIFICATES_PATH = "/api/v1/certificates"

_REFERENCE_ALPHABET = string.ascii_uppercase + string.digits

# Failures of the issuer call itself, recorded on the certificate
_SUBMISSION_FAILURES = (IssuerRejected, IssuerUnavailable, CircuitOpenError, UpstreamTimeout)


def generate_reference_number(now: Optional[datetime] = None) -> str:
    """REF + epoch milliseconds + 6 random uppercase alphanumerics."""
    now = now or datetime.now(timezone.utc)
    suffix = "".join(secrets.choice(_REFERENCE_ALPHABET) for _ in range(6))
    return f"REF{int(now.timestamp() * 1000)}{suffix}"


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass(frozen=True)
class IssuanceResponse:
    """HTTP-shaped result of a mutating operation, as cached by the idempotency guard."""
    status_code: int
    body: Any
    replayed: bool = False


@dataclass(frozen=True)
class UpstreamCredentials:
    registry: RegistryCredentials
    issuer: IssuerCredentials

    @classmethod
    def from_settings(cls) -> "UpstreamCredentials":
        return cls(registry=RegistryCredentials.from_settings(), issuer=IssuerCredentials.from_settings())


class CertificateOrchestrator:
    """
    Owns every certificate status transition after creation.

    Opens its own sessions from the session factory: one transaction per
    write step, never held across an external call. Cancel and suspend are
    the exception: they keep the certificate row locked through the issuer
    call, which the breaker timeout bounds.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        idempotency: Optional[IdempotencyService] = None,
        registry: Optional[RegistryLookup] = None,
        issuer: Optional[IssuerClient] = None,
        issuer_breaker: Optional[ExternalServiceBreaker] = None,
    ):
        """
        Args:
            session_factory: SQLAlchemy sessionmaker
            idempotency: Idempotency guard (defaults to one on the same store)
            registry: Registry lookup, already wrapped in the registry breaker
            issuer: Issuer HTTP client
            issuer_breaker: Breaker every issuer call goes through
        """
        self.session_factory = session_factory
        self.idempotency = idempotency or IdempotencyService(session_factory)
        self.registry = registry or RegistryLookup()
        self.issuer = issuer or IssuerClient()
        self.issuer_breaker = issuer_breaker or get_issuer_breaker()

    # Transactions

    @contextmanager
    def _transaction(self, certificate_id: Optional[str] = None, attempt: Optional[dict] = None):
        session: Session = self.session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            error = PersistenceError(
                f"Certificate store error: {e.__class__.__name__}",
                details={"certificate_id": certificate_id},
            )
            logger.error(
                "certificate_persistence_failed",
                certificate_id=certificate_id,
                attempt=attempt,
                error=str(e),
            )
            capture_transition_failure(error, certificate_id, attempt or {})
            raise error from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @staticmethod
    def _load(db: Session, certificate_id: str, for_update: bool = False) -> Certificate:
        query = db.query(Certificate).filter(Certificate.id == certificate_id)
        if for_update:
            # Serializes transitions on one certificate
            query = query.with_for_update()
        certificate = query.first()
        if certificate is None:
            raise CertificateNotFound(certificate_id)
        return certificate

    @staticmethod
    @contextmanager
    def _business_key_guard(db: Session, policy_number: str, registration_number: str, company_code: str):
        """Flush the enclosed writes, translating an active business-key violation into DuplicateCertificate."""
        try:
            yield
            db.flush()
        except IntegrityError:
            db.rollback()
            existing = find_active_duplicate(db, policy_number, registration_number, company_code)
            if existing is None:
                raise
            raise DuplicateCertificate(existing.id, existing.status)

    def _transition(
        self,
        certificate_id: str,
        event: LifecycleEvent,
        actor: ActorContext,
        **fields,
    ) -> Dict[str, Any]:
        """Apply one lifecycle event under a row lock and return the updated certificate."""
        attempt = {"event": event.value}
        attempt.update({k: v for k, v in fields.items() if v is not None})

        with self._transaction(certificate_id, attempt) as db:
            certificate = self._load(db, certificate_id, for_update=True)
            try:
                apply_transition(db, certificate, event, actor, **fields)
            except InvalidStateTransition as e:
                attempt["from_status"] = certificate.status
                logger.error(
                    "invalid_state_transition",
                    certificate_id=certificate_id,
                    attempt=attempt,
                )
                capture_transition_failure(e, certificate_id, attempt)
                raise
            db.flush()
            return certificate.to_dict()

    # Idempotency two-phase protocol

    def _run_guarded(
        self,
        idempotency_key: Optional[str],
        method: str,
        path: str,
        body: Any,
        requester_id: Optional[str],
        operation: Callable[[], IssuanceResponse],
    ) -> IssuanceResponse:
        """
        Run a mutating operation at most once per idempotency key.

        The guard is completed (or failed) with the exact response before it
        is handed back to the caller.
        """
        if not idempotency_key:
            return operation()

        request_hash = compute_request_hash(method, path, body)
        decision = self.idempotency.begin(idempotency_key, request_hash, requester_id, method, path)

        if decision.outcome == IdempotencyOutcome.REPLAY:
            return IssuanceResponse(decision.status_code, decision.body, replayed=True)
        if decision.outcome == IdempotencyOutcome.CONFLICT:
            raise IdempotencyConflict(details={"idempotency_key": idempotency_key})
        if decision.outcome == IdempotencyOutcome.IN_PROGRESS:
            raise IdempotencyInProgress(details={"idempotency_key": idempotency_key})

        try:
            response = operation()
        except CertificateServiceError as e:
            self.idempotency.fail(idempotency_key, e.http_status, e.to_dict())
            raise
        except Exception:
            self.idempotency.fail(idempotency_key, 500, CertificateServiceError().to_dict())
            raise

        if response.status_code >= 400:
            self.idempotency.fail(idempotency_key, response.status_code, response.body)
        else:
            self.idempotency.complete(idempotency_key, response.status_code, response.body)
        return response

    # Create

    def create(
        self,
        request: CertificateRequest,
        idempotency_key: Optional[str] = None,
        actor: Optional[ActorContext] = None,
        credentials: Optional[UpstreamCredentials] = None,
        path: str = CERTIFICATES_PATH,
    ) -> IssuanceResponse:
        """
        Issue a certificate.

        Returns:
            201 response with the certificate, whose status is processing when
            the issuer accepted and failed when the submission failed

        Raises:
            DuplicateCertificate: An active certificate holds the business key
            CircuitOpenError: Registry or issuer breaker open, no record created
            RegistryLookupFailed: Policy/insured lookup failed, no record created
            IdempotencyConflict, IdempotencyInProgress: Key misuse
            PersistenceError: Store unavailable
        """
        key = idempotency_key or request.idempotency_key
        actor = actor or ActorContext(actor_id=request.requested_by)
        return self._run_guarded(
            key,
            "POST",
            path,
            request.fingerprint_payload(),
            request.requested_by,
            lambda: self._create(request, key, actor, credentials or UpstreamCredentials.from_settings()),
        )

    def _create(
        self,
        request: CertificateRequest,
        idempotency_key: Optional[str],
        actor: ActorContext,
        credentials: UpstreamCredentials,
    ) -> IssuanceResponse:
        set_certificate_context(None, "create")
        log = logger.bind(
            operation="create",
            policy_number=request.policy_number,
            registration_number=request.registration_number,
            company_code=request.company_code,
        )

        with self._transaction(attempt={"operation": "duplicate_check"}) as db:
            existing = find_active_duplicate(db, *request.business_key())
            if existing is not None:
                log.info("duplicate_certificate_refused", existing_certificate_id=existing.id, existing_status=existing.status)
                raise DuplicateCertificate(existing.id, existing.status)

        # Fail fast: no record for a request the issuer cannot take right now
        if self.issuer_breaker.is_open():
            log.warning("issuer_circuit_open_before_create")
            raise CircuitOpenError(ISSUER)

        add_breadcrumb("registry", "Looking up policy and insured", data={"policy_number": request.policy_number})
        record = self.registry.lookup(request.policy_number, credentials.registry)

        certificate_id = self._create_record(request, idempotency_key, actor, record)
        set_certificate_context(certificate_id, "create")
        log = log.bind(certificate_id=certificate_id)
        log.info("certificate_created")

        body = self._submit(certificate_id, request, record, actor, credentials.issuer)
        log.info("certificate_submission_finished", status=body["status"])
        return IssuanceResponse(201, body)

    def _create_record(
        self,
        request: CertificateRequest,
        idempotency_key: Optional[str],
        actor: ActorContext,
        record: RegistryRecord,
    ) -> str:
        now = datetime.now(timezone.utc)
        with self._transaction(attempt={"operation": "create_record"}) as db:
            certificate = Certificate(
                reference_number=generate_reference_number(now),
                policy_number=request.policy_number,
                registration_number=request.registration_number,
                company_code=request.company_code,
                agent_code=request.agent_code,
                registry_policy_id=record.policy.policy_id,
                registry_insured_id=record.insured.insured_id,
                status=CertificateStatus.PENDING.value,
                retry_count=0,
                requested_by=request.requested_by,
                idempotency_key=idempotency_key,
                certificate_metadata={
                    "request": request.metadata or {},
                    "registry_snapshot": record.snapshot(),
                    "transitions": [],
                },
                created_at=now,
                updated_at=now,
            )
            with self._business_key_guard(db, *request.business_key()):
                db.add(certificate)

            AuditTrailWriter(db).record(
                certificate_id=certificate.id,
                actor=actor,
                action=AuditAction.CREATED,
                old_status=None,
                new_status=CertificateStatus.PENDING.value,
                new_values={
                    "reference_number": certificate.reference_number,
                    "policy_number": certificate.policy_number,
                    "registration_number": certificate.registration_number,
                    "company_code": certificate.company_code,
                    "agent_code": certificate.agent_code,
                },
                details={"idempotency_key": idempotency_key} if idempotency_key else None,
            )
            return certificate.id

    def _submit(
        self,
        certificate_id: str,
        request: CertificateRequest,
        record: RegistryRecord,
        actor: ActorContext,
        credentials: IssuerCredentials,
    ) -> Dict[str, Any]:
        """Steps 5-7: submit to the issuer and record the outcome."""
        add_breadcrumb("issuer", "Submitting production request", data={"certificate_id": certificate_id})

        try:
            payload = build_production_payload(request, record.policy, record.insured, credentials)
            result = self.issuer_breaker.call(self.issuer.submit_production, payload, credentials)
        except IssuerRejected as e:
            mapping = map_issuer_status(e.status_code)
            logger.warning(
                "issuer_rejected_submission",
                certificate_id=certificate_id,
                issuer_status_code=e.status_code,
                description=mapping.description,
            )
            return self._transition(
                certificate_id,
                LifecycleEvent.ISSUER_REJECTED,
                actor,
                issuer_status_code=e.status_code,
                error_code=e.code,
                error_message=e.message,
            )
        except _SUBMISSION_FAILURES as e:
            logger.warning(
                "issuer_submission_failed",
                certificate_id=certificate_id,
                error_code=e.code,
                error=e.message,
            )
            return self._transition(
                certificate_id,
                LifecycleEvent.ISSUER_REJECTED,
                actor,
                error_code=e.code,
                error_message=e.message,
                details={"retryable": e.retryable},
            )
        except Exception as e:
            # The record exists already; it must not stay pending holding the business key
            logger.error(
                "issuer_submission_crashed",
                certificate_id=certificate_id,
                error_type=type(e).__name__,
                error=str(e),
                exc_info=True,
            )
            capture_transition_failure(e, certificate_id, {"operation": "submit", "error_type": type(e).__name__})
            return self._transition(
                certificate_id,
                LifecycleEvent.ISSUER_REJECTED,
                actor,
                error_code=CertificateServiceError.code,
                error_message=f"Unexpected error during issuer submission ({type(e).__name__})",
                details={"retryable": False},
            )

        return self._transition(
            certificate_id,
            LifecycleEvent.ISSUER_ACCEPTED,
            actor,
            request_number=result.request_number,
            details={"issuer_status_code": result.status_code},
        )

    # Retry

    def retry(
        self,
        certificate_id: str,
        actor: ActorContext = SYSTEM_ACTOR,
        idempotency_key: Optional[str] = None,
        credentials: Optional[UpstreamCredentials] = None,
        path: Optional[str] = None,
    ) -> IssuanceResponse:
        """
        Resubmit a failed certificate to the issuer (failed -> pending, then step 5).

        Uses the registry data captured at creation; no new lookup is made.
        """
        return self._run_guarded(
            idempotency_key,
            "POST",
            path or f"{CERTIFICATES_PATH}/{certificate_id}/retry",
            {"requested_by": actor.actor_id},
            actor.actor_id,
            lambda: self._retry(certificate_id, actor, credentials or UpstreamCredentials.from_settings()),
        )

    def _retry(self, certificate_id: str, actor: ActorContext, credentials: UpstreamCredentials) -> IssuanceResponse:
        set_certificate_context(certificate_id, "retry")

        if self.issuer_breaker.is_open():
            raise CircuitOpenError(ISSUER)

        with self._transaction(certificate_id, {"event": LifecycleEvent.RETRY_REQUESTED.value}) as db:
            certificate = self._load(db, certificate_id, for_update=True)
            snapshot = (certificate.certificate_metadata or {}).get("registry_snapshot")
            if not snapshot:
                raise ValidationError(
                    "Certificate has no registry data to resubmit; create a new certificate instead",
                    details={"certificate_id": certificate_id},
                )

            business_key = (certificate.policy_number, certificate.registration_number, certificate.company_code)
            from_status = certificate.status
            try:
                with self._business_key_guard(db, *business_key):
                    apply_transition(db, certificate, LifecycleEvent.RETRY_REQUESTED, actor)
            except InvalidStateTransition as e:
                attempt = {"event": LifecycleEvent.RETRY_REQUESTED.value, "from_status": from_status}
                logger.error("invalid_state_transition", certificate_id=certificate_id, attempt=attempt)
                capture_transition_failure(e, certificate_id, attempt)
                raise

            request = CertificateRequest(
                policy_number=certificate.policy_number,
                registration_number=certificate.registration_number,
                company_code=certificate.company_code,
                agent_code=certificate.agent_code,
                requested_by=certificate.requested_by,
            )
            retry_count = certificate.retry_count

        logger.info("certificate_retry_started", certificate_id=certificate_id, retry_count=retry_count)
        body = self._submit(certificate_id, request, RegistryRecord.from_snapshot(snapshot), actor, credentials.issuer)
        return IssuanceResponse(200, body)

    # Operator actions

    def cancel(
        self,
        certificate_id: str,
        reason: Optional[str],
        actor: ActorContext,
        idempotency_key: Optional[str] = None,
        credentials: Optional[UpstreamCredentials] = None,
        path: Optional[str] = None,
    ) -> IssuanceResponse:
        return self._run_guarded(
            idempotency_key,
            "POST",
            path or f"{CERTIFICATES_PATH}/{certificate_id}/cancel",
            {"requested_by": actor.actor_id, "reason": reason},
            actor.actor_id,
            lambda: self._operator_action(
                certificate_id, LifecycleEvent.OPERATOR_CANCELLED, reason, actor,
                credentials or UpstreamCredentials.from_settings(),
            ),
        )

    def suspend(
        self,
        certificate_id: str,
        reason: Optional[str],
        actor: ActorContext,
        idempotency_key: Optional[str] = None,
        credentials: Optional[UpstreamCredentials] = None,
        path: Optional[str] = None,
    ) -> IssuanceResponse:
        return self._run_guarded(
            idempotency_key,
            "POST",
            path or f"{CERTIFICATES_PATH}/{certificate_id}/suspend",
            {"requested_by": actor.actor_id, "reason": reason},
            actor.actor_id,
            lambda: self._operator_action(
                certificate_id, LifecycleEvent.OPERATOR_SUSPENDED, reason, actor,
                credentials or UpstreamCredentials.from_settings(),
            ),
        )

    def _operator_action(
        self,
        certificate_id: str,
        event: LifecycleEvent,
        reason: Optional[str],
        actor: ActorContext,
        credentials: UpstreamCredentials,
    ) -> IssuanceResponse:
        operation = "cancel" if event == LifecycleEvent.OPERATOR_CANCELLED else "suspend"
        set_certificate_context(certificate_id, operation)
        attempt = {"event": event.value, "reason": reason}

        with self._transaction(certificate_id, attempt) as db:
            # Row lock spans the issuer call: one operator action per certificate at a time
            certificate = self._load(db, certificate_id, for_update=True)
            status = certificate.status

            if not can_transition(status, event):
                error = InvalidStateTransition(certificate_id, status, event.value)
                attempt["from_status"] = status
                logger.error("invalid_state_transition", certificate_id=certificate_id, attempt=attempt)
                capture_transition_failure(error, certificate_id, attempt)
                raise error

            reference = certificate.certificate_number or certificate.issuer_request_number
            if not reference:
                raise ValidationError(
                    f"Certificate has no issuer reference, cannot {operation}",
                    details={"certificate_id": certificate_id},
                )

            issuer_call = self.issuer.cancel if event == LifecycleEvent.OPERATOR_CANCELLED else self.issuer.suspend
            add_breadcrumb("issuer", f"Requesting {operation}", data={"certificate_id": certificate_id, "reference": reference})
            self.issuer_breaker.call(issuer_call, reference, reason, credentials.issuer)

            apply_transition(db, certificate, event, actor, reason=reason, details={"issuer_reference": reference})
            db.flush()
            body = certificate.to_dict()

        logger.info(f"certificate_{operation}_complete", certificate_id=certificate_id, actor_id=actor.actor_id)
        return IssuanceResponse(200, body)

    # Batches

    @staticmethod
    def _check_batch_size(items: list, field_name: str) -> None:
        if not items:
            raise ValidationError(f"{field_name} is required and cannot be empty", details={"field": field_name})
        if len(items) > settings.max_batch_size:
            raise ValidationError(
                f"Maximum {settings.max_batch_size} items can be processed in a single batch",
                details={"field": field_name, "count": len(items), "max": settings.max_batch_size},
            )

    def create_bulk(
        self,
        requests: List[CertificateRequest],
        requested_by: str,
        idempotency_key: Optional[str] = None,
        actor: Optional[ActorContext] = None,
        credentials: Optional[UpstreamCredentials] = None,
        path: str = f"{CERTIFICATES_PATH}/bulk",
    ) -> IssuanceResponse:
        """
        Issue several certificates under one idempotency key.

        Items run through the normal create flow in order. A refused item
        (duplicate, registry failure, open circuit) is reported in the summary
        and the batch carries on. Every certificate created records the batch
        id in its metadata.

        Returns:
            200 response with the batch summary and one result per item

        Raises:
            ValidationError: Empty batch or more than max_batch_size items
        """
        self._check_batch_size(requests, "certificates")
        actor = actor or ActorContext(actor_id=requested_by)
        body = {"requested_by": requested_by, "certificates": [r.fingerprint_payload() for r in requests]}
        return self._run_guarded(
            idempotency_key,
            "POST",
            path,
            body,
            requested_by,
            lambda: self._create_bulk(requests, actor, credentials or UpstreamCredentials.from_settings()),
        )

    def _create_bulk(
        self,
        requests: List[CertificateRequest],
        actor: ActorContext,
        credentials: UpstreamCredentials,
    ) -> IssuanceResponse:
        batch_id = f"batch_{generate_reference_number()}"
        log = logger.bind(batch_id=batch_id)
        started = time.monotonic()
        log.info("bulk_issuance_started", total_requests=len(requests), actor_id=actor.actor_id)

        results = []
        for index, request in enumerate(requests):
            item = request.model_copy(update={
                "idempotency_key": None,
                "metadata": dict(request.metadata or {}, batch_id=batch_id),
            })
            try:
                response = self._create(item, None, actor, credentials)
            except CertificateServiceError as e:
                log.info("bulk_item_refused", index=index, error_code=e.code)
                results.append({
                    "index": index,
                    "policy_number": request.policy_number,
                    "registration_number": request.registration_number,
                    "error": e.to_dict()["error"],
                })
            else:
                results.append({"index": index, "certificate": response.body})

        successful = sum(1 for result in results if "certificate" in result)
        summary = {
            "batch_id": batch_id,
            "total_requests": len(requests),
            "successful": successful,
            "failed": len(requests) - successful,
            "results": results,
            "processing_time_ms": int((time.monotonic() - started) * 1000),
        }
        log.info(
            "bulk_issuance_finished",
            successful=summary["successful"],
            failed=summary["failed"],
            processing_time_ms=summary["processing_time_ms"],
        )
        return IssuanceResponse(200, summary)

    def cancel_many(
        self,
        certificate_ids: List[str],
        reason: Optional[str],
        actor: ActorContext,
        idempotency_key: Optional[str] = None,
        credentials: Optional[UpstreamCredentials] = None,
        path: str = f"{CERTIFICATES_PATH}/bulk/cancel",
    ) -> IssuanceResponse:
        return self._operator_batch(
            LifecycleEvent.OPERATOR_CANCELLED, certificate_ids, reason, actor, idempotency_key, credentials, path
        )

    def suspend_many(
        self,
        certificate_ids: List[str],
        reason: Optional[str],
        actor: ActorContext,
        idempotency_key: Optional[str] = None,
        credentials: Optional[UpstreamCredentials] = None,
        path: str = f"{CERTIFICATES_PATH}/bulk/suspend",
    ) -> IssuanceResponse:
        return self._operator_batch(
            LifecycleEvent.OPERATOR_SUSPENDED, certificate_ids, reason, actor, idempotency_key, credentials, path
        )

    def _operator_batch(
        self,
        event: LifecycleEvent,
        certificate_ids: List[str],
        reason: Optional[str],
        actor: ActorContext,
        idempotency_key: Optional[str],
        credentials: Optional[UpstreamCredentials],
        path: str,
    ) -> IssuanceResponse:
        """Apply cancel or suspend to each id; returns {"successful": [ids], "failed": [{certificate_id, error}]}."""
        self._check_batch_size(certificate_ids, "certificate_ids")
        credentials = credentials or UpstreamCredentials.from_settings()

        def run() -> IssuanceResponse:
            outcome = {"successful": [], "failed": []}
            for certificate_id in certificate_ids:
                try:
                    self._operator_action(certificate_id, event, reason, actor, credentials)
                except CertificateServiceError as e:
                    outcome["failed"].append({"certificate_id": certificate_id, "error": e.to_dict()["error"]})
                else:
                    outcome["successful"].append(certificate_id)
            logger.info(
                "bulk_operator_action_finished",
                transition_event=event.value,
                successful=len(outcome["successful"]),
                failed=len(outcome["failed"]),
                actor_id=actor.actor_id,
            )
            return IssuanceResponse(200, outcome)

        return self._run_guarded(
            idempotency_key,
            "POST",
            path,
            {"requested_by": actor.actor_id, "reason": reason, "certificate_ids": list(certificate_ids)},
            actor.actor_id,
            run,
        )

    # Status reconciliation

    def check_status(
        self,
        certificate_id: str,
        actor: ActorContext = SYSTEM_ACTOR,
        credentials: Optional[IssuerCredentials] = None,
    ) -> Dict[str, Any]:
        """
        Reconcile a certificate with the issuer.

        Maps the issuer code and applies the matching transition when the
        current status allows it; otherwise records a status_checked entry.
        Unmapped codes leave the certificate untouched and flag it for review.

        Raises:
            CircuitOpenError, UpstreamTimeout, IssuerUnavailable: Issuer unreachable
        """
        set_certificate_context(certificate_id, "check_status")
        credentials = credentials or IssuerCredentials.from_settings()

        with self._transaction(certificate_id) as db:
            certificate = self._load(db, certificate_id)
            request_number = certificate.issuer_request_number
            if not request_number:
                return {
                    "certificate": certificate.to_dict(),
                    "issuer_status": None,
                    "transitioned": False,
                    "message": "Certificate not yet submitted to the issuer",
                }

        report = self.issuer_breaker.call(self.issuer.check_status, request_number, credentials)
        mapping = map_issuer_status(report.status_code)

        event = None
        if mapping.target_status == CertificateStatus.COMPLETED:
            event = LifecycleEvent.ISSUER_SUCCEEDED
        elif mapping.target_status == CertificateStatus.FAILED:
            event = LifecycleEvent.ISSUER_ERROR

        issuer_status = {
            "code": mapping.code,
            "description": mapping.description,
            "mapped_status": mapping.target_status.value,
            "known": mapping.known,
        }
        if mapping.needs_review:
            logger.warning("issuer_status_unmapped", certificate_id=certificate_id, issuer_status_code=mapping.code)

        attempt = {"event": event.value if event else None, "issuer_status_code": mapping.code}
        with self._transaction(certificate_id, attempt) as db:
            certificate = self._load(db, certificate_id, for_update=True)
            transitioned = False

            if event is not None and can_transition(certificate.status, event):
                info = report.first_certificate()
                if event == LifecycleEvent.ISSUER_SUCCEEDED:
                    apply_transition(
                        db, certificate, event, actor,
                        certificate_number=info.certificate_number if info else None,
                        download_url=info.download_url if info else None,
                        issuer_status_code=mapping.code,
                        details={"issuer_status": issuer_status},
                    )
                    if certificate.download_url:
                        certificate.download_expires_at = datetime.now(timezone.utc) + timedelta(
                            hours=settings.download_link_ttl_hours
                        )
                else:
                    apply_transition(
                        db, certificate, event, actor,
                        issuer_status_code=mapping.code,
                        error_code=IssuerRejected.code,
                        error_message=report.message or mapping.description,
                        details={"issuer_status": issuer_status},
                    )
                transitioned = True
            else:
                AuditTrailWriter(db).record(
                    certificate_id=certificate.id,
                    actor=actor,
                    action=AuditAction.STATUS_CHECKED,
                    old_status=certificate.status,
                    new_status=certificate.status,
                    details={"issuer_status": issuer_status, "needs_review": mapping.needs_review},
                )

            db.flush()
            return {
                "certificate": certificate.to_dict(),
                "issuer_status": issuer_status,
                "transitioned": transitioned,
            }

    # Download

    def download(
        self,
        certificate_id: str,
        actor: ActorContext,
        credentials: Optional[IssuerCredentials] = None,
    ) -> Dict[str, Any]:
        """
        Download locator for a completed certificate.

        Serves the cached link while it is valid, otherwise fetches a fresh
        one from the issuer and caches it for download_link_ttl_hours.
        """
        set_certificate_context(certificate_id, "download")

        with self._transaction(certificate_id) as db:
            certificate = self._load(db, certificate_id)
            if certificate.status != CertificateStatus.COMPLETED.value:
                raise ValidationError(
                    "Certificate is not ready for download",
                    details={"certificate_id": certificate_id, "status": certificate.status},
                    code="CERTIFICATE_NOT_READY",
                )
            now = datetime.now(timezone.utc)
            expires_at = _as_utc(certificate.download_expires_at)
            cached_url = certificate.download_url if expires_at and expires_at > now else None
            company_code = certificate.company_code
            request_number = certificate.issuer_request_number

        if cached_url:
            url, link_type, source = cached_url, "PDF", "cache"
        else:
            credentials = credentials or IssuerCredentials.from_settings()
            links = self.issuer_breaker.call(self.issuer.download, company_code, request_number, credentials)
            link = next((link for link in links if link.type == "PDF"), links[0])
            url, link_type, source = link.url, link.type, "issuer"
            expires_at = datetime.now(timezone.utc) + timedelta(hours=settings.download_link_ttl_hours)

        with self._transaction(certificate_id, {"operation": "download"}) as db:
            certificate = self._load(db, certificate_id, for_update=True)
            if source == "issuer":
                certificate.download_url = url
                certificate.download_expires_at = expires_at
            AuditTrailWriter(db).record(
                certificate_id=certificate_id,
                actor=actor,
                action=AuditAction.DOWNLOADED,
                old_status=certificate.status,
                new_status=certificate.status,
                details={"source": source, "type": link_type},
            )

        logger.info("certificate_downloaded", certificate_id=certificate_id, source=source)
        return {
            "url": url,
            "type": link_type,
            "expires_at": expires_at.isoformat() if expires_at else None,
        }

    # Reads

    def get_certificate(self, certificate_id: str) -> Dict[str, Any]:
        with self._transaction(certificate_id) as db:
            return self._load(db, certificate_id).to_dict()

    def get_by_reference(self, reference_number: str) -> Dict[str, Any]:
        with self._transaction() as db:
            certificate = db.query(Certificate).filter(
                Certificate.reference_number == reference_number
            ).first()
            if certificate is None:
                raise CertificateNotFound(reference_number)
            return certificate.to_dict()

    def search_certificates(
        self,
        criteria: CertificateSearchCriteria,
        page: int = 1,
        page_size: int = 20,
    ) -> Dict[str, Any]:
        """Filter certificates, newest first, paginated."""
        date_from = _parse_bound(criteria.date_from, "date_from")
        date_to = _parse_bound(criteria.date_to, "date_to", end_of_day=True)

        with self._transaction() as db:
            query = db.query(Certificate)
            for column in (
                "policy_number",
                "registration_number",
                "company_code",
                "agent_code",
                "status",
                "certificate_number",
                "requested_by",
            ):
                value = getattr(criteria, column)
                if value:
                    query = query.filter(getattr(Certificate, column) == value)
            if date_from is not None:
                query = query.filter(Certificate.created_at >= date_from)
            if date_to is not None:
                query = query.filter(Certificate.created_at < date_to)

            query = query.order_by(Certificate.created_at.desc(), Certificate.id.desc())
            return paginate(query, page, page_size).to_dict()

    def get_audit_trail(self, certificate_id: str, page: int = 1, page_size: int = 50) -> Dict[str, Any]:
        with self._transaction(certificate_id) as db:
            self._load(db, certificate_id)
            return AuditTrailWriter(db).by_certificate(certificate_id, page, page_size).to_dict()

    # Registry passthroughs

    def find_policies_by_vehicle(
        self,
        registration_number: str,
        credentials: Optional[RegistryCredentials] = None,
    ) -> List[Dict[str, Any]]:
        policies = self.registry.find_by_vehicle(
            registration_number, credentials or RegistryCredentials.from_settings()
        )
        return [policy.to_dict() for policy in policies]

    def find_policies_by_chassis(
        self,
        chassis_number: str,
        credentials: Optional[RegistryCredentials] = None,
    ) -> List[Dict[str, Any]]:
        policies = self.registry.find_by_chassis(
            chassis_number, credentials or RegistryCredentials.from_settings()
        )
        return [policy.to_dict() for policy in policies]


def _parse_bound(value: Optional[str], field_name: str, end_of_day: bool = False) -> Optional[datetime]:
    """
    Parse an ISO date/datetime filter. A bare date used as an upper bound
    covers the whole day (returned as the next midnight, exclusive).
    """
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        raise ValidationError(f"{field_name} must be an ISO date or datetime", details={field_name: value})
    if end_of_day and len(value) == 10:
        parsed = parsed + timedelta(days=1)
    return _as_utc(parsed)


_orchestrator: Optional[CertificateOrchestrator] = None


def get_orchestrator() -> CertificateOrchestrator:
    """Process-wide orchestrator over the configured database (lazy)."""
    global _orchestrator
    if _orchestrator is None:
        from app import database

        if database.SessionLocal is None:
            raise PersistenceError("Database not configured")
        _orchestrator = CertificateOrchestrator(database.SessionLocal)
    return _orchestrator
