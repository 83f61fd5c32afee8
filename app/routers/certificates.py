"""
Certificate API Router
REST endpoints for certificate issuance, operator actions and status reads
"""

from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request
from fastapi.responses import JSONResponse
import structlog

from app.config import settings
from app.models.certificate_schemas import (
    BulkCertificateRequest,
    BulkOperatorActionRequest,
    CertificateRequest,
    CertificateSearchCriteria,
    ErrorResponse,
    OperatorActionRequest,
)
from app.services.audit import ActorContext
from app.services.idempotency import require_idempotency_key
from app.services.orchestrator import CertificateOrchestrator, IssuanceResponse, get_orchestrator

logger = structlog.get_logger()

router = APIRouter(
    prefix="/api/v1/certificates",
    tags=["certificates"],
    responses={
        400: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
        422: {"model": ErrorResponse},
        502: {"model": ErrorResponse},
    },
)


def _actor(request: Request, actor_id: str, session_id: Optional[str]) -> ActorContext:
    return ActorContext(
        actor_id=actor_id,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
        session_id=session_id,
    )


def _respond(response: IssuanceResponse) -> JSONResponse:
    headers = {"Idempotent-Replayed": "true"} if response.replayed else None
    return JSONResponse(content=response.body, status_code=response.status_code, headers=headers)


@router.post("", status_code=201)
def create_certificate(
    body: CertificateRequest,
    request: Request,
    idempotency_key: Optional[str] = Header(None, alias=settings.idempotency_header_name),
    session_id: Optional[str] = Header(None, alias="X-Session-Id"),
    orchestrator: CertificateOrchestrator = Depends(get_orchestrator),
):
    """
    Issue a certificate

    Looks up the policy in the registry and submits a production request to
    the issuer. Replaying the same Idempotency-Key with the same body returns
    the original response.
    """
    key = idempotency_key or body.idempotency_key
    require_idempotency_key(request.method, key)

    response = orchestrator.create(
        body,
        idempotency_key=key,
        actor=_actor(request, body.requested_by, session_id),
        path=request.url.path,
    )
    return _respond(response)


@router.post("/bulk")
def create_certificates_bulk(
    body: BulkCertificateRequest,
    request: Request,
    idempotency_key: Optional[str] = Header(None, alias=settings.idempotency_header_name),
    session_id: Optional[str] = Header(None, alias="X-Session-Id"),
    orchestrator: CertificateOrchestrator = Depends(get_orchestrator),
):
    """
    Issue up to max_batch_size certificates

    Each item goes through the single-create flow; refused items are listed
    in the summary without stopping the batch.
    """
    require_idempotency_key(request.method, idempotency_key)
    response = orchestrator.create_bulk(
        body.certificates,
        body.requested_by,
        idempotency_key=idempotency_key,
        actor=_actor(request, body.requested_by, session_id),
        path=request.url.path,
    )
    return _respond(response)


@router.post("/bulk/cancel")
def cancel_certificates_bulk(
    body: BulkOperatorActionRequest,
    request: Request,
    idempotency_key: Optional[str] = Header(None, alias=settings.idempotency_header_name),
    session_id: Optional[str] = Header(None, alias="X-Session-Id"),
    orchestrator: CertificateOrchestrator = Depends(get_orchestrator),
):
    require_idempotency_key(request.method, idempotency_key)
    response = orchestrator.cancel_many(
        body.certificate_ids,
        body.reason,
        actor=_actor(request, body.requested_by, session_id),
        idempotency_key=idempotency_key,
        path=request.url.path,
    )
    return _respond(response)


@router.post("/bulk/suspend")
def suspend_certificates_bulk(
    body: BulkOperatorActionRequest,
    request: Request,
    idempotency_key: Optional[str] = Header(None, alias=settings.idempotency_header_name),
    session_id: Optional[str] = Header(None, alias="X-Session-Id"),
    orchestrator: CertificateOrchestrator = Depends(get_orchestrator),
):
    require_idempotency_key(request.method, idempotency_key)
    response = orchestrator.suspend_many(
        body.certificate_ids,
        body.reason,
        actor=_actor(request, body.requested_by, session_id),
        idempotency_key=idempotency_key,
        path=request.url.path,
    )
    return _respond(response)


@router.get("")
def search_certificates(
    policy_number: Optional[str] = None,
    registration_number: Optional[str] = None,
    company_code: Optional[str] = None,
    agent_code: Optional[str] = None,
    status: Optional[str] = None,
    certificate_number: Optional[str] = None,
    requested_by: Optional[str] = None,
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=200),
    orchestrator: CertificateOrchestrator = Depends(get_orchestrator),
):
    """List certificates matching the filters, newest first"""
    criteria = CertificateSearchCriteria(
        policy_number=policy_number,
        registration_number=registration_number,
        company_code=company_code,
        agent_code=agent_code,
        status=status,
        certificate_number=certificate_number,
        requested_by=requested_by,
        date_from=date_from,
        date_to=date_to,
    )
    return orchestrator.search_certificates(criteria, page, page_size)


@router.get("/reference/{reference_number}")
def get_certificate_by_reference(
    reference_number: str,
    orchestrator: CertificateOrchestrator = Depends(get_orchestrator),
):
    return orchestrator.get_by_reference(reference_number)


@router.get("/{certificate_id}")
def get_certificate(
    certificate_id: str,
    orchestrator: CertificateOrchestrator = Depends(get_orchestrator),
):
    return orchestrator.get_certificate(certificate_id)


@router.get("/{certificate_id}/status")
def check_certificate_status(
    certificate_id: str,
    request: Request,
    actor_id: str = Query("system", description="Caller identity recorded in the audit trail"),
    session_id: Optional[str] = Header(None, alias="X-Session-Id"),
    orchestrator: CertificateOrchestrator = Depends(get_orchestrator),
):
    """
    Reconcile with the issuer and return the current status

    Applies processing -> completed/failed when the issuer reports a final
    outcome.
    """
    return orchestrator.check_status(certificate_id, actor=_actor(request, actor_id, session_id))


@router.get("/{certificate_id}/download")
def download_certificate(
    certificate_id: str,
    request: Request,
    actor_id: str = Query("system", description="Caller identity recorded in the audit trail"),
    session_id: Optional[str] = Header(None, alias="X-Session-Id"),
    orchestrator: CertificateOrchestrator = Depends(get_orchestrator),
):
    return orchestrator.download(certificate_id, actor=_actor(request, actor_id, session_id))


@router.get("/{certificate_id}/audit")
def get_certificate_audit(
    certificate_id: str,
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200),
    orchestrator: CertificateOrchestrator = Depends(get_orchestrator),
):
    return orchestrator.get_audit_trail(certificate_id, page, page_size)


@router.post("/{certificate_id}/cancel")
def cancel_certificate(
    certificate_id: str,
    body: OperatorActionRequest,
    request: Request,
    idempotency_key: Optional[str] = Header(None, alias=settings.idempotency_header_name),
    session_id: Optional[str] = Header(None, alias="X-Session-Id"),
    orchestrator: CertificateOrchestrator = Depends(get_orchestrator),
):
    require_idempotency_key(request.method, idempotency_key)
    response = orchestrator.cancel(
        certificate_id,
        body.reason,
        actor=_actor(request, body.requested_by, session_id),
        idempotency_key=idempotency_key,
        path=request.url.path,
    )
    return _respond(response)


@router.post("/{certificate_id}/suspend")
def suspend_certificate(
    certificate_id: str,
    body: OperatorActionRequest,
    request: Request,
    idempotency_key: Optional[str] = Header(None, alias=settings.idempotency_header_name),
    session_id: Optional[str] = Header(None, alias="X-Session-Id"),
    orchestrator: CertificateOrchestrator = Depends(get_orchestrator),
):
    require_idempotency_key(request.method, idempotency_key)
    response = orchestrator.suspend(
        certificate_id,
        body.reason,
        actor=_actor(request, body.requested_by, session_id),
        idempotency_key=idempotency_key,
        path=request.url.path,
    )
    return _respond(response)


@router.post("/{certificate_id}/retry")
def retry_certificate(
    certificate_id: str,
    body: OperatorActionRequest,
    request: Request,
    idempotency_key: Optional[str] = Header(None, alias=settings.idempotency_header_name),
    session_id: Optional[str] = Header(None, alias="X-Session-Id"),
    orchestrator: CertificateOrchestrator = Depends(get_orchestrator),
):
    """Resubmit a failed certificate to the issuer"""
    require_idempotency_key(request.method, idempotency_key)
    response = orchestrator.retry(
        certificate_id,
        actor=_actor(request, body.requested_by, session_id),
        idempotency_key=idempotency_key,
        path=request.url.path,
    )
    return _respond(response)


registry_router = APIRouter(prefix="/api/v1/registry", tags=["registry"])


@registry_router.get("/policies/by-vehicle/{registration_number}")
def find_policies_by_vehicle(
    registration_number: str,
    orchestrator: CertificateOrchestrator = Depends(get_orchestrator),
):
    return {"items": orchestrator.find_policies_by_vehicle(registration_number)}


@registry_router.get("/policies/by-chassis/{chassis_number}")
def find_policies_by_chassis(
    chassis_number: str,
    orchestrator: CertificateOrchestrator = Depends(get_orchestrator),
):
    return {"items": orchestrator.find_policies_by_chassis(chassis_number)}
