"""
Pydantic schemas for certificate requests and operator actions
"""

from pydantic import BaseModel, Field
from typing import Optional, Dict, Any, List


class CertificateRequest(BaseModel):
    """
    Certificate issuance request.
    Immutable once accepted by the orchestrator.
    """
    policy_number: str = Field(..., min_length=1, max_length=50, description="Registry policy number")
    registration_number: str = Field(..., min_length=1, max_length=20, description="Vehicle registration number")
    company_code: str = Field(..., min_length=1, max_length=20, description="Issuing company code")
    agent_code: Optional[str] = Field(None, max_length=20, description="Selling agent code")
    requested_by: str = Field(..., min_length=1, max_length=100, description="Requester identity")
    idempotency_key: Optional[str] = Field(None, max_length=255, description="Caller-supplied idempotency key")
    metadata: Optional[Dict[str, Any]] = Field(None, description="Free-form request metadata")

    class Config:
        frozen = True

    def business_key(self) -> tuple:
        return (self.policy_number, self.registration_number, self.company_code)

    def fingerprint_payload(self) -> dict:
        """Request body used for the idempotency hash (the key itself excluded)."""
        return self.model_dump(exclude={"idempotency_key"})


class OperatorActionRequest(BaseModel):
    """Body for cancel/suspend/retry"""
    requested_by: str = Field(..., min_length=1, max_length=100)
    reason: Optional[str] = Field(None, max_length=500)


class BulkCertificateRequest(BaseModel):
    """Body for bulk issuance; items are issued one by one under the batch key"""
    requested_by: str = Field(..., min_length=1, max_length=100)
    certificates: List[CertificateRequest]


class BulkOperatorActionRequest(OperatorActionRequest):
    """Body for bulk cancel/suspend"""
    certificate_ids: List[str]


class CertificateSearchCriteria(BaseModel):
    """Filters accepted by certificate search"""
    policy_number: Optional[str] = None
    registration_number: Optional[str] = None
    company_code: Optional[str] = None
    agent_code: Optional[str] = None
    status: Optional[str] = None
    certificate_number: Optional[str] = None
    requested_by: Optional[str] = None
    date_from: Optional[str] = Field(None, description="ISO date or datetime, inclusive")
    date_to: Optional[str] = Field(None, description="ISO date or datetime, inclusive")


class ErrorBody(BaseModel):
    code: str
    message: str
    retryable: bool
    details: Dict[str, Any] = {}


class ErrorResponse(BaseModel):
    """Shape of every error returned by the certificate API"""
    error: ErrorBody
