"""
Certificate Service Errors

Every error carries a stable machine-readable code, an HTTP-equivalent
status and a retryable flag so callers know whether trying again can help.
"""

from typing import Any, Dict, Optional


class CertificateServiceError(Exception):
    """Base class for all errors surfaced by the issuance core."""

    code = "INTERNAL_SERVER_ERROR"
    http_status = 500
    retryable = False
    default_message = "An unexpected error occurred"

    def __init__(self, message: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.message = message or self.default_message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Error body returned to callers and cached for idempotent replay."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "retryable": self.retryable,
                "details": self.details,
            }
        }


class ValidationError(CertificateServiceError):
    code = "VALIDATION_ERROR"
    http_status = 400
    default_message = "The provided data is invalid"

    def __init__(self, message: Optional[str] = None, details: Optional[Dict[str, Any]] = None, code: Optional[str] = None):
        super().__init__(message, details)
        if code:
            self.code = code


class CertificateNotFound(CertificateServiceError):
    code = "CERTIFICATE_NOT_FOUND"
    http_status = 404
    default_message = "Certificate not found"

    def __init__(self, certificate_id: str):
        super().__init__(details={"certificate_id": certificate_id})
        self.certificate_id = certificate_id


class DuplicateCertificate(CertificateServiceError):
    code = "CERTIFICATE_ALREADY_EXISTS"
    http_status = 409
    default_message = "An active certificate already exists for this policy, vehicle and company"

    def __init__(self, existing_certificate_id: Optional[str] = None, existing_status: Optional[str] = None):
        super().__init__(details={
            "existing_certificate_id": existing_certificate_id,
            "existing_status": existing_status,
        })
        self.existing_certificate_id = existing_certificate_id
        self.existing_status = existing_status


class IdempotencyConflict(CertificateServiceError):
    code = "IDEMPOTENCY_KEY_MISMATCH"
    http_status = 422
    default_message = "The idempotency key has already been used with a different request"


class IdempotencyInProgress(CertificateServiceError):
    code = "IDEMPOTENCY_REQUEST_IN_PROGRESS"
    http_status = 409
    retryable = True
    default_message = "A request with this idempotency key is already being processed"


class CircuitOpenError(CertificateServiceError):
    code = "CIRCUIT_OPEN"
    http_status = 502
    retryable = True
    default_message = "Upstream service is unavailable, circuit breaker is open"

    def __init__(self, service: str, message: Optional[str] = None):
        super().__init__(message, details={"service": service})
        self.service = service


class UpstreamTimeout(CertificateServiceError):
    code = "UPSTREAM_TIMEOUT"
    http_status = 502
    retryable = True
    default_message = "Upstream service did not answer in time"

    def __init__(self, service: str, timeout: float):
        super().__init__(
            f"{service} did not answer within {timeout:.1f}s",
            details={"service": service, "timeout": timeout},
        )
        self.service = service


class RegistryLookupFailed(CertificateServiceError):
    code = "REGISTRY_LOOKUP_FAILED"
    http_status = 502
    default_message = "Policy or insured lookup in the registry failed"


class RegistryNotFound(RegistryLookupFailed):
    code = "REGISTRY_DATA_NOT_FOUND"
    default_message = "Data not found in the registry"


class IssuerUnavailable(CertificateServiceError):
    code = "ISSUER_UNAVAILABLE"
    http_status = 502
    retryable = True
    default_message = "Failed to reach the issuer"


class IssuerRejected(CertificateServiceError):
    code = "ISSUER_REJECTED"
    http_status = 502
    default_message = "The issuer rejected the request"

    def __init__(self, status_code: int, message: Optional[str] = None):
        super().__init__(message, details={"issuer_status_code": status_code})
        self.status_code = status_code


class InvalidStateTransition(CertificateServiceError):
    code = "INVALID_STATE_TRANSITION"
    http_status = 500
    default_message = "Certificate status transition is not allowed"

    def __init__(self, certificate_id: Optional[str], from_status: str, event: str):
        super().__init__(
            f"Cannot apply '{event}' to certificate in '{from_status}' status",
            details={"certificate_id": certificate_id, "from_status": from_status, "event": event},
        )
        self.certificate_id = certificate_id
        self.from_status = from_status
        self.event = event


class PersistenceError(CertificateServiceError):
    code = "PERSISTENCE_ERROR"
    http_status = 500
    retryable = True
    default_message = "Certificate store is unavailable"


# Failure codes a scheduled retry may safely resubmit
RETRYABLE_FAILURE_CODES = (
    CircuitOpenError.code,
    IssuerUnavailable.code,
    UpstreamTimeout.code,
)
