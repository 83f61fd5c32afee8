"""
Issuer API Client
Certificate production, status verification, cancel/suspend and download
against the attestation authority.

Every response carries a numeric `statut`: negative values are issuer errors
(see lifecycle.IssuerStatusCode). Transport and 5xx failures raise
IssuerUnavailable so the circuit breaker counts them; issuer error codes raise
IssuerRejected, which the breaker ignores.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx
import structlog

from app.config import settings
from app.exceptions import IssuerRejected, IssuerUnavailable
from app.services.lifecycle import IssuerStatusCode, describe_issuer_status

logger = structlog.get_logger(__name__)

EDITION_PATH = "/attestations/edition"
VERIFICATION_PATH = "/attestations/verification"
UPDATE_STATUS_PATH = "/attestations/update-status"
DOWNLOAD_PATH = "/attestations/download"

# code_operation values for update-status
OPERATION_CANCEL = "109"
OPERATION_SUSPEND = "120"

# Download variants appended to lien_telechargement
DOWNLOAD_TYPES = (("PDF", 1), ("IMAGE", 2), ("QRCODE", 3))

NOT_AVAILABLE = "NA"


@dataclass(frozen=True)
class IssuerCredentials:
    """Bearer token and requester code for one issuer call."""
    token: str
    requester_code: str = "SYSTEM"

    @classmethod
    def from_settings(cls) -> "IssuerCredentials":
        return cls(
            token=settings.issuer_token or "",
            requester_code=settings.issuer_requester_code,
        )

    def headers(self) -> Dict[str, str]:
        return {"Authorization": self.token}


@dataclass(frozen=True)
class IssuedCertificateInfo:
    certificate_number: Optional[str] = None
    download_url: Optional[str] = None
    registration_number: Optional[str] = None
    policy_number: Optional[str] = None
    status: Optional[str] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "IssuedCertificateInfo":
        return cls(
            certificate_number=data.get("numero_attestation"),
            download_url=data.get("lien_telechargement"),
            registration_number=data.get("numero_immatriculation"),
            policy_number=data.get("numero_police"),
            status=data.get("status"),
        )


@dataclass(frozen=True)
class SubmissionResult:
    request_number: str
    status_code: int
    certificates: List[IssuedCertificateInfo] = field(default_factory=list)


@dataclass(frozen=True)
class StatusReport:
    status_code: int
    message: Optional[str] = None
    certificates: List[IssuedCertificateInfo] = field(default_factory=list)

    def first_certificate(self) -> Optional[IssuedCertificateInfo]:
        return self.certificates[0] if self.certificates else None


@dataclass(frozen=True)
class DownloadLink:
    url: str
    type: str


def _format_date(value) -> str:
    """Issuer dates are YYYY-MM-DD."""
    if not value:
        return NOT_AVAILABLE
    if isinstance(value, datetime):
        return value.date().isoformat()
    return str(value)[:10]


def build_production_payload(request, policy, insured, credentials: IssuerCredentials, now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Merge the certificate request with registry data into an edition request.

    Args:
        request: CertificateRequest
        policy: registry_client.Policy
        insured: registry_client.Insured
        credentials: Issuer credentials (requester code)
        now: Edition request date (defaults to current UTC time)

    Returns:
        JSON body for the edition endpoint
    """
    now = now or datetime.now(timezone.utc)
    subscriber_name = policy.subscriber_name or insured.name
    return {
        "code_demandeur": credentials.requester_code,
        "code_compagnie": request.company_code,
        "date_demande_edition": _format_date(now),
        "date_souscription": _format_date(policy.subscription_date),
        "date_effet": _format_date(policy.effective_date),
        "date_echeance": _format_date(policy.expiration_date),
        "genre_vehicule": policy.vehicle_genre or NOT_AVAILABLE,
        "numero_immatriculation": request.registration_number,
        "type_vehicule": policy.vehicle_type or NOT_AVAILABLE,
        "model_vehicule": policy.vehicle_model or NOT_AVAILABLE,
        "categorie_vehicule": policy.vehicle_category or NOT_AVAILABLE,
        "usage_vehicule": policy.vehicle_usage or NOT_AVAILABLE,
        "source_energie": policy.vehicle_energy or NOT_AVAILABLE,
        "nombre_place": str(policy.vehicle_seats or ""),
        "marque_vehicule": policy.vehicle_brand or NOT_AVAILABLE,
        "numero_chassis": policy.vehicle_chassis_number or NOT_AVAILABLE,
        "nom_souscripteur": subscriber_name,
        "type_souscripteur": policy.subscriber_type or NOT_AVAILABLE,
        "adresse_mail_souscripteur": policy.subscriber_email or insured.email,
        "numero_telephone_souscripteur": policy.subscriber_phone or insured.phone,
        "type_assure": insured.insured_type or NOT_AVAILABLE,
        "nom_assure": insured.name,
        "adresse_mail_assure": insured.email,
        "numero_telephone_assure": insured.phone,
        "profession_assure": insured.profession or NOT_AVAILABLE,
        "numero_police": request.policy_number,
        "code_point_vente_compagnie": request.agent_code or policy.office_code or "MAIN",
        "denomination_point_vente_compagnie": policy.office_name or "Point de vente principal",
        "rc": str(policy.premium_rc or 0),
        "code_nature_attestation": policy.certificate_color or NOT_AVAILABLE,
        "zone_circulation": policy.circulation_zone or NOT_AVAILABLE,
    }


class IssuerClient:
    """
    HTTP client for the issuer.

    Holds no credentials: every call takes an IssuerCredentials.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.base_url = (base_url or settings.issuer_base_url or "").rstrip("/")
        self.timeout = timeout or settings.circuit_breaker_timeout
        self._transport = transport
        self._client: Optional[httpx.Client] = None

    def _get_client(self) -> httpx.Client:
        """Lazy-init httpx client to avoid import-time side effects."""
        if self._client is None:
            self._client = httpx.Client(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
                headers={"Content-Type": "application/json", "Charset": "UTF-8"},
            )
        return self._client

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def _post(self, path: str, body: Dict[str, Any], credentials: IssuerCredentials) -> Dict[str, Any]:
        try:
            response = self._get_client().post(path, json=body, headers=credentials.headers())
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPError as e:
            logger.error("issuer_request_failed", path=path, error=str(e))
            raise IssuerUnavailable(f"Issuer request failed: {e}") from e
        except ValueError as e:
            logger.error("issuer_invalid_response", path=path, error=str(e))
            raise IssuerUnavailable("Issuer returned an invalid response") from e

        if not isinstance(payload, dict) or "statut" not in payload:
            raise IssuerUnavailable("Issuer response has no status code")
        try:
            payload["statut"] = int(payload["statut"])
        except (TypeError, ValueError) as e:
            logger.error("issuer_invalid_status", path=path, status=repr(payload["statut"]))
            raise IssuerUnavailable(f"Issuer returned a non-numeric status: {payload['statut']!r}") from e
        return payload

    @staticmethod
    def _reject(status_code: int, message: Optional[str] = None) -> IssuerRejected:
        return IssuerRejected(status_code, message or describe_issuer_status(status_code))

    @staticmethod
    def _infos(payload: Dict[str, Any]) -> List[IssuedCertificateInfo]:
        return [IssuedCertificateInfo.from_api(info) for info in payload.get("infos") or []]

    def submit_production(self, payload: Dict[str, Any], credentials: IssuerCredentials) -> SubmissionResult:
        """
        Submit a certificate edition request.

        Raises:
            IssuerRejected: Negative status code, or no request number returned
            IssuerUnavailable: Transport failure or 5xx
        """
        response = self._post(EDITION_PATH, payload, credentials)
        status_code = response["statut"]

        logger.info(
            "issuer_edition_response",
            status_code=status_code,
            request_number=response.get("numero_demande"),
        )

        if status_code < 0:
            raise self._reject(status_code)
        if not response.get("numero_demande"):
            raise self._reject(status_code, "Issuer accepted the request without a request number")

        return SubmissionResult(
            request_number=str(response["numero_demande"]),
            status_code=status_code,
            certificates=self._infos(response),
        )

    def check_status(self, request_number: str, credentials: IssuerCredentials) -> StatusReport:
        """
        Verify the state of a submitted request.

        Error codes are returned, not raised, so the caller can map them.
        """
        response = self._post(
            VERIFICATION_PATH,
            {"code_demandeur": credentials.requester_code, "reference_demande": request_number},
            credentials,
        )
        return StatusReport(
            status_code=response["statut"],
            message=response.get("message"),
            certificates=self._infos(response),
        )

    def _update_status(self, reference: str, operation_code: str, reason: Optional[str], credentials: IssuerCredentials) -> Dict[str, Any]:
        body = {
            "code_demandeur": credentials.requester_code,
            "numero_attestation": [reference],
            "code_operation": operation_code,
        }
        if reason:
            body["motif"] = reason

        response = self._post(UPDATE_STATUS_PATH, body, credentials)
        status_code = response["statut"]
        if status_code != IssuerStatusCode.SUCCESS:
            raise self._reject(status_code, f"Status update failed: {describe_issuer_status(status_code)}")

        logger.info("issuer_status_updated", reference=reference, operation_code=operation_code)
        return response

    def cancel(self, reference: str, reason: Optional[str], credentials: IssuerCredentials) -> Dict[str, Any]:
        return self._update_status(reference, OPERATION_CANCEL, reason, credentials)

    def suspend(self, reference: str, reason: Optional[str], credentials: IssuerCredentials) -> Dict[str, Any]:
        return self._update_status(reference, OPERATION_SUSPEND, reason, credentials)

    def download(self, company_code: str, request_number: str, credentials: IssuerCredentials) -> List[DownloadLink]:
        """
        Fetch download links for an issued certificate.

        Returns:
            PDF, IMAGE and QRCODE links for every certificate of the request

        Raises:
            IssuerRejected: Error status or no link available
        """
        response = self._post(
            DOWNLOAD_PATH,
            {
                "code_demandeur": credentials.requester_code,
                "code_compagnie": company_code,
                "numero_demande": request_number,
            },
            credentials,
        )
        status_code = response["statut"]
        if status_code != IssuerStatusCode.SUCCESS:
            raise self._reject(status_code, f"Download failed: {describe_issuer_status(status_code)}")

        links = []
        for info in self._infos(response):
            if info.download_url:
                for link_type, type_code in DOWNLOAD_TYPES:
                    links.append(DownloadLink(url=f"{info.download_url}&type={type_code}", type=link_type))

        if not links:
            raise self._reject(status_code, "No download links available")
        return links
