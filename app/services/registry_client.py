"""
Registry API Client
Read-only access to the policy-of-record system (policies, insured parties)
"""

from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote

import httpx
import structlog

from app.config import settings
from app.exceptions import RegistryLookupFailed, RegistryNotFound

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class RegistryCredentials:
    """Service-account credentials for one registry call."""
    username: str
    token: str

    @classmethod
    def from_settings(cls) -> "RegistryCredentials":
        return cls(
            username=settings.registry_username or "",
            token=settings.registry_token or "",
        )

    def headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.token}",
            "X-Registry-User": self.username,
        }


@dataclass(frozen=True)
class Policy:
    policy_id: str
    policy_number: str
    insured_id: Optional[str] = None
    organization_code: Optional[str] = None
    office_code: Optional[str] = None
    office_name: Optional[str] = None
    status: Optional[str] = None
    vehicle_registration: Optional[str] = None
    vehicle_chassis_number: Optional[str] = None
    vehicle_brand: Optional[str] = None
    vehicle_model: Optional[str] = None
    vehicle_type: Optional[str] = None
    vehicle_category: Optional[str] = None
    vehicle_usage: Optional[str] = None
    vehicle_genre: Optional[str] = None
    vehicle_energy: Optional[str] = None
    vehicle_seats: Optional[int] = None
    vehicle_fiscal_power: Optional[int] = None
    subscriber_name: Optional[str] = None
    subscriber_type: Optional[str] = None
    subscriber_phone: Optional[str] = None
    subscriber_email: Optional[str] = None
    premium_rc: Optional[float] = None
    certificate_color: Optional[str] = None
    circulation_zone: Optional[str] = None
    subscription_date: Optional[str] = None
    effective_date: Optional[str] = None
    expiration_date: Optional[str] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Policy":
        """Build from the registry's camelCase payload."""
        return cls(
            policy_id=str(data.get("id") or data.get("policyId") or data.get("policyNumber")),
            policy_number=data.get("policyNumber"),
            insured_id=_optional_str(data.get("insuredId")),
            organization_code=data.get("organizationCode"),
            office_code=data.get("officeCode"),
            office_name=data.get("officeName"),
            status=data.get("status"),
            vehicle_registration=data.get("vehicleRegistration"),
            vehicle_chassis_number=data.get("vehicleChassisNumber"),
            vehicle_brand=data.get("vehicleBrand"),
            vehicle_model=data.get("vehicleModel"),
            vehicle_type=data.get("vehicleType"),
            vehicle_category=data.get("vehicleCategory"),
            vehicle_usage=data.get("vehicleUsage"),
            vehicle_genre=data.get("vehicleGenre"),
            vehicle_energy=data.get("vehicleEnergy"),
            vehicle_seats=data.get("vehicleSeats"),
            vehicle_fiscal_power=data.get("vehicleFiscalPower"),
            subscriber_name=data.get("subscriberName"),
            subscriber_type=data.get("subscriberType"),
            subscriber_phone=data.get("subscriberPhone"),
            subscriber_email=data.get("subscriberEmail"),
            premium_rc=data.get("premiumRC"),
            certificate_color=data.get("certificateColor"),
            circulation_zone=data.get("circulationZone"),
            subscription_date=data.get("subscriptionDate") or data.get("contractStartDate"),
            effective_date=data.get("effectiveDate") or data.get("contractStartDate"),
            expiration_date=data.get("expirationDate") or data.get("contractEndDate"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class Insured:
    insured_id: str
    name: Optional[str] = None
    insured_type: Optional[str] = None
    profession: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    address: Optional[str] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Insured":
        return cls(
            insured_id=str(data.get("id") or data.get("insuredId")),
            name=data.get("name") or data.get("insuredName"),
            insured_type=data.get("type") or data.get("insuredType"),
            profession=data.get("profession"),
            phone=data.get("phone"),
            email=data.get("email"),
            address=data.get("address"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _optional_str(value) -> Optional[str]:
    return str(value) if value is not None else None


class RegistryClient:
    """
    HTTP client for the registry.

    Holds no credentials: every call takes a RegistryCredentials so
    concurrent requests never share an auth token.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.base_url = (base_url or settings.registry_base_url or "").rstrip("/")
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
                headers={"Accept": "application/json"},
            )
        return self._client

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def _get(self, path: str, credentials: RegistryCredentials, params: Optional[dict] = None) -> Optional[dict]:
        """
        GET a registry resource.

        Returns:
            The response's `data` member, or None when the registry has no such
            resource (HTTP 404 or success=false)

        Raises:
            RegistryLookupFailed: Transport error or unexpected HTTP status
        """
        try:
            response = self._get_client().get(path, params=params, headers=credentials.headers())
            if response.status_code == 404:
                return None
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPError as e:
            logger.error("registry_request_failed", path=path, error=str(e))
            raise RegistryLookupFailed(f"Registry request failed: {e}") from e
        except ValueError as e:
            logger.error("registry_invalid_response", path=path, error=str(e))
            raise RegistryLookupFailed("Registry returned an invalid response") from e

        if not payload.get("success", True):
            return None
        return payload.get("data")

    def get_policy(self, policy_number: str, credentials: RegistryCredentials) -> Optional[Policy]:
        data = self._get(f"/policies/{quote(policy_number, safe='')}", credentials)
        return Policy.from_api(data) if data else None

    def get_insured(self, insured_id: str, credentials: RegistryCredentials) -> Optional[Insured]:
        data = self._get(f"/insured/{quote(insured_id, safe='')}", credentials)
        return Insured.from_api(data) if data else None

    def find_policy_and_insured(self, policy_number: str, credentials: RegistryCredentials) -> Tuple[Policy, Insured]:
        """
        Fetch a policy and its insured party.

        Raises:
            RegistryNotFound: Unknown policy, or policy without an insured record
            RegistryLookupFailed: Registry unreachable or answered unexpectedly
        """
        policy = self.get_policy(policy_number, credentials)
        if policy is None:
            logger.warning("registry_policy_not_found", policy_number=policy_number)
            raise RegistryNotFound(
                f"Policy {policy_number} not found in the registry",
                details={"policy_number": policy_number},
            )

        if not policy.insured_id:
            raise RegistryNotFound(
                f"Policy {policy_number} has no insured party",
                details={"policy_number": policy_number},
            )

        insured = self.get_insured(policy.insured_id, credentials)
        if insured is None:
            logger.warning("registry_insured_not_found", policy_number=policy_number, insured_id=policy.insured_id)
            raise RegistryNotFound(
                f"Insured {policy.insured_id} not found in the registry",
                details={"policy_number": policy_number, "insured_id": policy.insured_id},
            )

        return policy, insured

    def _search(self, params: dict, credentials: RegistryCredentials) -> List[Policy]:
        data = self._get("/policies", credentials, params=params)
        if not data:
            return []
        rows = data.get("data", []) if isinstance(data, dict) else data
        return [Policy.from_api(row) for row in rows]

    def find_by_vehicle(self, registration_number: str, credentials: RegistryCredentials) -> List[Policy]:
        return self._search({"vehicleRegistration": registration_number}, credentials)

    def find_by_chassis(self, chassis_number: str, credentials: RegistryCredentials) -> List[Policy]:
        return self._search({"vehicleChassisNumber": chassis_number}, credentials)
