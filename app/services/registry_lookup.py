"""
Registry Lookup
Fetches policy + insured records through the registry circuit breaker.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import structlog

from app.exceptions import RegistryLookupFailed, UpstreamTimeout
from app.services.monitoring.circuit_breakers import ExternalServiceBreaker, get_registry_breaker
from app.services.registry_client import Insured, Policy, RegistryClient, RegistryCredentials

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class RegistryRecord:
    policy: Policy
    insured: Insured

    def snapshot(self) -> Dict[str, Any]:
        """Plain-dict copy stored on the certificate so a retry can resubmit without a new lookup."""
        return {"policy": self.policy.to_dict(), "insured": self.insured.to_dict()}

    @classmethod
    def from_snapshot(cls, snapshot: Dict[str, Any]) -> "RegistryRecord":
        return cls(policy=Policy(**snapshot["policy"]), insured=Insured(**snapshot["insured"]))


class RegistryLookup:
    """
    Registry access for the orchestrator.

    Raises CircuitOpenError when the registry breaker is open and
    RegistryLookupFailed (or its RegistryNotFound subclass) otherwise.
    """

    def __init__(self, client: Optional[RegistryClient] = None, breaker: Optional[ExternalServiceBreaker] = None):
        self.client = client or RegistryClient()
        self.breaker = breaker or get_registry_breaker()

    def _call(self, operation: str, func, *args):
        try:
            return self.breaker.call(func, *args)
        except UpstreamTimeout as e:
            logger.warning("registry_lookup_timeout", operation=operation, timeout=self.breaker.timeout)
            raise RegistryLookupFailed(e.message, details=e.details) from e

    def lookup(self, policy_number: str, credentials: RegistryCredentials) -> RegistryRecord:
        policy, insured = self._call(
            "find_policy_and_insured",
            self.client.find_policy_and_insured,
            policy_number,
            credentials,
        )
        logger.info(
            "registry_lookup_complete",
            policy_number=policy_number,
            policy_id=policy.policy_id,
            insured_id=insured.insured_id,
        )
        return RegistryRecord(policy=policy, insured=insured)

    def find_by_vehicle(self, registration_number: str, credentials: RegistryCredentials) -> List[Policy]:
        return self._call("find_by_vehicle", self.client.find_by_vehicle, registration_number, credentials)

    def find_by_chassis(self, chassis_number: str, credentials: RegistryCredentials) -> List[Policy]:
        return self._call("find_by_chassis", self.client.find_by_chassis, chassis_number, credentials)
