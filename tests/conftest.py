"""
Shared fixtures: in-memory SQLite store, mocked upstream systems and a
fast issuer circuit breaker.
"""

import os

os.environ.setdefault("ENVIRONMENT", "testing")

import pytest
from datetime import datetime, timezone
from unittest.mock import Mock

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.database import Base
from app.exceptions import IssuerRejected
from app.models import Certificate, CertificateAuditLog, IdempotencyKey  # noqa: F401
from app.services.issuer_client import IssuerClient, IssuerCredentials, SubmissionResult
from app.services.monitoring.circuit_breakers import ExternalServiceBreaker
from app.services.orchestrator import CertificateOrchestrator, UpstreamCredentials, generate_reference_number
from app.services.registry_client import Insured, Policy, RegistryCredentials
from app.services.registry_lookup import RegistryLookup, RegistryRecord


@pytest.fixture
def engine():
    """Fresh in-memory database per test, shared across threads."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def registry_record():
    policy = Policy(
        policy_id="pol-100",
        policy_number="P100",
        insured_id="ins-7",
        office_code="ABJ01",
        office_name="Agence Plateau",
        vehicle_registration="AB-123-CD",
        vehicle_chassis_number="VF1RFB00123456789",
        vehicle_brand="Toyota",
        vehicle_model="Corolla",
        vehicle_type="VP",
        vehicle_category="01",
        vehicle_usage="PRIVE",
        vehicle_genre="VP",
        vehicle_energy="ESSENCE",
        vehicle_seats=5,
        subscriber_name="Awa Kone",
        subscriber_type="PP",
        premium_rc=125000.0,
        certificate_color="JAUNE",
        circulation_zone="A",
        subscription_date="2026-10-01",
        effective_date="2026-10-01",
        expiration_date="2027-09-30",
    )
    insured = Insured(
        insured_id="ins-7",
        name="Awa Kone",
        insured_type="PP",
        profession="COMMERCANT",
        phone="+2250700000000",
        email="awa.kone@example.ci",
    )
    return RegistryRecord(policy=policy, insured=insured)


@pytest.fixture
def mock_registry(registry_record):
    """Registry lookup answering P100 with a valid policy and insured."""
    registry = Mock(spec=RegistryLookup)
    registry.lookup.return_value = registry_record
    registry.find_by_vehicle.return_value = [registry_record.policy]
    registry.find_by_chassis.return_value = [registry_record.policy]
    return registry


@pytest.fixture
def mock_issuer():
    """Issuer accepting every production request."""
    issuer = Mock(spec=IssuerClient)
    issuer.submit_production.return_value = SubmissionResult(request_number="DEM-0001", status_code=0)
    issuer.cancel.return_value = {"statut": 0}
    issuer.suspend.return_value = {"statut": 0}
    return issuer


@pytest.fixture
def issuer_breaker():
    breaker = ExternalServiceBreaker(
        name="issuer",
        timeout=2.0,
        fail_max=3,
        reset_timeout=60,
        volume_threshold=1000,
        max_workers=4,
        exclude=[IssuerRejected],
    )
    yield breaker
    breaker.shutdown()


@pytest.fixture
def credentials():
    return UpstreamCredentials(
        registry=RegistryCredentials(username="svc-certificates", token="registry-token"),
        issuer=IssuerCredentials(token="issuer-token", requester_code="NSIA"),
    )


@pytest.fixture
def orchestrator(session_factory, mock_registry, mock_issuer, issuer_breaker):
    return CertificateOrchestrator(
        session_factory,
        registry=mock_registry,
        issuer=mock_issuer,
        issuer_breaker=issuer_breaker,
    )


@pytest.fixture
def make_certificate(session_factory, registry_record):
    """Insert a certificate directly, bypassing the orchestrator."""

    def _make(**overrides):
        now = datetime.now(timezone.utc)
        values = dict(
            reference_number=generate_reference_number(now),
            policy_number="P100",
            registration_number="AB-123-CD",
            company_code="NSIA001",
            requested_by="agent-42",
            status="pending",
            retry_count=0,
            certificate_metadata={
                "request": {},
                "registry_snapshot": registry_record.snapshot(),
                "transitions": [],
            },
            created_at=now,
            updated_at=now,
        )
        values.update(overrides)
        session = session_factory()
        try:
            certificate = Certificate(**values)
            session.add(certificate)
            session.commit()
            return certificate.id
        finally:
            session.close()

    return _make


@pytest.fixture
def count_certificates(session_factory):
    def _count() -> int:
        session = session_factory()
        try:
            return session.query(Certificate).count()
        finally:
            session.close()
    return _count


@pytest.fixture
def audit_actions(session_factory):
    def _actions(certificate_id: str) -> list:
        session = session_factory()
        try:
            rows = session.query(CertificateAuditLog).filter(
                CertificateAuditLog.certificate_id == certificate_id
            ).all()
            return [row.action for row in rows]
        finally:
            session.close()
    return _actions
