"""
Tests for the certificate REST endpoints

Uses FastAPI's TestClient with the orchestrator dependency overridden to run
against the in-memory store and mocked upstream systems.
"""

import pytest
from fastapi.testclient import TestClient

from app.exceptions import IssuerRejected
from app.main import app
from app.services.lifecycle import describe_issuer_status
from app.services.orchestrator import get_orchestrator

BODY = {
    "policy_number": "P100",
    "registration_number": "AB-123-CD",
    "company_code": "NSIA001",
    "agent_code": "AG01",
    "requested_by": "agent-42",
}


@pytest.fixture
def client(orchestrator):
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    yield TestClient(app)
    app.dependency_overrides.clear()


class TestCreateEndpoint:

    def test_create_returns_201(self, client):
        response = client.post("/api/v1/certificates", json=BODY, headers={"Idempotency-Key": "k1"})

        assert response.status_code == 201
        assert response.json()["status"] == "processing"
        assert "Idempotent-Replayed" not in response.headers

    def test_replay_is_marked(self, client):
        first = client.post("/api/v1/certificates", json=BODY, headers={"Idempotency-Key": "k1"})
        second = client.post("/api/v1/certificates", json=BODY, headers={"Idempotency-Key": "k1"})

        assert second.status_code == 201
        assert second.json() == first.json()
        assert second.headers["Idempotent-Replayed"] == "true"

    def test_missing_key_is_400(self, client, mock_registry):
        response = client.post("/api/v1/certificates", json=BODY)

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "MISSING_IDEMPOTENCY_KEY"
        mock_registry.lookup.assert_not_called()

    def test_key_in_body_is_accepted(self, client):
        response = client.post("/api/v1/certificates", json=dict(BODY, idempotency_key="body-key"))

        assert response.status_code == 201

    def test_invalid_body_is_400(self, client):
        response = client.post(
            "/api/v1/certificates",
            json={"policy_number": "P100"},
            headers={"Idempotency-Key": "k1"},
        )

        assert response.status_code == 400
        body = response.json()
        assert body["error"]["code"] == "VALIDATION_ERROR"
        assert body["error"]["retryable"] is False
        assert body["error"]["details"]["errors"]

    def test_duplicate_is_409(self, client):
        client.post("/api/v1/certificates", json=BODY, headers={"Idempotency-Key": "k1"})

        response = client.post("/api/v1/certificates", json=BODY, headers={"Idempotency-Key": "k2"})

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "CERTIFICATE_ALREADY_EXISTS"

    def test_key_reuse_with_other_body_is_422(self, client):
        client.post("/api/v1/certificates", json=BODY, headers={"Idempotency-Key": "k1"})

        response = client.post(
            "/api/v1/certificates",
            json=dict(BODY, registration_number="XY-987-ZZ"),
            headers={"Idempotency-Key": "k1"},
        )

        assert response.status_code == 422
        assert response.json()["error"]["code"] == "IDEMPOTENCY_KEY_MISMATCH"

    def test_issuer_rejection_still_returns_created_certificate(self, client, mock_issuer):
        mock_issuer.submit_production.side_effect = IssuerRejected(-36, describe_issuer_status(-36))

        response = client.post("/api/v1/certificates", json=BODY, headers={"Idempotency-Key": "k1"})

        assert response.status_code == 201
        assert response.json()["status"] == "failed"

    def test_open_issuer_circuit_is_502_retryable(self, client, issuer_breaker):
        issuer_breaker.breaker.open()

        response = client.post("/api/v1/certificates", json=BODY, headers={"Idempotency-Key": "k1"})

        assert response.status_code == 502
        assert response.json()["error"] == {
            "code": "CIRCUIT_OPEN",
            "message": "Upstream service is unavailable, circuit breaker is open",
            "retryable": True,
            "details": {"service": "issuer"},
        }


class TestReadEndpoints:

    def test_get_and_search(self, client):
        created = client.post("/api/v1/certificates", json=BODY, headers={"Idempotency-Key": "k1"}).json()

        assert client.get(f"/api/v1/certificates/{created['id']}").json()["reference_number"] == created["reference_number"]
        assert client.get(f"/api/v1/certificates/reference/{created['reference_number']}").json()["id"] == created["id"]

        listing = client.get("/api/v1/certificates", params={"policy_number": "P100"}).json()
        assert listing["meta"]["total"] == 1

    def test_unknown_certificate_is_404(self, client):
        response = client.get("/api/v1/certificates/does-not-exist")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "CERTIFICATE_NOT_FOUND"

    def test_audit_endpoint(self, client):
        created = client.post("/api/v1/certificates", json=BODY, headers={"Idempotency-Key": "k1"}).json()

        trail = client.get(f"/api/v1/certificates/{created['id']}/audit").json()

        assert trail["meta"]["total"] == 2

    def test_registry_search(self, client):
        response = client.get("/api/v1/registry/policies/by-vehicle/AB-123-CD")

        assert response.status_code == 200
        assert response.json()["items"][0]["policy_number"] == "P100"


class TestOperatorEndpoints:

    def test_cancel_requires_key(self, client, make_certificate):
        certificate_id = make_certificate(status="completed", certificate_number="ATT-1")

        response = client.post(f"/api/v1/certificates/{certificate_id}/cancel", json={"requested_by": "operator-1"})

        assert response.status_code == 400

    def test_cancel_records_client_context(self, client, make_certificate):
        certificate_id = make_certificate(status="completed", certificate_number="ATT-1")

        response = client.post(
            f"/api/v1/certificates/{certificate_id}/cancel",
            json={"requested_by": "operator-1", "reason": "Vehicle sold"},
            headers={"Idempotency-Key": "c1", "X-Session-Id": "sess-9", "User-Agent": "back-office/2.1"},
        )

        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"

        trail = client.get(f"/api/v1/certificates/{certificate_id}/audit").json()
        entry = next(item for item in trail["items"] if item["action"] == "cancelled")
        assert entry["session_id"] == "sess-9"
        assert entry["user_agent"] == "back-office/2.1"
        assert entry["details"]["reason"] == "Vehicle sold"

    def test_invalid_transition_is_500_non_retryable(self, client, make_certificate):
        certificate_id = make_certificate(status="failed")

        response = client.post(
            f"/api/v1/certificates/{certificate_id}/suspend",
            json={"requested_by": "operator-1"},
            headers={"Idempotency-Key": "s1"},
        )

        assert response.status_code == 500
        assert response.json()["error"]["code"] == "INVALID_STATE_TRANSITION"
        assert response.json()["error"]["retryable"] is False


class TestBulkEndpoints:

    def test_bulk_create_returns_summary(self, client):
        response = client.post(
            "/api/v1/certificates/bulk",
            json={"requested_by": "agent-42", "certificates": [BODY, dict(BODY, registration_number="XY-987-ZZ")]},
            headers={"Idempotency-Key": "b1"},
        )

        assert response.status_code == 200
        body = response.json()
        assert (body["successful"], body["failed"]) == (2, 0)
        assert body["batch_id"].startswith("batch_")

    def test_bulk_create_requires_key(self, client, mock_registry):
        response = client.post("/api/v1/certificates/bulk", json={"requested_by": "agent-42", "certificates": [BODY]})

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "MISSING_IDEMPOTENCY_KEY"
        mock_registry.lookup.assert_not_called()

    def test_empty_bulk_is_400(self, client):
        response = client.post(
            "/api/v1/certificates/bulk",
            json={"requested_by": "agent-42", "certificates": []},
            headers={"Idempotency-Key": "b1"},
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_bulk_cancel(self, client, make_certificate):
        completed = make_certificate(status="completed", certificate_number="ATT-1")
        failed = make_certificate(registration_number="XY-987-ZZ", status="failed")

        response = client.post(
            "/api/v1/certificates/bulk/cancel",
            json={"requested_by": "operator-1", "reason": "Fleet sold", "certificate_ids": [completed, failed]},
            headers={"Idempotency-Key": "bc1"},
        )

        assert response.status_code == 200
        assert response.json()["successful"] == [completed]
        assert response.json()["failed"][0]["certificate_id"] == failed


class TestRootEndpoints:

    def test_root(self, client):
        assert client.get("/").json()["status"] == "running"

    def test_health_reports_breakers(self, client):
        body = client.get("/health").json()

        assert body["services"]["issuer_circuit"] == "closed"
        assert body["services"]["registry_circuit"] == "closed"
        assert body["services"]["database"] == "not_configured"
