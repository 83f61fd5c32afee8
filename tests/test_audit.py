"""
Tests for AuditTrailWriter

Tests cover:
- record() appends and sanitizes
- Paginated read queries (certificate, actor, action, time range)
- Retention purge
"""

import pytest
from datetime import datetime, timedelta, timezone

from app.models.certificate_audit_log import AuditAction, CertificateAuditLog
from app.services.audit import ActorContext, AuditTrailWriter, Page, paginate, sanitize_values


class TestSanitizeValues:

    def test_credentials_are_redacted(self):
        values = {"token": "secret-bearer", "Authorization": "Bearer x", "status": "pending"}

        assert sanitize_values(values) == {
            "token": "[REDACTED]",
            "Authorization": "[REDACTED]",
            "status": "pending",
        }

    def test_nested_values_are_redacted(self):
        assert sanitize_values({"issuer": {"api_key": "k"}}) == {"issuer": {"api_key": "[REDACTED]"}}

    def test_none_passes_through(self):
        assert sanitize_values(None) is None


class TestPage:

    def test_page_count_rounds_up(self):
        assert Page(items=[], total=101, page=1, page_size=50).pages == 3

    def test_to_dict_shape(self):
        page = Page(items=[{"a": 1}], total=1, page=1, page_size=20)
        assert page.to_dict() == {"items": [{"a": 1}], "meta": {"total": 1, "page": 1, "page_size": 20, "pages": 1}}


@pytest.fixture
def certificate_id(make_certificate):
    return make_certificate()


@pytest.fixture
def writer(db):
    return AuditTrailWriter(db)


class TestRecord:

    def test_record_appends_entry_with_actor_context(self, db, writer, certificate_id):
        actor = ActorContext(actor_id="agent-42", ip_address="10.1.2.3", user_agent="pytest", session_id="s-1")

        writer.record(
            certificate_id=certificate_id,
            actor=actor,
            action=AuditAction.CREATED,
            old_status=None,
            new_status="pending",
            new_values={"policy_number": "P100"},
        )
        db.commit()

        entry = db.query(CertificateAuditLog).one()
        assert entry.action == "created"
        assert entry.actor_id == "agent-42"
        assert entry.ip_address == "10.1.2.3"
        assert entry.session_id == "s-1"
        assert entry.new_values == {"policy_number": "P100"}

    def test_record_does_not_commit(self, db, session_factory, writer, certificate_id):
        writer.record(certificate_id, ActorContext("agent-42"), AuditAction.DOWNLOADED, "completed", "completed")
        db.rollback()

        other = session_factory()
        try:
            assert other.query(CertificateAuditLog).count() == 0
        finally:
            other.close()


class TestReadQueries:

    @pytest.fixture
    def entries(self, db, writer, certificate_id, make_certificate):
        other_id = make_certificate(registration_number="XY-987-ZZ")
        base = datetime(2026, 10, 1, 9, 0, tzinfo=timezone.utc)
        rows = [
            (certificate_id, "agent-42", AuditAction.CREATED, base),
            (certificate_id, "system", AuditAction.STATUS_CHANGED, base + timedelta(minutes=1)),
            (certificate_id, "operator-1", AuditAction.CANCELLED, base + timedelta(days=2)),
            (other_id, "agent-42", AuditAction.CREATED, base + timedelta(days=5)),
        ]
        for cert_id, actor_id, action, timestamp in rows:
            entry = writer.record(cert_id, ActorContext(actor_id), action, None, None)
            entry.timestamp = timestamp
        db.commit()
        return rows

    def test_by_certificate_newest_first(self, writer, certificate_id, entries):
        page = writer.by_certificate(certificate_id)

        assert page.total == 3
        assert [e.action for e in page.items] == ["cancelled", "status_changed", "created"]

    def test_by_certificate_paginates(self, writer, certificate_id, entries):
        page = writer.by_certificate(certificate_id, page=2, page_size=2)

        assert page.total == 3
        assert page.pages == 2
        assert [e.action for e in page.items] == ["created"]

    def test_by_actor(self, writer, entries):
        assert writer.by_actor("agent-42").total == 2

    def test_by_action(self, writer, entries):
        page = writer.by_action(AuditAction.CANCELLED)

        assert page.total == 1
        assert page.items[0].actor_id == "operator-1"

    def test_by_time_range(self, writer, entries):
        start = datetime(2026, 10, 2, tzinfo=timezone.utc)
        end = datetime(2026, 10, 4, tzinfo=timezone.utc)

        page = writer.by_time_range(start, end)

        assert [e.action for e in page.items] == ["cancelled"]

    def test_page_size_is_capped(self, db, entries):
        page = paginate(db.query(CertificateAuditLog), page=0, page_size=10_000)

        assert page.page == 1
        assert page.page_size == 200


class TestRetention:

    def test_purge_removes_only_old_entries(self, db, writer, certificate_id):
        old = writer.record(certificate_id, ActorContext("system"), AuditAction.CREATED, None, "pending")
        old.timestamp = datetime.now(timezone.utc) - timedelta(days=400)
        writer.record(certificate_id, ActorContext("system"), AuditAction.STATUS_CHANGED, "pending", "processing")
        db.commit()

        deleted = writer.purge_older_than(365)
        db.commit()

        assert deleted == 1
        assert [e.action for e in db.query(CertificateAuditLog).all()] == ["status_changed"]
