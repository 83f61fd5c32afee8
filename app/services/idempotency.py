"""
Idempotency Service
Provides PostgreSQL-backed deduplication of mutating certificate requests
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional
import hashlib
import json
import structlog
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker, Session

from app.config import settings
from app.exceptions import PersistenceError, ValidationError
from app.models.idempotency_key import IdempotencyKey

logger = structlog.get_logger(__name__)

# Methods that never require an idempotency key
SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})


def compute_request_hash(method: str, path: str, body: Any) -> str:
    """
    Hash the normalized request (method + path + body).

    Body is serialized with sorted keys so field order never changes the hash.

    Args:
        method: HTTP-equivalent method (e.g., 'POST')
        path: Request path
        body: JSON-serializable request body (None for no body)

    Returns:
        Hex SHA-256 digest
    """
    body_json = json.dumps(body, sort_keys=True, default=str) if body is not None else ""
    normalized = f"{method.upper()}{path}{body_json}"
    return hashlib.sha256(normalized.encode()).hexdigest()


def require_idempotency_key(method: str, key: Optional[str]) -> bool:
    """
    Enforce the idempotency-key requirement for a request.

    Args:
        method: HTTP-equivalent method
        key: Idempotency key supplied by the caller, if any

    Returns:
        True if the request must go through the guard, False if exempt

    Raises:
        ValidationError: Mutating request without a key
    """
    if method.upper() in SAFE_METHODS:
        return False
    if not key:
        raise ValidationError(
            f"{settings.idempotency_header_name} header is required for {method.upper()} requests",
            code="MISSING_IDEMPOTENCY_KEY",
        )
    return True


class IdempotencyOutcome(str, Enum):
    PROCEED = "proceed"
    REPLAY = "replay"
    CONFLICT = "conflict"
    IN_PROGRESS = "in_progress"


@dataclass(frozen=True)
class IdempotencyDecision:
    outcome: IdempotencyOutcome
    status_code: Optional[int] = None
    body: Any = None


class IdempotencyService:
    """
    PostgreSQL-backed idempotency guard for mutating certificate operations.

    Two-phase protocol: begin() before the operation runs, then exactly one of
    complete()/fail() with the response the caller is about to return.
    """

    def __init__(self, session_factory: sessionmaker, ttl_hours: Optional[int] = None):
        """
        Initialize idempotency service.

        Args:
            session_factory: SQLAlchemy sessionmaker (not session - creates independent transactions)
            ttl_hours: Record lifetime, defaults to settings.idempotency_ttl_hours
        """
        self.session_factory = session_factory
        self.ttl_hours = ttl_hours or settings.idempotency_ttl_hours
        self.logger = logger.bind(service="idempotency")

    def begin(
        self,
        key: str,
        request_hash: str,
        requester_id: Optional[str] = None,
        method: Optional[str] = None,
        path: Optional[str] = None,
    ) -> IdempotencyDecision:
        """
        Register a request under an idempotency key.

        Args:
            key: Client-supplied idempotency key
            request_hash: compute_request_hash() of the request
            requester_id: Owning requester
            method: Request method (stored for diagnostics)
            path: Request path (stored for diagnostics)

        Returns:
            PROCEED for an unseen key, REPLAY with the cached response for a
            finished key, CONFLICT when the hash differs, IN_PROGRESS while
            the first request is still running
        """
        log = self.logger.bind(key=key)
        session: Session = self.session_factory()
        try:
            now = datetime.now(timezone.utc)

            # Reap an expired record as the hourly sweep would; the key then counts as unseen
            expired = session.query(IdempotencyKey).filter(
                IdempotencyKey.key == key,
                IdempotencyKey.expires_at <= now
            ).delete(synchronize_session=False)
            if expired:
                log.info("idempotency_key_expired")
                session.commit()

            record = session.query(IdempotencyKey).filter(IdempotencyKey.key == key).first()
            if record is not None:
                return self._decide(record, request_hash, log)

            session.add(IdempotencyKey(
                key=key,
                status="pending",
                request_hash=request_hash,
                request_method=method,
                request_path=path,
                user_id=requester_id,
                expires_at=now + timedelta(hours=self.ttl_hours),
            ))
            try:
                session.commit()
            except IntegrityError:
                # Another request inserted the same key first
                session.rollback()
                record = session.query(IdempotencyKey).filter(IdempotencyKey.key == key).first()
                if record is None:
                    raise PersistenceError("Idempotency record vanished after conflicting insert")
                log.info("idempotency_key_insert_race")
                return self._decide(record, request_hash, log)

            log.info("idempotency_key_registered", ttl_hours=self.ttl_hours)
            return IdempotencyDecision(IdempotencyOutcome.PROCEED)

        except SQLAlchemyError as e:
            log.error("idempotency_begin_failed", error=str(e))
            session.rollback()
            raise PersistenceError(f"Idempotency store unavailable: {e}") from e
        finally:
            session.close()

    def _decide(self, record: IdempotencyKey, request_hash: str, log) -> IdempotencyDecision:
        if record.request_hash != request_hash:
            log.warning("idempotency_key_mismatch", status=record.status)
            return IdempotencyDecision(IdempotencyOutcome.CONFLICT)

        if record.status == "pending":
            log.info("idempotency_request_in_progress")
            return IdempotencyDecision(IdempotencyOutcome.IN_PROGRESS)

        log.info("idempotency_replay", status=record.status, response_status=record.response_status)
        return IdempotencyDecision(
            IdempotencyOutcome.REPLAY,
            status_code=record.response_status,
            body=record.response_body,
        )

    def complete(self, key: str, status_code: int, body: Any) -> bool:
        """
        Promote a pending key to completed and cache the response.

        Args:
            key: Idempotency key
            status_code: HTTP-equivalent status of the response
            body: JSON-serializable response body

        Returns:
            True if the record was promoted, False if it was already final
        """
        return self._finish(key, "completed", status_code, body)

    def fail(self, key: str, status_code: Optional[int] = None, body: Any = None) -> bool:
        """
        Promote a pending key to failed, caching the error response.

        Returns:
            True if the record was promoted, False if it was already final
        """
        return self._finish(key, "failed", status_code, body)

    def _finish(self, key: str, status: str, status_code: Optional[int], body: Any) -> bool:
        session: Session = self.session_factory()
        try:
            # Only a pending record moves; retried completions are no-ops
            updated = session.query(IdempotencyKey).filter(
                IdempotencyKey.key == key,
                IdempotencyKey.status == "pending"
            ).update(
                {
                    IdempotencyKey.status: status,
                    IdempotencyKey.response_status: status_code,
                    IdempotencyKey.response_body: body,
                },
                synchronize_session=False
            )
            session.commit()

            if updated:
                self.logger.info("idempotency_key_finished", key=key, status=status, response_status=status_code)
            else:
                self.logger.info("idempotency_key_already_final", key=key, status=status)
            return bool(updated)

        except SQLAlchemyError as e:
            self.logger.error("idempotency_finish_failed", key=key, status=status, error=str(e))
            session.rollback()
            raise PersistenceError(f"Idempotency store unavailable: {e}") from e
        finally:
            session.close()

    def cleanup_expired(self) -> int:
        """
        Delete all expired idempotency keys.

        Called by the hourly sweep to prevent unbounded table growth.

        Returns:
            Number of keys deleted
        """
        session: Session = self.session_factory()
        try:
            now = datetime.now(timezone.utc)

            deleted_count = session.query(IdempotencyKey).filter(
                IdempotencyKey.expires_at < now
            ).delete(synchronize_session=False)

            session.commit()

            self.logger.info("idempotency_cleanup_complete", deleted_count=deleted_count)
            return deleted_count

        except SQLAlchemyError as e:
            self.logger.error("idempotency_cleanup_failed", error=str(e))
            session.rollback()
            return 0
        finally:
            session.close()
