"""
IdempotencyKey Model
Stores client-supplied idempotency keys and the response cached for replay
"""

from sqlalchemy import Column, Integer, String, DateTime, JSON, Index
from sqlalchemy.sql import func
from app.database import Base


class IdempotencyKey(Base):
    """
    Idempotency key storage for mutating certificate requests.

    A key is bound to exactly one request hash. It moves from pending to
    completed or failed once and is reaped after expires_at by the hourly sweep.
    """
    __tablename__ = "idempotency_keys"

    # Primary Key
    id = Column(Integer, primary_key=True, autoincrement=True)

    # Idempotency Key
    key = Column(String(255), unique=True, nullable=False, index=True)

    # Status: pending, completed, failed
    status = Column(String(20), nullable=False, default="pending")

    # Request fingerprint
    request_hash = Column(String(64), nullable=False)
    request_method = Column(String(10), nullable=True)
    request_path = Column(String(500), nullable=True)
    user_id = Column(String(100), nullable=True)

    # Cached response for replay
    response_status = Column(Integer, nullable=True)
    response_body = Column(JSON, nullable=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
    expires_at = Column(DateTime(timezone=True), nullable=False)

    # Index for cleanup queries
    __table_args__ = (
        Index('ix_idempotency_expires_at', 'expires_at'),
    )

    def __repr__(self):
        return f"<IdempotencyKey(id={self.id}, key='{self.key}', status='{self.status}', expires_at={self.expires_at})>"
