"""
Application Configuration
"""

from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # Database
    database_url: Optional[str] = None

    # Redis & Job Queue
    redis_url: Optional[str] = None

    # Environment
    environment: str = "development"

    # Registry (policy-of-record system) service account
    registry_base_url: Optional[str] = None
    registry_username: Optional[str] = None
    registry_token: Optional[str] = None

    # Issuer (attestation authority) service account
    issuer_base_url: Optional[str] = None
    issuer_token: Optional[str] = None
    issuer_requester_code: str = "SYSTEM"

    # Email Notifications
    admin_email: Optional[str] = None
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_username: Optional[str] = None
    smtp_password: Optional[str] = None

    # Circuit Breaker Configuration
    # One breaker per external system (registry, issuer), same thresholds for both
    circuit_breaker_timeout: float = 10.0  # Seconds before an external call counts as failed
    circuit_breaker_error_threshold_percentage: int = 50  # Error ratio in the window that opens the circuit
    circuit_breaker_rolling_window: float = 10.0  # Seconds of history for the error ratio
    circuit_breaker_volume_threshold: int = 5  # Minimum calls in the window before the ratio applies
    circuit_breaker_fail_max: int = 5  # Consecutive failures before opening circuit
    circuit_breaker_reset_timeout: int = 30  # Seconds before a half-open trial call
    circuit_breaker_max_workers: int = 8  # Worker pool size per external system
    circuit_breaker_alert_email: Optional[str] = None  # Falls back to admin_email

    # Idempotency
    idempotency_ttl_hours: int = 24
    idempotency_header_name: str = "Idempotency-Key"

    # Certificates
    download_link_ttl_hours: int = 24
    max_automatic_retries: int = 3
    status_poll_min_age_minutes: int = 5
    max_batch_size: int = 100  # Items per bulk create or bulk cancel/suspend request

    # Audit retention (None keeps audit entries forever)
    audit_retention_days: Optional[int] = None

    # Sentry Error Tracking
    sentry_dsn: Optional[str] = None  # Sentry project DSN
    sentry_environment: Optional[str] = None  # Defaults to environment setting

    class Config:
        env_file = ".env"
        case_sensitive = False


settings = Settings()
