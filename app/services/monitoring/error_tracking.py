"""
Sentry Error Tracking
Provides error tracking with certificate context for production debugging
"""

import logging
from typing import Optional

import sentry_sdk

logger = logging.getLogger(__name__)


def init_sentry() -> None:
    """
    Initialize Sentry SDK with FastAPI integration.

    If SENTRY_DSN is not configured, logs warning and returns (disabled).
    """
    from app.config import settings
    from sentry_sdk.integrations.fastapi import FastApiIntegration

    if settings.sentry_dsn is None:
        logger.warning("Sentry DSN not configured - error tracking disabled")
        return

    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.sentry_environment or settings.environment,
        traces_sample_rate=0.1,  # 10% of requests traced
        integrations=[
            FastApiIntegration(),
        ],
    )

    logger.info(
        "Sentry initialized",
        extra={"environment": settings.sentry_environment or settings.environment}
    )


def set_certificate_context(
    certificate_id: Optional[str],
    operation: str,
    correlation_id: Optional[str] = None
) -> None:
    """
    Tag the current scope with the certificate being worked on.

    Args:
        certificate_id: Certificate ID (None before the record exists)
        operation: Orchestrator operation (create, retry, cancel, ...)
        correlation_id: Optional correlation ID for request tracking
    """
    sentry_sdk.set_context("certificate", {
        "certificate_id": certificate_id,
        "operation": operation,
        "correlation_id": correlation_id or "none"
    })
    sentry_sdk.set_tag("operation", operation)
    if certificate_id:
        sentry_sdk.set_tag("certificate_id", certificate_id)


def add_breadcrumb(
    category: str,
    message: str,
    level: str = "info",
    data: Optional[dict] = None
) -> None:
    """
    Add breadcrumb for the issuance trail (registry lookup, issuer submission, ...).
    """
    sentry_sdk.add_breadcrumb(
        category=category,
        message=message,
        level=level,
        data=data or {}
    )


def capture_transition_failure(error: Exception, certificate_id: Optional[str], attempt: dict) -> None:
    """
    Report a non-recoverable transition or persistence failure.

    Args:
        error: The failure being reported
        certificate_id: Certificate the transition targeted
        attempt: Full transition attempt (from status, event, target fields)
    """
    sentry_sdk.capture_exception(
        error,
        tags={"certificate_id": certificate_id or "none"},
        contexts={"transition_attempt": attempt},
    )
