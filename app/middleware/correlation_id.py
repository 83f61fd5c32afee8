"""
Correlation ID Middleware
Request tracing from the HTTP edge through orchestrator, breakers and worker jobs
"""

import uuid
from typing import Optional

from asgi_correlation_id import CorrelationIdMiddleware
from asgi_correlation_id.context import correlation_id

__all__ = ["CorrelationIdMiddleware", "get_correlation_id", "bind_job_correlation_id"]


def get_correlation_id() -> str:
    """
    Get current correlation ID from async context.

    Returns:
        str: The correlation ID or 'none' if not available
    """
    return correlation_id.get() or 'none'


def bind_job_correlation_id(job_name: str, certificate_id: Optional[str] = None) -> str:
    """
    Set a correlation ID for a background job.

    Dramatiq actors and scheduler jobs run outside any request, so the
    context variable is empty there. The generated ID names the job and
    certificate so worker log lines can be grouped per run.

    Returns:
        str: The correlation ID now in context
    """
    suffix = uuid.uuid4().hex[:12]
    value = f"{job_name}:{certificate_id}:{suffix}" if certificate_id else f"{job_name}:{suffix}"
    correlation_id.set(value)
    return value
