"""
Monitoring Module
Exports for structured logging, circuit breakers and error tracking
"""

from app.services.monitoring.logging import setup_logging, CorrelationJsonFormatter
from app.services.monitoring.circuit_breakers import (
    ExternalServiceBreaker,
    get_breaker,
    get_registry_breaker,
    get_issuer_breaker,
    CircuitBreakerEmailListener,
)

__all__ = [
    "setup_logging",
    "CorrelationJsonFormatter",
    "ExternalServiceBreaker",
    "get_breaker",
    "get_registry_breaker",
    "get_issuer_breaker",
    "CircuitBreakerEmailListener",
]
