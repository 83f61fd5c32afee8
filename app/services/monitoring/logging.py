"""
Structured JSON Logging with Correlation ID

Stdlib records go through a python-json-logger formatter, structlog events
through a JSON renderer. Both carry the request correlation id so one
certificate request can be followed across API, orchestrator and worker logs.
"""

import logging
import os
import sys

import structlog
from pythonjsonlogger import jsonlogger
from asgi_correlation_id.context import correlation_id

SERVICE_NAME = 'certificate-issuance'


class CorrelationJsonFormatter(jsonlogger.JsonFormatter):
    """
    JSON formatter with automatic correlation ID injection.

    The correlation ID is read from async context (set by CorrelationIdMiddleware);
    background jobs without a request log 'none'.
    """

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)

        log_record['correlation_id'] = correlation_id.get() or 'none'
        log_record['service'] = SERVICE_NAME
        log_record['environment'] = os.getenv('ENVIRONMENT', 'development')


def add_correlation_id(logger, method_name, event_dict):
    """structlog processor adding the current correlation id."""
    event_dict.setdefault('correlation_id', correlation_id.get() or 'none')
    return event_dict


def setup_logging(level: int = logging.INFO):
    """
    Configure structured JSON logging to stdout.

    Sets up:
    - root stdlib logger with CorrelationJsonFormatter
    - structlog with ISO timestamps, log level, correlation id and JSON output

    Args:
        level: Root log level (INFO in production)

    Returns:
        logging.Handler: The configured handler (for testing)
    """
    handler = logging.StreamHandler(sys.stdout)

    formatter = CorrelationJsonFormatter(
        '%(timestamp)s %(level)s %(name)s %(message)s',
        rename_fields={
            'timestamp': 'asctime',
            'level': 'levelname'
        }
    )
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    structlog.configure(
        processors=[
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            add_correlation_id,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer()
        ]
    )

    return handler
