import sys
import logging
import structlog
from costlens.core.config import get_settings

SENSITIVE_FIELDS = {
    "password", "token", "secret", "api_key", "database_url",
    "aws_secret_key", "aws_secret_access_key", "credentials",
}


def secrets_redactor(logger, method_name, event_dict):
    """
    Redact credentials and connection secrets from logs.
    Billing data itself is not PII, but DSNs and keys must never reach telemetry.
    """
    for field in SENSITIVE_FIELDS:
        if field in event_dict:
            event_dict[field] = "[REDACTED]"

    # Redact nested fields in common containers
    for container in ["metadata", "payload", "details", "extra"]:
        if container in event_dict and isinstance(event_dict[container], dict):
            for field in SENSITIVE_FIELDS:
                if field in event_dict[container]:
                    event_dict[container][field] = "[REDACTED]"

    return event_dict


def setup_logging():
    settings = get_settings()

    # 1. Choose the renderer based on environment
    if settings.DEBUG:
        renderer = structlog.dev.ConsoleRenderer()
        min_level = logging.DEBUG
    else:
        renderer = structlog.processors.JSONRenderer()
        min_level = logging.INFO

    # 2. Configure the processor pipeline
    processors = [
        structlog.contextvars.merge_contextvars,      # Support async context (correlation ids)
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        secrets_redactor,                             # Redact before rendering
        renderer
    ]

    structlog.configure(
        processors=processors,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # 3. Route standard logging (SQLAlchemy, APScheduler) to stdout as well.
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=min_level,
    )
