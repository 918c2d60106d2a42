"""Structured logging for the StackBox provisioning core.

Every component logs snake_case events with key/value context through
structlog. Values under secret-looking keys (admin passwords, stack keys,
rendered ``.env`` files) are masked before rendering, so credentials that
pass through a pipeline run never reach CloudWatch.
"""

import logging
import os
import sys
from typing import Any, Optional

import structlog

LEVEL_ENV = "STACKBOX_LOG_LEVEL"
REDACTED = "***"
SECRET_MARKERS = ("password", "secret", "token", "api_key", "credentials", "env_file")


def _is_secret_key(key: str) -> bool:
    lowered = key.lower()
    return any(marker in lowered for marker in SECRET_MARKERS)


def _redact(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            k: REDACTED if isinstance(k, str) and _is_secret_key(k) else _redact(v)
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return type(value)(_redact(item) for item in value)
    return value


def redact_secrets(logger: Any, method_name: str, event_dict: dict) -> dict:
    """structlog processor masking secret-looking keys, nested ones included."""
    return {
        key: REDACTED if _is_secret_key(key) else _redact(value)
        for key, value in event_dict.items()
    }


def configure_logging(
    level: Optional[str] = None,
    json_format: Optional[bool] = None,
    log_file: Optional[str] = None,
) -> None:
    """Configure structured logging for the application.

    Args:
        level: Log level name; defaults to ``STACKBOX_LOG_LEVEL`` or INFO
        json_format: JSON lines instead of console output; defaults to
            True inside Lambda
        log_file: Optional file path that also receives stdlib log records
    """
    level = (level or os.environ.get(LEVEL_ENV) or "INFO").upper()
    numeric_level = getattr(logging, level)
    if json_format is None:
        json_format = "AWS_LAMBDA_FUNCTION_NAME" in os.environ

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=numeric_level)
    # botocore's wire-level debug output would bypass redaction
    logging.getLogger("botocore").setLevel(max(numeric_level, logging.INFO))

    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        redact_secrets,
        structlog.processors.StackInfoRenderer(),
    ]
    if json_format:
        processors += [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(sort_keys=True),
        ]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(numeric_level)
        logging.getLogger().addHandler(file_handler)


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger named after the calling module."""
    return structlog.get_logger(name)


def bind_tenant(tenant_id: str, **context: Any):
    """Bind a tenant identifier (and extra run context) to every log line in the block."""
    return structlog.contextvars.bound_contextvars(tenant_id=tenant_id, **context)
