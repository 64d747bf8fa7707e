"""Logging for the IMAP sync service.

Every log line is a structlog event routed through the stdlib root
logger, so botocore, SQLAlchemy, aiosmtplib and uvicorn output share the
same JSON (or console) format. Connection credentials never reach the
output: keys that carry secrets are masked by :func:`redact_secrets`.
"""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog

REDACTED = "***"

# Event keys that may carry mailbox passwords or the relay API key.
SECRET_KEYS = frozenset({"password", "pass", "secret", "api_key", "authorization", "secret_access_key"})

_NOISY_LOGGERS = ("botocore", "boto3", "urllib3", "sqlalchemy.engine", "aiosmtplib")


def redact_secrets(_logger: Any, _method: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Mask secret values, including those nested in a logged config dict."""
    return {key: _redact(key, value) for key, value in event_dict.items()}


def _redact(key: str, value: Any) -> Any:
    if key.lower() in SECRET_KEYS and value is not None:
        return REDACTED
    if isinstance(value, dict):
        return {k: _redact(str(k), v) for k, v in value.items()}
    return value


def setup_logging(*, json: bool = True, level: str = "INFO", service: str | None = None) -> None:
    """Configure structlog for the service process.

    Parameters
    ----------
    json:
        If *True* (the default, suitable for production), output JSON
        lines.  If *False*, use a human-friendly console renderer.
    level:
        Root log level name (e.g. ``"DEBUG"``, ``"INFO"``).
    service:
        When given, bound as ``service`` on every event of the process.
    """
    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        redact_secrets,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if json:
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level.upper())

    # Per-statement SQL and botocore retry chatter stay out of INFO logs.
    for noisy in _NOISY_LOGGERS:
        logging.getLogger(noisy).setLevel(max(root.level, logging.WARNING))

    structlog.contextvars.clear_contextvars()
    if service:
        structlog.contextvars.bind_contextvars(service=service)
