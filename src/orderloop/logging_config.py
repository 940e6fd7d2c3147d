"""structlog setup with redaction of credential-bearing fields."""

from __future__ import annotations

import logging
import sys
from typing import Any, TextIO

import structlog

REDACTED = "***REDACTED***"

SENSITIVE_KEYS: frozenset[str] = frozenset(
    {
        "appkey",
        "appsecret",
        "accountnumber",
        "password",
        "token",
        "accesstoken",
        "authorization",
        "apikey",
        "secret",
        "encryptionkey",
    }
)


def _normalise(key: str) -> str:
    return key.lower().replace("_", "").replace("-", "")


def _redact(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            k: REDACTED if _normalise(str(k)) in SENSITIVE_KEYS else _redact(v)
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return type(value)(_redact(v) for v in value)
    return value


def redact_sensitive_fields(
    logger: Any, method_name: str, event_dict: dict
) -> dict:
    """structlog processor replacing secrets anywhere in the event."""
    return _redact(event_dict)


def configure_logging(
    level: str = "INFO", json_output: bool = True, stream: TextIO | None = None
) -> None:
    """Configure structlog on top of stdlib logging.

    Args:
        level: Minimum stdlib level name, e.g. "INFO".
        json_output: Render JSON lines when True, colored console otherwise.
        stream: Output stream; stdout when None.
    """
    logging.basicConfig(
        format="%(message)s",
        stream=stream or sys.stdout,
        level=getattr(logging, level.upper(), logging.INFO),
    )
    renderer: Any = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            redact_sensitive_fields,
            structlog.processors.format_exc_info,
            renderer,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
