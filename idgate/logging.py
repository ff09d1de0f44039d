from __future__ import annotations

import logging
import re
import uuid
from typing import Any, Dict, Optional

import structlog

# serialized tokens and credentials are secret; token_id and user_id are not
_SECRET_KEYS = ("password", "secret", "access_token", "refresh_token", "authorization")
_EMAIL_KEYS = ("email",)

_DSN_PATTERN = re.compile(r"(?i)\b(redis|rediss|postgres(?:ql)?)://\S+")
_CREDENTIAL_PATTERN = re.compile(r"(?i)\b(password|secret|token|key)\s*[:=]\s*\S+")
_MAX_ERROR_LENGTH = 300


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind a request correlation id (or a fresh one) to every log line in this context."""
    cid = correlation_id or str(uuid.uuid4())
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(correlation_id=cid)
    return cid


def _mask_email(value: str) -> str:
    local, _, domain = value.partition("@")
    if not domain:
        return "***"
    return f"{local[:1]}***@{domain}"


def _redact(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in list(event_dict.items()):
        if not isinstance(value, str):
            continue
        lower_key = key.lower()
        if any(secret in lower_key for secret in _SECRET_KEYS):
            event_dict[key] = "[redacted]"
        elif lower_key in _EMAIL_KEYS:
            event_dict[key] = _mask_email(value)
    return event_dict


def configure_logging(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Configure structlog for the process.

    Called once by the runtime at startup; modules only ever ask for a logger.
    JSON lines in production, coloured console output when ``json_output`` is
    off or ``development_mode`` is on.
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _redact,
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors += [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def sanitize_error_message(error: str) -> str:
    """Strip connection strings and inline credentials from a driver error."""
    if not error:
        return "unknown error"
    result = _DSN_PATTERN.sub(r"\1://[redacted]", error)
    result = _CREDENTIAL_PATTERN.sub(r"\1=[redacted]", result)
    if len(result) > _MAX_ERROR_LENGTH:
        result = result[: _MAX_ERROR_LENGTH - 3] + "..."
    return result
