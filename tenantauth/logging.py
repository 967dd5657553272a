from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Bound per request by whatever transport sits in front of the auth core
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh uuid4) to the current context."""
    value = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(value)
    return value


def _bind_correlation_id(_logger: Any, _method: str, event: Dict[str, Any]) -> Dict[str, Any]:
    value = correlation_id_var.get()
    if value:
        event.setdefault("correlation_id", value)
    return event


# Substrings of event keys whose values are credential material or contact details
_MASKED_FRAGMENTS = ("password", "secret", "token", "code", "email", "phone", "destination", "authorization")
# Identifiers and counters that merely share a fragment with the list above
_UNMASKED_KEYS = frozenset({"jti", "token_type", "status_code", "error_code", "remaining_codes"})


def _mask(value: str) -> str:
    if len(value) <= 4:
        return "***"
    return f"{value[:2]}***{value[-2:]}"


def _redact_pii(_logger: Any, _method: str, event: Dict[str, Any]) -> Dict[str, Any]:
    """Mask credential material and contact details before rendering."""
    for key, value in list(event.items()):
        name = key.lower()
        if name in _UNMASKED_KEYS or not isinstance(value, str):
            continue
        if any(fragment in name for fragment in _MASKED_FRAGMENTS):
            event[key] = _mask(value)
    return event


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


def configure_logging(level: Optional[str] = None, *, json_output: Optional[bool] = None) -> None:
    """Install the structlog pipeline.

    ``LOG_LEVEL`` and ``LOG_JSON`` are consulted for whatever is not passed
    explicitly. Console rendering is used when JSON output is off.
    """
    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    as_json = _env_flag("LOG_JSON", "true") if json_output is None else json_output

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _bind_correlation_id,
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
    ]
    if as_json:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=False))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level_name, logging.INFO)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


# Driver messages from psycopg and redis can echo DSNs, statements and credentials
_ERROR_SCRUBBERS = [
    re.compile(r"(?i)\b(postgres(?:ql)?|rediss?)://[^\s]+"),
    re.compile(r"(?i)\b(password|passwd|secret|token|key|credential)s?\s*[:=]\s*\S+"),
    re.compile(r"(?i)\b(select|insert|update|delete)\b.{0,80}"),
    re.compile(r"(?i)connection\s+to\s+server\s+at\s+\S+"),
    re.compile(r"(?i)traceback\s*\(most recent call last\).*", re.DOTALL),
]
_MAX_ERROR_LENGTH = 300


def sanitize_error_message(error: Any, *, replacement: str = "[redacted]") -> str:
    """Scrub an exception message before it is logged next to auth context."""
    text = str(error) if error is not None else ""
    if not text:
        return "unknown error"
    for scrubber in _ERROR_SCRUBBERS:
        text = scrubber.sub(replacement, text)
    if len(text) > _MAX_ERROR_LENGTH:
        text = text[: _MAX_ERROR_LENGTH - 3] + "..."
    return text
