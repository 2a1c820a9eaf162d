"""structlog configuration shared by the services and scripts.

Every entry carries the current correlation id, when one is set, and passes
through a redaction step before rendering. Credential-bearing keys are masked
completely; e-mail addresses keep their first character and domain so support
can still tell accounts apart.
"""

from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh uuid) to the current context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


# Matched against the underscore-separated parts of a key, so "refresh_token"
# and "password_hash" are masked while "refresh_id" is not
_SECRET_KEY_PARTS = frozenset({"password", "secret", "token", "authorization", "hash"})
_EMAIL_KEY_PARTS = frozenset({"email"})
_MASK = "***"


def _mask_email(value: str) -> str:
    local, sep, domain = value.partition("@")
    if not sep or not local:
        return _MASK
    return f"{local[0]}{_MASK}@{domain}"


def _redact_sensitive(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    for key, value in list(event_dict.items()):
        if not isinstance(value, str) or key == "event":
            continue
        parts = set(key.lower().split("_"))
        if parts & _SECRET_KEY_PARTS:
            event_dict[key] = _MASK
        elif parts & _EMAIL_KEY_PARTS:
            event_dict[key] = _mask_email(value)
    return event_dict


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


def configure_logging(
    log_level: str = "INFO",
    *,
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_sensitive,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=development_mode))
    else:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    development_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


_SENSITIVE_MESSAGE_PATTERNS = [
    re.compile(pattern)
    for pattern in (
        r"(?i)\b(select|insert|update|delete)\b\s+.{0,80}",
        r"(?i)(database|psycopg|postgres(ql)?)\s+error.*",
        r"(?i)connection\s+.*\s+(failed|refused|timeout)",
        r"(?i)/(?:home|var|etc|usr|opt|tmp|root)/\S+",
        r"(?i)(password|secret|token|key|credential)\s*[:=]\s*\S+",
        r"(?i)traceback\s*\(most recent call last\).*",
        r"(?i)postgres(ql)?://\S+",
    )
]
_MAX_MESSAGE_LENGTH = 500


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Strip SQL, paths, DSNs, credentials and tracebacks from ``error``.

    Used on anything that may leave the process, such as 5xx envelope
    messages and the ``error`` field of failure logs.
    """
    if not error or not isinstance(error, str):
        return "An error occurred"
    result = error
    for pattern in _SENSITIVE_MESSAGE_PATTERNS:
        result = pattern.sub(replacement, result)
    if len(result) > _MAX_MESSAGE_LENGTH:
        result = result[: _MAX_MESSAGE_LENGTH - 3] + "..."
    return result
