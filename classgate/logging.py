from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Correlation ID shared by every log line emitted during one auth operation
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def get_correlation_id() -> Optional[str]:
    """Get the current correlation ID for operation tracing."""
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set or generate a correlation ID for the current operation context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


# Values under these keys are never written, whatever their type
_SECRET_LOG_KEYS = ("password", "secret", "token", "authorization", "api_key")
# Values under these keys identify a person and are partially masked
_PERSONAL_LOG_KEYS = ("email", "username", "identifier", "ip_address")


def _mask(value: str) -> str:
    if len(value) <= 4:
        return "***"
    return f"{value[:2]}***{value[-2:]}"


def _mask_personal(value: str) -> str:
    local, sep, domain = value.partition("@")
    if sep and domain:
        return f"{local[:1]}***@{domain}"
    return _mask(value)


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Redact credentials and mask personal data in a log entry.

    Keys ending in ``_hash`` carry digests, not the data itself, and are
    left readable so related events can be correlated.
    """
    for key, value in list(event_dict.items()):
        lower_key = key.lower()
        if value is None or lower_key == "event" or lower_key.endswith("_hash"):
            continue
        if any(secret in lower_key for secret in _SECRET_LOG_KEYS):
            event_dict[key] = "[REDACTED]"
        elif isinstance(value, str) and any(p in lower_key for p in _PERSONAL_LOG_KEYS):
            event_dict[key] = _mask_personal(value)
    return event_dict


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


def configure_logging(
    log_level: Optional[str] = None,
    json_output: Optional[bool] = None,
    development_mode: Optional[bool] = None,
) -> None:
    """Configure structlog; unset arguments fall back to LOG_LEVEL, LOG_JSON and LOG_DEV_MODE.

    Args:
        log_level: Logging level name (DEBUG, INFO, WARNING, ERROR)
        json_output: Render JSON lines instead of console output
        development_mode: Pretty, colored console output
    """
    level_name = (log_level or os.getenv("LOG_LEVEL", "INFO")).upper()
    if json_output is None:
        json_output = _env_flag("LOG_JSON", "true")
    if development_mode is None:
        development_mode = _env_flag("LOG_DEV_MODE", "false")

    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=development_mode))
    else:
        processors.extend(
            [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
        )

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level_name, logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a configured logger with correlation ID support."""
    return structlog.get_logger(name)


# Backend internals that must not reach audit descriptions or callers
_INTERNAL_DETAIL_PATTERNS = [
    re.compile(p)
    for p in (
        r'(?i)\b(select|insert|update|delete)\b\s+.{0,50}',
        r'(?i)\b(from|where|join)\s+\S+',
        r'(?i)database\s+error',
        r'(?i)connection\s+.*\s+(failed|refused|timeout)',
        r'(?i)/(?:home|var|etc|usr|opt|tmp|srv)/[^\s]+',
        r'(?i)[a-z]:\\[^\s]+',
        r'(?i)(password|secret|token|key|credential)\s*[:=]\s*[^\s]+',
        r'(?i)traceback\s*\(most recent call last\)',
    )
]

_MAX_ERROR_LENGTH = 500

# Keys whose values never belong in audit metadata
_SENSITIVE_METADATA_KEYS = frozenset({
    'password', 'secret', 'token', 'api_key', 'apikey', 'authorization',
    'credentials', 'private_key', 'privatekey', 'password_hash', 'secret_key',
})


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Strip backend detail from an error message before it is stored or shown.

    Removes SQL fragments, filesystem paths, credential assignments and
    stack traces, then bounds the length.
    """
    if not error or not isinstance(error, str):
        return "An error occurred"
    for pattern in _INTERNAL_DETAIL_PATTERNS:
        error = pattern.sub(replacement, error)
    if len(error) > _MAX_ERROR_LENGTH:
        error = error[: _MAX_ERROR_LENGTH - 3] + "..."
    return error


def _redacted(value: Any) -> Any:
    # keep the JSON type so downstream consumers do not break on a string
    if isinstance(value, bool):
        return False
    if isinstance(value, (int, float)):
        return 0
    return "[REDACTED]"


def sanitize_response_data(data: Any, *, depth: int = 0, max_depth: int = 20) -> Any:
    """Recursively redact values under sensitive keys.

    Applied to audit metadata before it is appended. Containers nested
    deeper than ``max_depth`` are replaced by a marker.
    """
    if depth > max_depth:
        return "[max depth exceeded]"
    if isinstance(data, dict):
        result = {}
        for key, value in data.items():
            normalized = str(key).lower().replace('-', '_').replace(' ', '_')
            if any(sensitive in normalized for sensitive in _SENSITIVE_METADATA_KEYS):
                result[key] = _redacted(value)
            else:
                result[key] = sanitize_response_data(value, depth=depth + 1, max_depth=max_depth)
        return result
    if isinstance(data, (list, tuple)):
        return [sanitize_response_data(item, depth=depth + 1, max_depth=max_depth) for item in data]
    return data
