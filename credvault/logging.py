from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

EventDict = Dict[str, Any]

# X-Request-ID of the request being served; set by the HTTP middleware
_request_id: ContextVar[Optional[str]] = ContextVar("credvault_request_id", default=None)


def get_correlation_id() -> Optional[str]:
    return _request_id.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh UUID) to the current context."""
    value = correlation_id or str(uuid.uuid4())
    _request_id.set(value)
    return value


def _bind_request_id(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    request_id = _request_id.get()
    if request_id:
        event_dict.setdefault("correlation_id", request_id)
    return event_dict


# Credential material is dropped outright; addresses keep their domain.
_SECRET_FIELDS = ("password", "secret", "token", "digest", "authorization")
_SECRET_EXACT = {"code", "state"}
_ADDRESS_FIELDS = ("email", "to_email")


def _mask_address(value: str) -> str:
    local, sep, domain = value.partition("@")
    if not sep:
        return "***"
    return f"{local[:2]}***@{domain}"


def _scrub_credentials(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    for key, value in list(event_dict.items()):
        if key == "event" or not isinstance(value, str):
            continue
        lowered = key.lower()
        if lowered in _ADDRESS_FIELDS:
            event_dict[key] = _mask_address(value)
        elif lowered in _SECRET_EXACT or any(marker in lowered for marker in _SECRET_FIELDS):
            event_dict[key] = "***"
    return event_dict


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


def configure_logging(
    level: Optional[str] = None,
    *,
    json_output: Optional[bool] = None,
) -> None:
    """(Re)configure structlog.

    Defaults come from ``LOG_LEVEL`` and ``LOG_JSON``; JSON lines are the
    production format, ``LOG_JSON=false`` gives coloured console output.
    """
    level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    if json_output is None:
        json_output = _env_flag("LOG_JSON", "true")

    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _bind_request_id,
        _scrub_credentials,
        structlog.processors.StackInfoRenderer(),
    ]
    if json_output:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level, logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


_analytics = get_logger("credvault.analytics")


def track_event(event: str, distinct_id: Optional[str], **properties: Any) -> None:
    """Record a lifecycle event (login, rotation, reuse, role change).

    Events are log lines with ``analytics_event`` set, so any log shipper can
    route them; emitting one never affects the calling operation.
    """
    try:
        _analytics.info("analytics_event", analytics_event=event, distinct_id=distinct_id, **properties)
    except (TypeError, ValueError) as exc:
        _analytics.warning("analytics_capture_failed", analytics_event=event, error=str(exc))


_LEAKY_FRAGMENTS = [
    re.compile(r"(?i)\b(select|insert|update|delete)\b.{0,80}"),
    re.compile(r"(?i)(postgres(?:ql)?|redis)://\S+"),
    re.compile(r"(?i)/(?:home|var|etc|usr|opt|tmp|srv)/\S+"),
    re.compile(r"(?i)(password|secret|token|digest)\s*[:=]\s*\S+"),
    re.compile(r"(?i)traceback \(most recent call last\).*", re.S),
]


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Remove SQL, DSNs, paths, credentials and tracebacks from ``error``."""
    if not error or not isinstance(error, str):
        return "An error occurred"
    for pattern in _LEAKY_FRAGMENTS:
        error = pattern.sub(replacement, error)
    return error if len(error) <= 500 else error[:497] + "..."
