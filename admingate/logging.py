from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Per-request correlation id, set by the HTTP middleware
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

_SENSITIVE_KEYS = {"password", "secret", "token", "api_key", "authorization", "email", "cookie"}


def get_correlation_id() -> Optional[str]:
    """Get the current correlation ID for request tracing."""
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set or generate a correlation ID for the current request context."""
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


def _redact_sensitive(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask credential-bearing values, keeping first/last 2 chars for debugging."""
    for key in list(event_dict.keys()):
        lower_key = key.lower()
        if any(marker in lower_key for marker in _SENSITIVE_KEYS):
            value = event_dict[key]
            if isinstance(value, str) and len(value) > 4:
                event_dict[key] = value[:2] + "***" + value[-2:]
    return event_dict


def _configure_structlog(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Configure structlog processors.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_output: If True, output JSON; if False, output human-readable
        development_mode: If True, use pretty console output
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_sensitive,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if development_mode or not json_output:
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(colors=True),
        ]
    else:
        processors = shared_processors + [
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


_log_level = os.getenv("LOG_LEVEL", "INFO").upper()
_json_output = os.getenv("LOG_JSON", "true").lower() in {"1", "true", "yes", "on"}
_dev_mode = os.getenv("LOG_DEV_MODE", "false").lower() in {"1", "true", "yes", "on"}

_configure_structlog(
    log_level=_log_level,
    json_output=_json_output,
    development_mode=_dev_mode,
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a configured logger with correlation ID support."""
    return structlog.get_logger(name)


_session_logger = get_logger("admingate.session")

_LEVEL_FOR_SEVERITY = {
    "LOW": "info",
    "MEDIUM": "warning",
    "HIGH": "warning",
    "CRITICAL": "error",
}


def log_session_event(
    action: str,
    *,
    user_id: Optional[str] = None,
    session_id: Optional[str] = None,
    success: bool = True,
    severity: str = "LOW",
    network_origin: Optional[str] = None,
    context: Optional[Dict[str, Any]] = None,
    logger: Optional[Any] = None,
) -> Dict[str, Any]:
    """Emit one session lifecycle log line with a fixed schema.

    Every lifecycle event (creation, validation failure, refresh, heartbeat,
    invalidation, suspicious activity) is logged through here so downstream
    log processing can rely on the same keys. Returns the emitted fields.
    """
    fields: Dict[str, Any] = {
        "action": action,
        "user_id": user_id,
        "session_id": session_id,
        "success": success,
        "severity": severity,
        "network_origin": network_origin,
        "context": dict(context or {}),
    }
    log = logger or _session_logger
    level = _LEVEL_FOR_SEVERITY.get(severity, "info")
    getattr(log, level)("session_event", **fields)
    return fields
