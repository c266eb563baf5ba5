"""structlog setup shared by every hackguard module.

Log lines are event names with keyword fields. Each line carries the
request's correlation id, and credential-like fields (tokens, secrets,
emails, cookies) are masked before rendering. Audit entries go through
``log_security_event`` on the ``security`` logger.
"""

from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, MutableMapping, Optional

import structlog

_request_id: ContextVar[Optional[str]] = ContextVar("hackguard_request_id", default=None)

# Matched as substrings of the field name
_MASKED_FIELDS = ("password", "secret", "token", "authorization", "email", "cookie")

SECURITY_EVENTS = frozenset(
    {
        "login_success",
        "login_failed",
        "rate_limit",
        "suspicious_activity",
        "session_hijack_suspected",
    }
)


def get_correlation_id() -> Optional[str]:
    return _request_id.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh uuid4) to the current context."""
    value = correlation_id or uuid.uuid4().hex
    _request_id.set(value)
    return value


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    request_id = _request_id.get()
    if request_id:
        event_dict.setdefault("correlation_id", request_id)
    return event_dict


def _mask(value: str) -> str:
    return f"{value[:2]}***{value[-2:]}"


def _redact_pii(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    for key, value in event_dict.items():
        if not isinstance(value, str) or len(value) <= 4:
            continue
        name = key.lower()
        if any(field in name for field in _MASKED_FIELDS):
            # Two characters each side are enough to correlate entries
            event_dict[key] = _mask(value)
    return event_dict


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def configure_logging(
    level: Optional[str] = None,
    *,
    json_output: Optional[bool] = None,
    dev_mode: Optional[bool] = None,
) -> None:
    """Install the processor chain; arguments default to LOG_* env vars."""
    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    if json_output is None:
        json_output = _env_flag("LOG_JSON", True)
    if dev_mode is None:
        dev_mode = _env_flag("LOG_DEV_MODE", False)

    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if json_output and not dev_mode:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=dev_mode))

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
    return structlog.get_logger(name)


def log_security_event(event: str, logger: Optional[Any] = None, **fields: Any) -> None:
    """Write an audit entry to the ``security`` logger.

    Everything except a successful login is logged at warning level so audit
    entries survive a quieter LOG_LEVEL. Names outside ``SECURITY_EVENTS`` are
    still written, flagged as ``security_event_unknown``.
    """
    log = logger or get_logger("security")
    if event not in SECURITY_EVENTS:
        log.warning("security_event_unknown", security_event=event, **fields)
    elif event == "login_success":
        log.info("security_event", security_event=event, **fields)
    else:
        log.warning("security_event", security_event=event, **fields)
