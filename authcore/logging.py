"""structlog setup for authcore.

The runtime calls :func:`configure_logging` with the injected ``Settings``;
modules only ever call :func:`get_logger`. Request-scoped fields (request id,
client ip, path) live in structlog's contextvars, bound once per request by
:func:`begin_request`, so call sites log the event and its specifics only.
"""

from __future__ import annotations

import logging
import uuid
from typing import TYPE_CHECKING, Any, Dict, Optional

import structlog
from structlog.contextvars import (
    bind_contextvars,
    clear_contextvars,
    get_contextvars,
    merge_contextvars,
)

if TYPE_CHECKING:
    from authcore.config import Settings

REQUEST_ID_KEY = "request_id"
REDACTED = "[redacted]"

# substrings of context keys whose values are credential material
_CREDENTIAL_MARKERS = (
    "password",
    "secret",
    "token",
    "pepper",
    "authorization",
    "cookie",
    "hash",
    "salt",
)


def begin_request(
    request_id: Optional[str] = None,
    *,
    client_ip: Optional[str] = None,
    path: Optional[str] = None,
) -> str:
    """Reset the log context for a new request and bind its identifying fields."""
    rid = request_id or str(uuid.uuid4())
    clear_contextvars()
    bind_contextvars(**{REQUEST_ID_KEY: rid, "client_ip": client_ip, "path": path})
    return rid


def get_correlation_id() -> Optional[str]:
    return get_contextvars().get(REQUEST_ID_KEY)


def _redact_credentials(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    for key, value in event_dict.items():
        if key == "event" or value is None:
            continue
        if any(marker in key.lower() for marker in _CREDENTIAL_MARKERS):
            event_dict[key] = REDACTED
    return event_dict


def _drop_unset(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    # begin_request binds client_ip/path as None outside HTTP requests
    return {key: value for key, value in event_dict.items() if value is not None}


def configure_logging(settings: "Settings") -> None:
    """Install the processor chain described by ``settings``.

    JSON lines in production; a console renderer when ``log_json`` is off or
    ``log_dev_mode`` is on. Safe to call again when settings change (tests).
    """
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    processors = [
        merge_contextvars,
        _drop_unset,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _redact_credentials,
        structlog.processors.StackInfoRenderer(),
    ]
    if settings.log_json and not settings.log_dev_mode:
        processors += [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=settings.log_dev_mode))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        # module-level loggers must pick up a reconfiguration
        cache_logger_on_first_use=False,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
