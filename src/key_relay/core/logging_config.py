"""Structured logging for the relay, built on structlog.

``configure_logging()`` is called when the application module is imported
and again by ``create_app()`` with the configured level.  Modules then log
through structlog with snake_case events and key/value context::

    import structlog
    logger = structlog.get_logger(__name__)
    logger.info("slot_deprecated", slot=3, active=4)

uvicorn and httpx log through stdlib ``logging``; their records are rendered
by the same processor chain via ``ProcessorFormatter``.

Credentials must never reach a log line.  Two guards enforce this:

- any field whose name looks secret (``token``, ``authorization``, ...) is
  replaced wholesale, at any nesting depth;
- ``Bearer <value>`` fragments are masked inside string values, so an
  exception message that echoes an auth header is still safe.

The pool logs slot indices and counts, never tokens.  Field names such as
``minimum`` instead of ``min_credentials`` keep ordinary counters from
tripping the first guard.
"""

from __future__ import annotations

import logging
import re
import sys
from contextvars import ContextVar
from typing import Any

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)
"""ID of the request being relayed, set by the HTTP middleware."""

REDACTED = "[REDACTED]"

_SECRET_FIELD_PARTS = (
    "token",
    "credential",
    "api_key",
    "apikey",
    "authorization",
    "bearer",
    "secret",
    "password",
)

_BEARER_VALUE = re.compile(r"(?i)(bearer\s+)[^\s'\",]+")

# Stdlib loggers that log every request line at INFO.
_CHATTY_LOGGERS = ("uvicorn.access", "httpx", "httpcore")


def _looks_secret(name: object) -> bool:
    lowered = str(name).lower()
    return any(part in lowered for part in _SECRET_FIELD_PARTS)


def _scrub(value: Any) -> Any:
    if isinstance(value, str):
        return _BEARER_VALUE.sub(rf"\g<1>{REDACTED}", value)
    if isinstance(value, dict):
        return {
            key: REDACTED if _looks_secret(key) else _scrub(item)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return type(value)(_scrub(item) for item in value)
    return value


# ---------------------------------------------------------------------------
# Processors
# ---------------------------------------------------------------------------


def redact_credentials(
    logger: WrappedLogger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: EventDict,
) -> EventDict:
    """Mask secret-named fields and inline bearer values in one record.

    Nested dicts (e.g. ``headers={...}``) and lists are scrubbed as well.
    The ``event`` name itself is left untouched.
    """
    for key, value in list(event_dict.items()):
        if key == "event":
            continue
        event_dict[key] = REDACTED if _looks_secret(key) else _scrub(value)
    return event_dict


def add_request_id(
    logger: WrappedLogger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: EventDict,
) -> EventDict:
    """Attach the current request ID unless the record already carries one."""
    request_id = request_id_var.get()
    if request_id is not None:
        event_dict.setdefault("request_id", request_id)
    return event_dict


def _pre_chain() -> list[Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        add_request_id,
        redact_credentials,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]


def _renderer(console: bool) -> Processor:
    if console:
        return structlog.dev.ConsoleRenderer(colors=True)
    return structlog.processors.JSONRenderer()


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def configure_logging(log_level: str = "INFO") -> None:
    """Route structlog and stdlib logging to stdout through one renderer.

    Records are newline-delimited JSON with ``timestamp``, ``level``,
    ``logger`` and ``event`` keys (plus ``request_id`` inside a request).
    At ``DEBUG`` the coloured console renderer is used instead and the
    chatty HTTP loggers are left at the requested level.

    Safe to call repeatedly: the root handler is replaced, not added.

    Args:
        log_level: Level name, case-insensitive.  Unknown names mean INFO.
    """
    level_name = log_level.upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        level = logging.INFO
    console = level_name == "DEBUG"
    pre_chain = _pre_chain()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=pre_chain,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                _renderer(console),
            ],
        )
    )
    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(level)

    for name in _CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(logging.NOTSET if console else logging.WARNING)

    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
