"""
Structured JSON logging for reconciliation runs.

Every record carries event_type, level, logger, an ISO UTC timestamp and the
keyword context of the call (actor=, tx_signature=, snapshot_id=, ...). Values
bound with run_context() (command, run id) are merged into every record logged
inside the block on the same thread.

RPC URLs end up in log values (httpx error messages embed the request URL), so
api keys are masked before rendering.

No backend_stakewatch imports here: any module can import it without cycles.
"""

from __future__ import annotations

import logging
import os
import re
import sys
from contextlib import contextmanager
from typing import IO, Any, Iterator

import structlog

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = os.getenv("LOG_FORMAT", "json").strip().lower()

_API_KEY_RE = re.compile(r"(api[-_]key=)[^&\s\"']+", re.IGNORECASE)


def _redact_api_keys(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    for key, value in event_dict.items():
        if isinstance(value, str) and "api" in value.lower():
            event_dict[key] = _API_KEY_RE.sub(r"\1***", value)
    return event_dict


def _event_type(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """structlog 'event' -> event_type; message mirrors it for plain-text sinks."""
    if "event" in event_dict and "event_type" not in event_dict:
        event_dict["event_type"] = event_dict.pop("event")
    event_dict.setdefault("message", str(event_dict.get("event_type", "")))
    return event_dict


def configure_structlog(level: str | None = None, fmt: str | None = None, stream: IO[str] | None = None) -> None:
    """
    (Re)configure structlog. Called once on import with LOG_LEVEL / LOG_FORMAT;
    call again to switch level, renderer or output stream. Loggers already
    bound keep the configuration they were created with.
    """
    level_value = getattr(logging, (level or LOG_LEVEL).upper(), logging.INFO)
    renderer: Any
    if (fmt or LOG_FORMAT) == "json":
        renderer = structlog.processors.JSONRenderer(sort_keys=True)
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True, key="timestamp"),
            structlog.processors.format_exc_info,
            _event_type,
            _redact_api_keys,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level_value),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=stream or sys.stdout),
        cache_logger_on_first_use=True,
    )


if not structlog.is_configured():
    configure_structlog()


def get_logger(name: str) -> structlog.BoundLogger:
    """
    Structured logger for a module.

        logger = get_logger(__name__)
        logger.info("ledger_built", actor=addr, total_staked=1500.0, lots=2)
    """
    return structlog.get_logger(name).bind(logger=name)


def bind_actor(actor: str) -> structlog.BoundLogger:
    """Logger with actor bound to every call."""
    return get_logger("backend_stakewatch.actor").bind(actor=actor)


@contextmanager
def run_context(**values: Any) -> Iterator[None]:
    """Bind values (command=, run_id=) to every record logged inside the block."""
    with structlog.contextvars.bound_contextvars(**values):
        yield
