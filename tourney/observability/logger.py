"""Structured logging with structlog.

Every line carries the event name as a dotted key (``ingestion.applied``).
While an event is being applied its identifiers are bound to the context,
so ledger, ranking and audit lines emitted underneath can be joined back to
the broker report that caused them.

Broker credentials and webhook secrets are redacted before rendering.
"""

from __future__ import annotations

import logging
import os
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

import structlog

from tourney.config import ObservabilityConfig


_CONFIGURED = False

_REDACTED_FIELDS = frozenset({
    "password", "secret", "token", "api_key", "api_secret",
    "authorization", "signature", "webhook_secret",
})


def _redact_processor(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: structlog.types.EventDict,
) -> structlog.types.EventDict:
    for key in list(event_dict.keys()):
        if key.lower() in _REDACTED_FIELDS:
            event_dict[key] = "***REDACTED***"
    return event_dict


def _drop_empty_context(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: structlog.types.EventDict,
) -> structlog.types.EventDict:
    """Unset event identifiers are bound as None; keep lines short."""
    for key in ("tournament_id", "participant_id", "idempotency_key"):
        if key in event_dict and event_dict[key] is None:
            del event_dict[key]
    return event_dict


def configure_logging(
    level: str = "INFO",
    fmt: str = "json",
    log_file: str | None = None,
) -> None:
    """Configure structlog over the stdlib root logger. Runs once."""
    global _CONFIGURED
    if _CONFIGURED:
        return

    log_level = getattr(logging, level.upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(log_level)

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(str(path)))

    shared: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        _drop_empty_context,
        _redact_processor,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if fmt == "json":
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())

    structlog.configure(
        processors=[*shared, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(processor=renderer, foreign_pre_chain=shared)
    for handler in handlers:
        handler.setLevel(log_level)
        handler.setFormatter(formatter)
        root.addHandler(handler)

    _CONFIGURED = True


def configure_from_config(config: ObservabilityConfig, fmt: str | None = None) -> None:
    configure_logging(
        level=config.log_level,
        fmt=fmt or config.log_format,
        log_file=config.log_file or None,
    )


@contextmanager
def event_context(kind: str, **ids: Any) -> Iterator[None]:
    """Bind an event's identifiers to every log line inside the block."""
    with structlog.contextvars.bound_contextvars(event_kind=kind, **ids):
        yield


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    if not _CONFIGURED:
        configure_logging(
            level=os.environ.get("LOG_LEVEL", "INFO"),
            fmt=os.environ.get("LOG_FORMAT", "console"),
        )
    return structlog.get_logger(name)
