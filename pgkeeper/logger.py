"""Structured logging for the keeper.

Every module logs through ``logger = get_logger(__name__)`` with keyword
context, and the process calls `configure_logging` once at startup. Events
are rendered as JSON lines or as console text, to stdout or to a rotating
file.

Connection strings may carry a password. Values logged under the keys in
`CONNECTION_STRING_KEYS` have it masked before rendering, whichever
component logged them.
"""

from __future__ import annotations

import logging
import re
import sys
from functools import lru_cache
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import TYPE_CHECKING, Literal, cast

import structlog
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from structlog.processors import CallsiteParameter

if TYPE_CHECKING:
    from structlog.types import EventDict, Processor, WrappedLogger

type BoundLogger = structlog.stdlib.BoundLogger
type LogLevel = Literal["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG", "NOTSET"]

CONNECTION_STRING_KEYS = frozenset({"url", "dsn", "conninfo", "primary_conninfo"})
MASK = "****"

_URI_PASSWORD_RE = re.compile(r"(?P<head>://[^:/@\s]*:)[^@\s]*@")
_CONNINFO_PASSWORD_RE = re.compile(r"(?P<head>\bpassword\s*=\s*)('(?:[^'\\]|\\.)*'|\S+)")


class LoggingConfig(BaseSettings):
    """Logging settings for the keeper process, read from ``LOG_*`` variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="LOG_",
        extra="forbid",
        frozen=True,
    )

    level: LogLevel = Field(default="INFO")
    json_output: bool = Field(default=False, description="JSON lines instead of console text")
    service_name: str = Field(default="pgkeeper")
    file_path: str | None = Field(default=None, description="Rotating log file; stdout when unset")
    max_bytes: int = Field(default=50_000_000, ge=1024)
    backup_count: int = Field(default=10, ge=0)
    library_log_levels: dict[str, LogLevel] = Field(default_factory=lambda: {"asyncpg": "WARNING"})
    enable_otel: bool = Field(default=False, description="Add trace and span ids when OpenTelemetry is installed")


def mask_connection_string(text: str) -> str:
    """Replace the password of a URI or ``key=value`` connection string."""
    masked = _URI_PASSWORD_RE.sub(rf"\g<head>{MASK}@", text)
    return _CONNINFO_PASSWORD_RE.sub(rf"\g<head>{MASK}", masked)


def _mask_connection_strings(_logger: WrappedLogger, _method_name: str, event_dict: EventDict) -> EventDict:
    for key in CONNECTION_STRING_KEYS.intersection(event_dict):
        value = event_dict[key]
        if isinstance(value, str):
            event_dict[key] = mask_connection_string(value)
    return event_dict


def _add_otel_trace_context(_logger: WrappedLogger, _method_name: str, event_dict: EventDict) -> EventDict:
    try:
        from opentelemetry import trace
    except ImportError:
        return event_dict

    span = trace.get_current_span()
    if span and span.is_recording():
        span_context = span.get_span_context()
        event_dict["trace_id"] = format(span_context.trace_id, "032x")
        event_dict["span_id"] = format(span_context.span_id, "016x")
    return event_dict


def build_processors(config: LoggingConfig) -> list[Processor]:
    """Processor chain ending with the renderer chosen by ``config.json_output``."""
    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.CallsiteParameterAdder(
            parameters=[CallsiteParameter.MODULE, CallsiteParameter.LINENO],
        ),
        _mask_connection_strings,
    ]
    if config.enable_otel:
        processors.append(_add_otel_trace_context)

    if config.json_output:
        return [
            *processors,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.dict_tracebacks,
            structlog.processors.JSONRenderer(),
        ]
    return [
        *processors,
        structlog.processors.TimeStamper(fmt="%Y-%m-%d %H:%M:%S", utc=False),
        structlog.processors.format_exc_info,
        structlog.dev.ConsoleRenderer(),
    ]


def _build_handler(config: LoggingConfig) -> logging.Handler:
    handler: logging.Handler
    if config.file_path:
        log_path = Path(config.file_path)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(
            filename=log_path,
            maxBytes=config.max_bytes,
            backupCount=config.backup_count,
            encoding="utf-8",
        )
    else:
        handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(config.level)
    handler.setFormatter(logging.Formatter("%(message)s"))
    return handler


@lru_cache(maxsize=1)
def _default_config() -> LoggingConfig:
    return LoggingConfig()


def configure_logging(config: LoggingConfig | None = None) -> None:
    """Configure structlog and the stdlib root logger for the whole process."""
    config = config if config is not None else _default_config()
    structlog.configure(
        processors=build_processors(config),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root = logging.getLogger()
    root.handlers = [_build_handler(config)]
    root.setLevel(config.level)
    for name, level in config.library_log_levels.items():
        logging.getLogger(name).setLevel(level)

    structlog.contextvars.bind_contextvars(service=config.service_name)


def get_logger(name: str | None = None) -> BoundLogger:
    return cast(BoundLogger, structlog.get_logger(name))


def bind_context(**kwargs: str | float | bool | None) -> None:
    """Attach context, e.g. ``node_id`` or ``formation``, to every later event of this task."""
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()
