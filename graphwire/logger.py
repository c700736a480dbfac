"""structlog setup for the driver.

Modules log through ``logger = get_logger(__name__)``. Nothing is configured
on import; applications call `configure_logging` once at startup, otherwise
structlog's defaults apply.

Environment variables (prefix ``GRAPHWIRE_LOG_``)::

    GRAPHWIRE_LOG_LEVEL=DEBUG
    GRAPHWIRE_LOG_JSON_OUTPUT=true
    GRAPHWIRE_LOG_FILE_PATH=/var/log/app/graphwire.log
"""

from __future__ import annotations

import logging
import sys
from contextlib import AbstractContextManager
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import TYPE_CHECKING, Literal, cast

import structlog
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from structlog.processors import CallsiteParameter

if TYPE_CHECKING:
    from structlog.types import Processor

type BoundLogger = structlog.stdlib.BoundLogger
type LogLevel = Literal["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG", "NOTSET"]


class LoggingConfig(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="GRAPHWIRE_LOG_",
        extra="forbid",
        frozen=True,
    )

    level: LogLevel = Field(default="INFO")
    json_output: bool = Field(default=False)
    service_name: str = Field(default="graphwire")
    file_path: str | None = Field(default=None)
    max_bytes: int = Field(default=50_000_000, ge=1024)
    backup_count: int = Field(default=10, ge=0)
    # Per-connection debug events are emitted for every request.
    library_log_levels: dict[str, LogLevel] = Field(
        default_factory=lambda: {"graphwire.infrastructure.bolt.connection": "INFO"}
    )


def _build_processors(json_output: bool) -> list[Processor]:
    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.CallsiteParameterAdder(
            parameters=[CallsiteParameter.MODULE, CallsiteParameter.LINENO],
        ),
        structlog.processors.TimeStamper(fmt="iso", utc=json_output),
        structlog.processors.format_exc_info,
    ]
    if json_output:
        processors += [structlog.processors.dict_tracebacks, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer())
    return processors


def _build_handler(config: LoggingConfig) -> logging.Handler:
    handler: logging.Handler
    if config.file_path:
        path = Path(config.file_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(
            filename=str(path),
            maxBytes=config.max_bytes,
            backupCount=config.backup_count,
            encoding="utf-8",
        )
    else:
        handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(config.level)
    handler.setFormatter(logging.Formatter("%(message)s"))
    return handler


def configure_logging(config: LoggingConfig | None = None) -> BoundLogger:
    """Route structlog through stdlib logging with one stream or rotating file handler."""
    config = config or LoggingConfig()

    structlog.configure(
        processors=_build_processors(config.json_output),
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
    return get_logger("graphwire")


def get_logger(name: str | None = None) -> BoundLogger:
    return cast(BoundLogger, structlog.get_logger(name))


def bound_context(**kwargs: str | float | bool | None) -> AbstractContextManager[None]:
    """Attach key/values to every event logged by the current task inside the block."""
    return structlog.contextvars.bound_contextvars(**kwargs)
