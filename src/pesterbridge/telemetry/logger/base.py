# src/pesterbridge/telemetry/logger/base.py

"""
structlog configuration. Everything logs through the stdlib root logger so
library records and bridge events share one set of handlers.
"""

import logging
import sys

import structlog
from structlog.typing import FilteringBoundLogger

from pesterbridge.telemetry.logger.processors import (
    add_emoji_processor,
    remove_extra_keys_processor,
)

BASE_LOGGER_NAME = "pesterbridge"

# Chatty at DEBUG about subprocess transports; only interesting when something breaks.
QUIET_LOGGERS = ("asyncio",)


def _console_renderer(json_logs: bool, headless_mode: bool) -> structlog.types.Processor:
    if json_logs:
        return structlog.processors.JSONRenderer(sort_keys=True)
    stream = sys.stderr if headless_mode else sys.stdout
    return structlog.dev.ConsoleRenderer(colors=stream.isatty())


def _clear_handlers(root_logger: logging.Logger) -> None:
    for handler in list(root_logger.handlers):
        handler.close()
        root_logger.removeHandler(handler)


def setup_logging(
    level: int = logging.INFO,
    json_logs: bool = False,
    log_file: str | None = None,
    file_only: bool = False,
    headless_mode: bool = False,
) -> None:
    """
    Configures structlog for the whole process.

    Args:
        level: Root log level.
        json_logs: Render console logs as JSON lines.
        log_file: Also write JSON logs to this file.
        file_only: No console handler, only the file.
        headless_mode: Console logs go to stderr so stdout stays free for
            command output such as result tables.
    """
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            add_emoji_processor,
            remove_extra_keys_processor,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    _clear_handlers(root_logger)
    root_logger.setLevel(level)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    slog = structlog.get_logger(BASE_LOGGER_NAME)

    if not file_only:
        console_handler = logging.StreamHandler(sys.stderr if headless_mode else sys.stdout)
        console_handler.setFormatter(
            structlog.stdlib.ProcessorFormatter(
                processors=[
                    structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                    _console_renderer(json_logs, headless_mode),
                ]
            )
        )
        root_logger.addHandler(console_handler)

    if log_file:
        try:
            file_handler = logging.FileHandler(log_file, encoding="utf-8")
        except OSError as e:
            slog.error("Failed to open log file", log_file=log_file, error=str(e))
        else:
            file_handler.setFormatter(
                structlog.stdlib.ProcessorFormatter(
                    processors=[
                        structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                        structlog.processors.dict_tracebacks,
                        structlog.processors.JSONRenderer(sort_keys=True),
                    ]
                )
            )
            file_handler.setLevel(level)
            root_logger.addHandler(file_handler)

    slog.debug(
        "Logging configured",
        log_level=logging.getLevelName(level),
        json_console_format=json_logs,
        console=None if file_only else ("stderr" if headless_mode else "stdout"),
        log_file=log_file,
    )


StructLogger = FilteringBoundLogger

# 🔼⚙️
