# src/pesterbridge/cli/utils.py

import asyncio
import logging
from collections.abc import Coroutine
from pathlib import Path
from typing import Any

import click
import structlog

from pesterbridge.config import BridgeConfig, load_config
from pesterbridge.exceptions import ConfigurationError
from pesterbridge.telemetry.logger import setup_logging as core_setup_logging

log = structlog.get_logger("cli.utils")

LOG_LEVEL_CHOICES = click.Choice(list(logging._nameToLevel.keys()), case_sensitive=False)
# Matches the default test file glob of the Pester editor integration.
TEST_FILE_PATTERN = "*.[tT]ests.[pP][sS]1"


def logging_options(f):
    """Decorator to add logging options to any command."""
    f = click.option(
        "-l",
        "--log-level",
        type=LOG_LEVEL_CHOICES,
        default=None,
        envvar="PESTERBRIDGE_LOG_LEVEL",
        help="Set the logging level (overrides config file).",
    )(f)
    f = click.option(
        "--log-file",
        type=click.Path(dir_okay=False, writable=True, resolve_path=True),
        default=None,
        envvar="PESTERBRIDGE_LOG_FILE",
        help="Also write JSON logs to this file.",
    )(f)
    f = click.option(
        "--json-logs",
        is_flag=True,
        default=None,
        envvar="PESTERBRIDGE_JSON_LOGS",
        help="Render console logs as JSON.",
    )(f)
    return f


def config_option(f):
    """Decorator adding the -c/--config-path option."""
    return click.option(
        "-c",
        "--config-path",
        type=click.Path(exists=True, file_okay=True, dir_okay=False, readable=True, path_type=Path),
        default=None,
        envvar="PESTERBRIDGE_CONF",
        show_envvar=True,
        help="Path to a pesterbridge TOML configuration file.",
    )(f)


def setup_logging_from_context(
    ctx: click.Context,
    local_log_level: str | None = None,
    local_log_file: str | None = None,
    local_json_logs: bool | None = None,
    default_log_level: str = "WARNING",
    headless_mode: bool = True,
) -> None:
    """
    Configures logging from the options stored on the group context.

    Options passed to the subcommand itself win over the group's.
    """
    obj = ctx.obj or {}
    log_level_str = local_log_level or obj.get("LOG_LEVEL") or default_log_level
    log_file_path = local_log_file or obj.get("LOG_FILE")
    use_json_logs = local_json_logs if local_json_logs is not None else obj.get("JSON_LOGS", False)

    numeric_level = logging.getLevelName(log_level_str.upper())
    if not isinstance(numeric_level, int):
        numeric_level = logging.WARNING

    core_setup_logging(
        level=numeric_level,
        json_logs=use_json_logs,
        log_file=log_file_path,
        headless_mode=headless_mode,
    )


def load_command_config(ctx: click.Context, config_path: Path | None, **logging_kwargs: Any) -> BridgeConfig:
    """
    Loads the configuration for a subcommand, then configures logging with
    the file's [global].log_level as the default level.

    Exits with status 1 when the configuration is invalid.
    """
    config_path = config_path or (ctx.obj or {}).get("CONFIG_PATH")
    local = {
        "local_log_level": logging_kwargs.get("log_level"),
        "local_log_file": logging_kwargs.get("log_file"),
        "local_json_logs": logging_kwargs.get("json_logs"),
    }
    try:
        config = load_config(config_path)
    except ConfigurationError as e:
        setup_logging_from_context(ctx, **local)
        log.error("Failed to load or validate configuration", error=str(e))
        click.echo(f"Error: Configuration problem in '{config_path or 'environment'}':\n{e}", err=True)
        ctx.exit(1)
    setup_logging_from_context(ctx, default_log_level=config.global_config.log_level, **local)
    log.debug("Configuration ready", config_path=str(config_path), log_level=config.global_config.log_level)
    return config


def collect_test_files(paths: tuple[Path, ...]) -> list[Path]:
    """Expands directories into the Pester test files beneath them."""
    files: dict[Path, None] = {}
    for path in paths:
        if path.is_dir():
            for found in sorted(path.rglob(TEST_FILE_PATTERN)):
                files.setdefault(found.resolve())
        else:
            files.setdefault(path.resolve())
    return list(files)


def run_async(coro: Coroutine[Any, Any, int]) -> int:
    """
    Runs a command coroutine with asyncio.run() and maps interruption and
    unexpected errors to exit codes.
    """
    try:
        return asyncio.run(coro)
    except KeyboardInterrupt:
        log.warning("Interrupted by KeyboardInterrupt (CTRL-C).")
        return 130
    except Exception:
        log.critical("Command exited with an unhandled exception.", exc_info=True)
        return 1

# ⚙️🛠️
