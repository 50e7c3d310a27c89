# src/pesterbridge/cli/main.py

"""
The `pesterbridge` command group.

Options given on the group (logging, config file) are stored on the click
context and apply to every subcommand unless the subcommand repeats them.
"""

from pathlib import Path

import click
import structlog

from pesterbridge import __version__
from pesterbridge.cli.config_cmds import config_cli
from pesterbridge.cli.pester_cmds import discover_cli, run_cli
from pesterbridge.cli.utils import config_option, logging_options, setup_logging_from_context
from pesterbridge.telemetry import StructLogger

log: StructLogger = structlog.get_logger("cli.main")


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(__version__, "-V", "--version", package_name="pesterbridge")
@config_option
@logging_options
@click.pass_context
def cli(
    ctx: click.Context,
    config_path: Path | None,
    log_level: str | None,
    log_file: str | None,
    json_logs: bool | None,
):
    """
    Discover and run Pester tests through a long-lived PowerShell process.

    Precedence: command options > group options > environment > config file > defaults.
    """
    ctx.ensure_object(dict)
    ctx.obj.update(
        CONFIG_PATH=config_path,
        LOG_LEVEL=log_level,
        LOG_FILE=log_file,
        JSON_LOGS=bool(json_logs),
    )
    # Until a subcommand has read the config file
    setup_logging_from_context(ctx)
    log.debug("pesterbridge started", subcommand=ctx.invoked_subcommand, config_path=str(config_path))


cli.add_command(config_cli)
cli.add_command(discover_cli)
cli.add_command(run_cli)

# 🖥️⚙️
