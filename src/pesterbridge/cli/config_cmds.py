# src/pesterbridge/cli/config_cmds.py

from pathlib import Path

import click
import structlog
from rich.pretty import pretty_repr

from pesterbridge.cli.utils import config_option, load_command_config, logging_options
from pesterbridge.telemetry import StructLogger

log: StructLogger = structlog.get_logger("cli.config")


@click.group(name="config")
def config_cli():
    """Commands for inspecting and validating configuration."""
    pass


@config_cli.command(name="show")
@config_option
@logging_options
@click.pass_context
def show_config(ctx: click.Context, config_path: Path | None, **kwargs):
    """Load, validate, and display the configuration."""
    config = load_command_config(ctx, config_path, **kwargs)

    # Echo the rich-formatted string so it can be captured in tests
    click.echo(pretty_repr(config, expand_all=True))

    script = config.pester.interface_script
    if script is None:
        click.echo("Warning: no Pester interface script configured; discover and run will fail.", err=True)
    elif not script.is_file():
        click.echo(f"Warning: interface script '{script}' does not exist.", err=True)
    else:
        log.debug("Interface script found", path=str(script))

# 🔼⚙️
