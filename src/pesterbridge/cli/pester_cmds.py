# src/pesterbridge/cli/pester_cmds.py

"""
The discover and run commands: one-shot use of the controller from a shell.
"""

import asyncio
from collections import deque
from pathlib import Path

import attrs
import click
import structlog
from rich.console import Console
from rich.markup import escape
from rich.table import Table
from rich.tree import Tree

from pesterbridge.cli.utils import (
    collect_test_files,
    config_option,
    load_command_config,
    logging_options,
    run_async,
)
from pesterbridge.config import BridgeConfig
from pesterbridge.controller import PesterTestController
from pesterbridge.exceptions import PesterBridgeError
from pesterbridge.run import RunRequest, TestRun, TestState
from pesterbridge.telemetry import StructLogger
from pesterbridge.tree import NodeKind, TestNode, TestTree

log: StructLogger = structlog.get_logger("cli.pester")

KIND_EMOJI = {NodeKind.FILE: "📄", NodeKind.BLOCK: "📦", NodeKind.TEST: "🧪"}
STATE_STYLE = {
    TestState.PASSED: ("✅ passed", "green"),
    TestState.FAILED: ("❌ failed", "red"),
    TestState.ERRORED: ("💥 errored", "red"),
    TestState.SKIPPED: ("⏭️ skipped", "yellow"),
    TestState.STARTED: ("⏳ no result", "dim"),
    TestState.ENQUEUED: ("⏳ not started", "dim"),
}


# --- Rendering ---
def render_tree(tree: TestTree) -> Tree:
    """Builds a rich tree of every discovered node."""
    root = Tree("[bold]Pester tests[/]")
    queue: deque[tuple[Tree, TestNode]] = deque((root, node) for node in tree.roots())
    while queue:
        branch, node = queue.popleft()
        label = f"{KIND_EMOJI[node.kind]} {escape(node.label)}"
        if node.tags:
            label += f" [dim]({escape(', '.join(node.tags))})[/]"
        if node.error:
            label += f"\n[red]{escape(node.error)}[/]"
        child_branch = branch.add(label)
        queue.extend((child_branch, child) for child in tree.children(node.id))
    return root


def render_results(tree: TestTree, run: TestRun) -> Table:
    """Builds a rich table with one row per test result."""
    table = Table(title="Pester results", show_lines=False)
    table.add_column("Test")
    table.add_column("Result")
    table.add_column("Duration (ms)", justify="right")
    table.add_column("Message", overflow="fold")
    for node in tree.walk():
        outcome = run.outcomes.get(node.id)
        if outcome is None or node.kind is NodeKind.FILE:
            continue
        if node.kind is NodeKind.BLOCK and outcome.state is not TestState.ERRORED:
            continue
        text, style = STATE_STYLE[outcome.state]
        duration = f"{outcome.duration:.0f}" if outcome.duration is not None else ""
        message = outcome.messages[-1] if outcome.messages else None
        detail = ""
        if message is not None:
            detail = message.message
            if message.is_diff:
                detail += f"\nExpected: {message.expected}\nActual:   {message.actual}"
            if message.location is not None:
                detail += f"\nat {message.location.file}:{message.location.line}"
        table.add_row(escape(node.label), f"[{style}]{text}[/]", duration, escape(detail))
    return table


def summarize(run: TestRun) -> str:
    counts = run.summary()
    parts = [f"{counts[state]} {state.name.lower()}" for state in STATE_STYLE if counts[state]]
    if run.inconsistencies:
        parts.append(f"{len(run.inconsistencies)} untracked")
    return ", ".join(parts) or "no results"


# --- Command helpers ---
def _load(
    ctx: click.Context,
    config_path: Path | None,
    interface_script: Path | None,
    pwsh: str | None,
    logging_kwargs: dict,
) -> BridgeConfig:
    config = load_command_config(ctx, config_path, **logging_kwargs)
    if interface_script is not None:
        config = attrs.evolve(config, pester=attrs.evolve(config.pester, interface_script=interface_script))
    if pwsh is not None:
        config = attrs.evolve(config, powershell=attrs.evolve(config.powershell, exe_path=pwsh))
    return config


async def _discover_files(controller: PesterTestController, files: list[Path]) -> list[PesterBridgeError]:
    nodes = [controller.add_test_file(path) for path in files]
    results = await asyncio.gather(*(controller.resolve(node.id, force=True) for node in nodes), return_exceptions=True)
    errors: list[PesterBridgeError] = []
    for result in results:
        if isinstance(result, PesterBridgeError):
            errors.append(result)
        elif isinstance(result, BaseException):
            raise result
    # Files in one batch fail together; report each distinct error once
    unique = list({str(e): e for e in errors}.values())
    return unique


async def _discover_command(config: BridgeConfig, files: list[Path]) -> int:
    console = Console()
    controller = PesterTestController(config, cwd=Path.cwd())
    try:
        errors = await _discover_files(controller, files)
        console.print(render_tree(controller.tree))
    finally:
        await controller.aclose()
    for error in errors:
        click.echo(f"Error: {error}", err=True)
    has_errors = bool(errors) or any(node.error for node in controller.tree.walk())
    return 1 if has_errors else 0


async def _run_command(config: BridgeConfig, files: list[Path]) -> int:
    console = Console()
    controller = PesterTestController(config, cwd=Path.cwd())
    try:
        for path in files:
            controller.add_test_file(path)
        run = await controller.run(RunRequest())
    except PesterBridgeError as e:
        click.echo(f"Error: {e}", err=True)
        return 1
    finally:
        await controller.aclose()
    console.print(render_results(controller.tree, run))
    console.print(summarize(run))
    for line in run.output:
        console.print(line)
    return 1 if run.has_failures else 0


def _shared_options(f):
    f = click.option(
        "--pwsh",
        default=None,
        help="PowerShell executable to use (overrides [powershell].exe_path).",
    )(f)
    f = click.option(
        "-s",
        "--interface-script",
        type=click.Path(exists=True, dir_okay=False, path_type=Path),
        default=None,
        help="Pester interface script (overrides [pester].interface_script).",
    )(f)
    f = config_option(f)
    return f


# --- Commands ---
@click.command(name="discover")
@click.argument("paths", nargs=-1, required=True, type=click.Path(exists=True, path_type=Path))
@_shared_options
@logging_options
@click.pass_context
def discover_cli(
    ctx: click.Context,
    paths: tuple[Path, ...],
    config_path: Path | None,
    interface_script: Path | None,
    pwsh: str | None,
    **kwargs,
):
    """Discover the Pester tests in PATHS and print them as a tree."""
    config = _load(ctx, config_path, interface_script, pwsh, kwargs)
    files = collect_test_files(paths)
    if not files:
        click.echo("No Pester test files found.", err=True)
        ctx.exit(1)
    log.info("Discovering tests", files=len(files), emoji_key="discover")
    exit_code = run_async(_discover_command(config, files))
    ctx.exit(exit_code)


@click.command(name="run")
@click.argument("paths", nargs=-1, required=True, type=click.Path(exists=True, path_type=Path))
@_shared_options
@logging_options
@click.pass_context
def run_cli(
    ctx: click.Context,
    paths: tuple[Path, ...],
    config_path: Path | None,
    interface_script: Path | None,
    pwsh: str | None,
    **kwargs,
):
    """Run the Pester tests in PATHS and print the results. Exits 1 on failures."""
    config = _load(ctx, config_path, interface_script, pwsh, kwargs)
    files = collect_test_files(paths)
    if not files:
        click.echo("No Pester test files found.", err=True)
        ctx.exit(1)
    log.info("Running tests", files=len(files), emoji_key="run")
    exit_code = run_async(_run_command(config, files))
    ctx.exit(exit_code)

# 🔼⚙️
