#
# src/pesterbridge/controller.py
#
"""
Top-level owner of the PowerShell process, the side channel and the test tree.

The controller is what an editor integration talks to: it exposes the file
surface a workspace watcher drives, file-level discovery and test runs. All
state hangs off one instance; nothing is global.
"""

import asyncio
import os
from collections.abc import Callable, Iterable
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import structlog
from attrs import define, field

from pesterbridge.config.models import BridgeConfig
from pesterbridge.discovery import DiscoveryQueue
from pesterbridge.exceptions import (
    ConfigurationError,
    InvocationError,
    OrphanedTestRecord,
    PesterBridgeError,
    RecordDecodeError,
)
from pesterbridge.pipe_server import NamedPipeServer
from pesterbridge.powershell import PowerShell, PSOutput, quote
from pesterbridge.reconciler import TestTreeReconciler
from pesterbridge.run import RunRequest, TestMessage, TestRun
from pesterbridge.telemetry import StructLogger
from pesterbridge.tree import DiscoveryStatus, TestNode, TestTree

log: StructLogger = structlog.get_logger("controller")

STDOUT_PIPE_NAME = "stdout"


@define(frozen=True, slots=True)
class ControllerContext:
    """Configuration and logger shared by everything a controller owns."""

    config: BridgeConfig
    log: StructLogger = field(repr=False)
    controller_id: str = field(default="Pester")


@define(frozen=True, slots=True)
class HostCommandResult:
    """What an interactive host reports after running a command."""

    terminal_output: str = field(default="")
    exit_code: int | None = field(default=None)


@runtime_checkable
class HostLauncher(Protocol):
    """
    A separately launched PowerShell host, such as an editor's integrated
    console that can attach a debugger.
    """

    async def run_command(self, script_path: str, args: list[str], debug: bool) -> HostCommandResult:
        """
        Runs a script in the host and returns once it has finished.

        Args:
            script_path: The interface script to run.
            args: Arguments for the script, already quoted.
            debug: Whether to run under the debugger.
        """
        ...

    async def get_exe_path(self) -> str | None:
        """The PowerShell executable the host runs, so stdio runs can match it."""
        ...


def build_script_args(
    targets: Iterable[TestNode],
    *,
    discovery: bool,
    pipe_name: str,
    verbosity: str | None = None,
) -> list[str]:
    """
    Arguments for the Pester interface script.

    Targets are passed as quoted paths; a node with a start line is addressed
    as path:line using 1-based lines.
    """
    args: list[str] = []
    if discovery:
        args.append("-Discovery")
    args.extend(["-PipeName", pipe_name])
    for node in targets:
        path = node.file or node.id
        target = path if node.is_file or node.start_line is None else f"{path}:{node.start_line + 1}"
        args.append(quote(target))
    if verbosity and verbosity != "FromPreference":
        args.extend(["-Verbosity", verbosity])
    return args


class PesterTestController:
    """Discovers and runs Pester tests for the files registered with it."""

    def __init__(
        self,
        config: BridgeConfig | None = None,
        *,
        powershell: PowerShell | None = None,
        pipe_server: NamedPipeServer | None = None,
        launcher: HostLauncher | None = None,
        logger: StructLogger | None = None,
        controller_id: str = "Pester",
        cwd: Path | None = None,
    ):
        config = config or BridgeConfig()
        self.context = ControllerContext(
            config=config,
            log=(logger or log).bind(controller_id=controller_id),
            controller_id=controller_id,
        )
        self.tree = TestTree()
        self.reconciler = TestTreeReconciler(
            self.tree,
            hide_skipped_because_messages=config.pester.hide_skipped_because_messages,
            logger=self.log,
        )
        self.powershell = powershell or PowerShell.from_config(config.powershell, logger=self.log, cwd=cwd)
        self.pipe_server = pipe_server or NamedPipeServer(
            config.pester.pipe_name or f"{controller_id}TestController-{os.getpid()}",
            read_limit=config.powershell.read_limit,
            logger=self.log,
        )
        self.launcher = launcher
        self.discovery_queue = DiscoveryQueue(
            self._discover, delay=config.pester.discovery_debounce, logger=self.log
        )
        self._initialized = False
        self._init_lock = asyncio.Lock()
        self._resolving: dict[str, asyncio.Future[None]] = {}

    @property
    def config(self) -> BridgeConfig:
        return self.context.config

    @property
    def log(self) -> StructLogger:
        return self.context.log

    @property
    def interface_script(self) -> Path:
        script = self.config.pester.interface_script
        if script is None:
            raise ConfigurationError(
                "No Pester interface script configured. Set [pester].interface_script "
                "or PESTERBRIDGE_INTERFACE_SCRIPT."
            )
        return script

    async def initialize(self) -> None:
        """Starts the side-channel listener. Later calls do nothing."""
        async with self._init_lock:
            if self._initialized:
                return
            await self.pipe_server.listen()
            self._initialized = True
            self.log.debug("Controller initialized", pipe=self.pipe_server.path)

    # --- File surface ---
    def add_test_file(self, path: str | Path) -> TestNode:
        node = self.tree.add_file(Path(path).expanduser().resolve())
        self.log.info("Detected Pester file", file=node.id)
        return node

    def remove_test_file(self, path: str | Path) -> bool:
        file_id = str(Path(path).expanduser().resolve())
        removed = self.tree.remove(file_id)
        if removed is not None:
            self.log.info("Removed Pester file", file=file_id)
        return removed is not None

    # --- Discovery ---
    async def resolve(self, node_id: str | None = None, force: bool = False) -> None:
        """
        Discovers the tests in a file.

        The root (node_id=None) has nothing to discover; files are registered
        through add_test_file. Requests arriving close together share one
        PowerShell invocation, and a request for a file that is already being
        discovered waits for that discovery.
        """
        if not self._initialized:
            await self.initialize()
        if node_id is None:
            return
        node = self.tree.get(node_id)
        if node is None:
            raise KeyError(node_id)
        if not node.is_file:
            self.log.warning("Only files can be resolved, ignoring request", node_id=node_id)
            return
        in_flight = self._resolving.get(node.id)
        if in_flight is not None and not force:
            self.log.debug("File is already being discovered, waiting for it", file=node.label)
            await asyncio.shield(in_flight)
            return
        if not force and node.discovery_status is DiscoveryStatus.DISCOVERED:
            self.log.info("Resolve requested but the file is already resolved", file=node.label)
            return
        task = asyncio.ensure_future(self.discovery_queue.enqueue(node.id))
        self._resolving[node.id] = task
        node.busy = True
        try:
            await task
        finally:
            if self._resolving.get(node.id) is task:
                del self._resolving[node.id]
            node.busy = False

    async def _discover(self, file_ids: list[str]) -> None:
        batch = self.reconciler.begin_discovery(file_ids)
        targets = [node for node in map(self.tree.get, batch.file_ids) if node is not None]
        if not targets:
            self.reconciler.end_discovery(batch)
            return
        failed = True
        try:
            await self._start_pester_interface(
                targets, lambda obj: self.reconciler.apply_discovery(batch, obj), discovery=True
            )
            failed = False
        except PesterBridgeError as e:
            # Shown on the files themselves rather than raised at the user
            for node in targets:
                node.error = str(e)
            raise
        finally:
            self.reconciler.end_discovery(batch, failed=failed)

    # --- Runs ---
    def get_run_request_items(self, request: RunRequest) -> list[str]:
        """
        Every node a request covers: the included nodes and their descendants.

        Without an include list all registered files are covered. Excluded
        nodes and their descendants are left out, unless explicitly included.
        """
        include = list(request.include) if request.include is not None else [n.id for n in self.tree.files()]
        exclude = self._expand(request.exclude)
        if request.exclude:
            self.log.warning(
                "Hiding tests is not supported. Excluded tests still run but their results are suppressed",
                excluded=len(request.exclude),
            )
        items: dict[str, None] = {}
        for node_id in include:
            if node_id not in self.tree:
                self.log.warning("Run requested for an unknown test item", node_id=node_id)
                continue
            items.setdefault(node_id)
            for descendant in self.tree.iter_descendants(node_id):
                if descendant.id not in exclude:
                    items.setdefault(descendant.id)
        return list(items)

    def _expand(self, node_ids: Iterable[str]) -> set[str]:
        expanded: set[str] = set()
        for node_id in node_ids:
            expanded.add(node_id)
            expanded.update(node.id for node in self.tree.iter_descendants(node_id))
        return expanded

    async def run(self, request: RunRequest | None = None) -> TestRun:
        """
        Runs the requested tests and returns their per-run results.

        Undiscovered files are discovered first. Invocation failures are
        reported on the run as errored items; only failures to start
        PowerShell at all are raised.
        """
        if not self._initialized:
            await self.initialize()
        request = request or RunRequest()
        run = TestRun(request, logger=self.log)
        exclude = self._expand(request.exclude)

        items = self.get_run_request_items(request)
        for node_id in items:
            run.enqueued(node_id)

        undiscovered = [
            node_id
            for node_id in items
            if (node := self.tree.get(node_id)) is not None
            and node.is_file
            and node.discovery_status is not DiscoveryStatus.DISCOVERED
        ]
        if undiscovered:
            self.log.debug("Run invoked on undiscovered files, discovering first", files=len(undiscovered))
            results = await asyncio.gather(*(self.resolve(file_id) for file_id in undiscovered), return_exceptions=True)
            for file_id, result in zip(undiscovered, results, strict=True):
                if isinstance(result, BaseException):
                    if not isinstance(result, InvocationError | OrphanedTestRecord | RecordDecodeError):
                        raise result
                    self.log.warning("Discovery before run failed", file=file_id, error=str(result))
            # Newly discovered children join the run
            for node_id in self.get_run_request_items(request):
                if run.state_of(node_id) is None:
                    run.enqueued(node_id)
                    items.append(node_id)

        for node_id in items:
            run.started(node_id)

        include = request.include if request.include is not None else [n.id for n in self.tree.files()]
        targets = [node for node in map(self.tree.get, include) if node is not None]
        self.log.info("Starting test run", targets=len(targets), items=len(items), emoji_key="run")

        def on_result(obj: Any) -> None:
            try:
                self.reconciler.apply_result(run, obj, exclude)
            except RecordDecodeError as e:
                self.log.error("Discarding malformed result record", error=str(e))

        try:
            output = await self._start_pester_interface(
                targets, on_result, discovery=False, debug=request.debug
            )
            if output:
                run.append_output(output)
        except InvocationError as e:
            self.log.error("Test run failed", error=str(e))
            message = TestMessage(str(e))
            for node_id in items:
                state = run.state_of(node_id)
                if state is None or not state.is_final:
                    run.errored(node_id, message)
        finally:
            run.end()
        return run

    # --- Invocation ---
    async def _start_pester_interface(
        self,
        targets: list[TestNode],
        handler: Callable[[Any], None],
        *,
        discovery: bool,
        debug: bool = False,
    ) -> str | None:
        """
        Runs the interface script and passes every object it returns to handler.

        Debug runs and configured interactive hosts go through the launcher and
        the named pipe. Everything else runs on the supervised process and
        reads objects from its stdout. Returns terminal output when there is any.
        """
        use_host = debug or self.config.pester.use_interactive_host
        verbosity = self.config.pester.debug_output_verbosity if debug else self.config.pester.output_verbosity
        script_path = self.interface_script
        if use_host:
            if self.launcher is None:
                raise ConfigurationError("Debug and interactive runs need a host launcher")
            args = build_script_args(
                targets, discovery=discovery, pipe_name=self.pipe_server.name, verbosity=verbosity
            )
            return await self._run_in_host(str(script_path), args, handler, debug)

        args = build_script_args(targets, discovery=discovery, pipe_name=STDOUT_PIPE_NAME, verbosity=verbosity)
        exe_path = await self.launcher.get_exe_path() if self.launcher is not None else None
        if exe_path and exe_path != self.powershell.exe_path:
            self.log.info("Starting PowerShell testing instance", exe_path=exe_path)
        output = PSOutput()
        output.success.subscribe(handler)
        output.warning.subscribe(lambda item: self.log.warning("PowerShell warning", message=str(item)))
        output.error.subscribe(lambda item: self.log.error("PowerShell error", message=str(item)))
        output.information.subscribe(lambda item: self.log.info("PowerShell information", message=str(item)))
        output.verbose.subscribe(lambda item: self.log.debug("PowerShell verbose", message=str(item)))
        script = f"& {quote(str(script_path))} {' '.join(args)}"
        await self.powershell.run(script, output, exe_path=exe_path)
        return None

    async def _run_in_host(
        self, script_path: str, args: list[str], handler: Callable[[Any], None], debug: bool
    ) -> str:
        assert self.launcher is not None
        await self.pipe_server.listen()
        errors: list[Exception] = []

        def guarded(obj: Any) -> None:
            if errors:
                return
            try:
                handler(obj)
            except PesterBridgeError as e:
                errors.append(e)

        subscription = self.pipe_server.subscribe(guarded)
        try:
            result = await self.launcher.run_command(script_path, args, debug)
        finally:
            subscription.dispose()
        if errors:
            raise errors[0]
        self.log.debug("Interactive host command finished", exit_code=result.exit_code)
        return result.terminal_output

    # --- Teardown ---
    def dispose(self) -> None:
        self.discovery_queue.cancel()
        self.powershell.dispose()
        self.pipe_server.dispose()

    async def aclose(self) -> None:
        self.discovery_queue.cancel()
        await self.powershell.aclose()
        self.pipe_server.dispose()


# 🔼⚙️
