#
# src/pesterbridge/powershell/invocation.py
#
"""
Serializes script invocations against the supervised PowerShell process.
"""

import asyncio
import json
import uuid
from enum import Enum, auto
from pathlib import Path

import attrs
import structlog

from pesterbridge.config.models import PowerShellConfig
from pesterbridge.exceptions import DecodeError, InterpreterExited, TerminatingScriptError
from pesterbridge.powershell.process import ProcessHandle, ProcessSupervisor
from pesterbridge.powershell.streams import (
    INVOCATION_ID_KEY,
    PSOutput,
    PSOutputUnified,
    drain_until_sentinel,
    iter_lines,
    make_sentinel,
    pipe_output,
)
from pesterbridge.telemetry import StructLogger

log: StructLogger = structlog.get_logger("powershell.invocation")

RUNNER_SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "powershellRunner.ps1"


def quote(value: str) -> str:
    """Quotes a string as a PowerShell single-quoted literal."""
    return "'" + value.replace("'", "''") + "'"


def format_invocation(runner_script: Path | str, script: str, invocation_id: str) -> str:
    """The single stdin line that runs script through the runner wrapper."""
    return f"& {quote(str(runner_script))} {{{script}}} {quote(invocation_id)}\n"


class CoordinatorState(Enum):
    IDLE = auto()
    RUNNING = auto()


@attrs.define(slots=True)
class Invocation:
    """One logical request to run a script."""

    script: str
    output: PSOutput
    id: str = attrs.field(factory=lambda: uuid.uuid4().hex)
    cancelled: bool = attrs.field(default=False)


class PowerShell:
    """
    Runs scripts on one long-lived PowerShell process, one at a time.

    Callers queue in FIFO order. Each run resolves when the runner script
    writes the finished sentinel for that invocation, or raises when the
    script reports a terminating error on stderr, whichever comes first.
    """

    def __init__(
        self,
        supervisor: ProcessSupervisor | None = None,
        *,
        runner_script: Path | str = RUNNER_SCRIPT,
        terminating_error_policy: str = "fail-invocation",
        drain_timeout: float = 5.0,
        logger: StructLogger | None = None,
    ):
        self._log = (logger or log).bind(component="powershell")
        self.supervisor = supervisor or ProcessSupervisor(logger=self._log)
        self.runner_script = runner_script
        self.terminating_error_policy = terminating_error_policy
        self.drain_timeout = drain_timeout
        self._lock = asyncio.Lock()
        self._current: Invocation | None = None

    @classmethod
    def from_config(
        cls, config: PowerShellConfig, logger: StructLogger | None = None, cwd: Path | None = None
    ) -> "PowerShell":
        supervisor = ProcessSupervisor(
            exe_path=config.exe_path,
            preferred_name=config.preferred_name,
            read_limit=config.read_limit,
            cwd=cwd,
            logger=logger,
        )
        return cls(
            supervisor,
            terminating_error_policy=config.terminating_error_policy,
            drain_timeout=config.drain_timeout,
            logger=logger,
        )

    @property
    def state(self) -> CoordinatorState:
        return CoordinatorState.RUNNING if self._current else CoordinatorState.IDLE

    @property
    def exe_path(self) -> str | None:
        handle = self.supervisor.handle
        return handle.exe_path if handle else None

    async def run(
        self,
        script: str,
        output: PSOutput | None = None,
        *,
        cancel_existing: bool = False,
        new_process: bool = False,
        exe_path: str | None = None,
    ) -> PSOutput:
        """
        Runs a script; result objects arrive on the output channels.

        Args:
            script: PowerShell script text, wrapped in a script block.
            output: Channels to receive objects. A fresh PSOutput by default.
            cancel_existing: Cancel the in-flight invocation instead of waiting for it.
            new_process: Replace the PowerShell process before running.
            exe_path: Executable to run under; a different one replaces the process.

        Returns:
            The output channels, all closed.
        """
        output = output if output is not None else PSOutput()
        if cancel_existing:
            self.cancel()

        invocation = Invocation(script=script, output=output)
        async with self._lock:
            if new_process:
                self.supervisor.reset()
            try:
                handle = await self.supervisor.ensure(exe_path)
            except Exception:
                output.close()
                raise
            self._current = invocation
            try:
                await self._invoke(handle, invocation)
            finally:
                self._current = None
        return output

    async def exec(self, script: str, *, merge_streams: bool = False, cancel_existing: bool = False) -> list:
        """Runs a script and returns everything that arrived on the success stream."""
        output = PSOutputUnified() if merge_streams else PSOutput()
        await self.run(script, output, cancel_existing=cancel_existing)
        return output.success.items

    def cancel(self) -> bool:
        """
        Ends the in-flight invocation now.

        A synthetic sentinel is fed into the shared stdout so the invocation
        settles normally with what it received so far, then the process is
        killed. Returns False if nothing was running.
        """
        invocation = self._current
        if invocation is None:
            return False
        invocation.cancelled = True
        handle = self.supervisor.handle
        if handle is not None and handle.is_alive and not handle.stdout.at_eof():
            handle.stdout.feed_data(make_sentinel(invocation.id))
        self._log.info("Cancelling invocation", invocation_id=invocation.id)
        self.supervisor.reset()
        return True

    async def _invoke(self, handle: ProcessHandle, invocation: Invocation) -> None:
        inv_log = self._log.bind(invocation_id=invocation.id, pid=handle.pid)
        line = format_invocation(self.runner_script, invocation.script, invocation.id)
        inv_log.debug("Invoking script", script=invocation.script, emoji_key="invoke")
        try:
            handle.stdin.write(line.encode("utf-8"))
            await handle.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            if not invocation.cancelled:
                invocation.output.close()
                self._discard(handle)
                raise InterpreterExited("Failed to write to PowerShell process", invocation.id, e) from e

        pipeline = asyncio.create_task(pipe_output(handle.stdout, invocation.output, invocation.id))
        errors = asyncio.create_task(self._watch_errors(handle, invocation.id))
        try:
            done, _ = await asyncio.wait({pipeline, errors}, return_when=asyncio.FIRST_COMPLETED)
            if pipeline not in done and errors.result() is None:
                # stderr closed: the process is going away, stdout decides the outcome
                await asyncio.wait({pipeline})
        except asyncio.CancelledError:
            pipeline.cancel()
            errors.cancel()
            self._discard(handle)
            raise

        if pipeline.done():
            pipeline_error = pipeline.exception()
            reported_failure = pipeline_error is None and pipeline.result().get("failed") is True
            if reported_failure and not errors.done():
                # stdout and stderr are separate pipes, the error record may still be in flight
                await asyncio.wait({errors}, timeout=self.drain_timeout)
            error = errors.result() if errors.done() else None
            if not errors.done():
                # Only one reader may wait on a stream, free stderr for the next invocation
                errors.cancel()
                await asyncio.gather(errors, return_exceptions=True)
            if pipeline_error is None:
                if error is None and reported_failure:
                    error = TerminatingScriptError("terminating error reported without details", invocation.id)
                if error is not None:
                    await self._fail_terminating(handle, error, drained=True)
                inv_log.debug("Invocation finished", cancelled=invocation.cancelled)
                return
            if isinstance(pipeline_error, InterpreterExited):
                self._discard(handle)
                if invocation.cancelled:
                    inv_log.debug("Cancelled invocation ended with the process")
                    return
                inv_log.error("PowerShell process exited during invocation")
                raise pipeline_error
            inv_log.error("Invocation output could not be processed", error=str(pipeline_error))
            await self._drain(handle, invocation.id)
            raise pipeline_error

        # A terminating error won the race; the rest of this output is discarded
        pipeline.cancel()
        await asyncio.gather(pipeline, return_exceptions=True)
        await self._fail_terminating(handle, errors.result(), drained=False)

    async def _fail_terminating(self, handle: ProcessHandle, error: TerminatingScriptError, drained: bool) -> None:
        self._log.warning("Script reported a terminating error", error=str(error.error), invocation_id=error.invocation_id)
        if self.terminating_error_policy == "reset-process":
            self._discard(handle)
        elif not drained and error.invocation_id:
            await self._drain(handle, error.invocation_id)
        raise error

    async def _drain(self, handle: ProcessHandle, invocation_id: str) -> None:
        """Skips the rest of an invocation's output so the next one starts clean."""
        try:
            reached = await asyncio.wait_for(drain_until_sentinel(handle.stdout, invocation_id), self.drain_timeout)
        except TimeoutError:
            reached = False
        if not reached:
            self._log.warning("Could not drain invocation output, restarting PowerShell", invocation_id=invocation_id)
            self._discard(handle)

    def _discard(self, handle: ProcessHandle) -> None:
        if self.supervisor.handle is handle:
            self.supervisor.reset()
        else:
            handle.kill()

    async def _watch_errors(self, handle: ProcessHandle, invocation_id: str) -> TerminatingScriptError | None:
        """Returns the first terminating error for this invocation, or None at EOF."""
        lines = iter_lines(handle.stderr)
        while True:
            try:
                line = await anext(lines)
            except StopAsyncIteration:
                return None
            except DecodeError as e:
                return TerminatingScriptError(str(e), invocation_id)
            try:
                record = json.loads(line)
            except json.JSONDecodeError:
                record = line
            if isinstance(record, dict):
                record_id = record.get(INVOCATION_ID_KEY)
                if record_id is not None and record_id != invocation_id:
                    self._log.debug("Skipping stale error record", invocation_id=invocation_id, stale_id=record_id)
                    continue
                error = record.get("error", record)
            else:
                error = record
            return TerminatingScriptError(error, invocation_id)

    def dispose(self) -> None:
        self.cancel()
        self.supervisor.dispose()

    async def aclose(self) -> None:
        self.cancel()
        await self.supervisor.aclose()


# 🔼⚙️
