#
# src/pesterbridge/powershell/process.py
#
"""
Owns the single long-lived PowerShell process used for discovery and runs.
"""

import asyncio
import os
import shutil
import sys
from collections.abc import Sequence
from pathlib import Path

import attrs
import structlog

from pesterbridge.exceptions import NoInterpreterFound, SpawnFailure
from pesterbridge.telemetry import StructLogger

log: StructLogger = structlog.get_logger("powershell.process")

# -NoExit with "-Command -" keeps the host reading commands from stdin
# after each script finishes.
PWSH_ARGS = ("-NoProfile", "-NonInteractive", "-NoExit", "-Command", "-")
WINDOWS_DEFAULT = "powershell"
DEFAULT_READ_LIMIT = 16 * 1024 * 1024


def resolve_executable(hint: str | None = None, preferred: str = "pwsh") -> str:
    """
    Finds the PowerShell executable to launch.

    An explicit hint wins if it names an existing file or a command on PATH.
    Otherwise PATH is searched for the preferred name, and on Windows only,
    Windows PowerShell is used as the last resort.
    """
    if hint:
        if Path(hint).is_file():
            return str(Path(hint))
        found = shutil.which(hint)
        if found:
            return found
        log.warning("Requested PowerShell executable not found, searching PATH", hint=hint)

    found = shutil.which(preferred)
    if found:
        return found

    if sys.platform == "win32":
        found = shutil.which(WINDOWS_DEFAULT)
        if found:
            return found

    raise NoInterpreterFound(
        f"No PowerShell executable found (looked for {hint or preferred!r}). "
        "Install PowerShell 7+ and make sure 'pwsh' is on PATH."
    )


@attrs.define(slots=True)
class ProcessHandle:
    """Exclusive ownership of one PowerShell process."""

    exe_path: str
    process: asyncio.subprocess.Process = attrs.field(repr=False)
    requested: str | None = attrs.field(default=None)

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def is_alive(self) -> bool:
        return self.process.returncode is None

    @property
    def stdin(self) -> asyncio.StreamWriter:
        assert self.process.stdin is not None
        return self.process.stdin

    @property
    def stdout(self) -> asyncio.StreamReader:
        assert self.process.stdout is not None
        return self.process.stdout

    @property
    def stderr(self) -> asyncio.StreamReader:
        assert self.process.stderr is not None
        return self.process.stderr

    def kill(self) -> None:
        if self.is_alive:
            try:
                self.process.kill()
            except ProcessLookupError:
                pass


class ProcessSupervisor:
    """Lazily spawns, replaces and kills the PowerShell process."""

    def __init__(
        self,
        exe_path: str | None = None,
        preferred_name: str = "pwsh",
        args: Sequence[str] = PWSH_ARGS,
        read_limit: int = DEFAULT_READ_LIMIT,
        cwd: Path | None = None,
        logger: StructLogger | None = None,
    ):
        self.exe_path = exe_path
        self.preferred_name = preferred_name
        self.args = tuple(args)
        self.read_limit = read_limit
        self.cwd = cwd
        self._handle: ProcessHandle | None = None
        self._reapers: set[asyncio.Task] = set()
        self._spawn_lock = asyncio.Lock()
        self._log = (logger or log).bind(component="supervisor")

    @property
    def handle(self) -> ProcessHandle | None:
        return self._handle

    async def ensure(self, exe_path: str | None = None) -> ProcessHandle:
        """
        Returns the running process, spawning it first if needed.

        A different executable than the one currently running replaces the process.
        """
        requested = exe_path or self.exe_path
        async with self._spawn_lock:
            handle = self._handle
            if handle is not None and handle.is_alive and (exe_path is None or handle.requested == requested):
                return handle
            if handle is not None:
                if handle.is_alive:
                    self._log.info(
                        "Replacing PowerShell process for a different executable",
                        old=handle.requested,
                        new=requested,
                    )
                else:
                    self._log.warning("PowerShell process exited, respawning", pid=handle.pid)
                self.reset()
            self._handle = await self._spawn(requested)
            return self._handle

    async def _spawn(self, requested: str | None) -> ProcessHandle:
        exe = resolve_executable(requested, self.preferred_name)
        self._log.info("Starting PowerShell process", exe_path=exe, emoji_key="spawn")
        try:
            process = await asyncio.create_subprocess_exec(
                exe,
                *self.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.cwd,
                limit=self.read_limit,
                env={**os.environ, "NO_COLOR": "1"},
            )
        except OSError as e:
            self._log.error("Failed to start PowerShell process", exe_path=exe, error=str(e))
            raise SpawnFailure(f"Failed to start PowerShell process '{exe}'", details=e) from e
        self._log.debug("PowerShell process started", pid=process.pid)
        return ProcessHandle(exe_path=exe, process=process, requested=requested)

    def reset(self) -> None:
        """Kills the process immediately and forgets it; the next ensure() respawns."""
        handle, self._handle = self._handle, None
        if handle is None:
            return
        self._log.debug("Killing PowerShell process", pid=handle.pid)
        handle.kill()
        try:
            reaper = asyncio.get_running_loop().create_task(handle.process.wait())
        except RuntimeError:
            return
        self._reapers.add(reaper)
        reaper.add_done_callback(self._reapers.discard)

    def dispose(self) -> None:
        self.reset()

    async def aclose(self) -> None:
        """Kills the process and waits until every killed process has been reaped."""
        self.reset()
        if self._reapers:
            await asyncio.gather(*self._reapers, return_exceptions=True)


# 🔼⚙️
