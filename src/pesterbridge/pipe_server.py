#
# src/pesterbridge/pipe_server.py
#
"""
Receives JSON objects from a script running in a separately launched host.

The script connects to a .NET style named pipe (a unix domain socket outside
Windows) and writes one JSON object per line. Every object is handed to every
current subscriber.
"""

import asyncio
import json
import os
import sys
import tempfile
from pathlib import Path
from typing import Any

import structlog

from pesterbridge.exceptions import DecodeError, ListenerBindFailure
from pesterbridge.powershell.streams import Handler, Subscription, iter_lines
from pesterbridge.telemetry import StructLogger

log: StructLogger = structlog.get_logger("pipe_server")

DEFAULT_READ_LIMIT = 16 * 1024 * 1024


def pipe_path(name: str) -> str:
    """
    The path a .NET NamedPipeServerStream/ClientStream uses for a pipe name.

    Windows has a reserved pipe namespace; elsewhere .NET maps pipes to unix
    domain sockets named CoreFxPipe_<name> in the temp directory.
    """
    if sys.platform == "win32":
        return "\\\\.\\pipe\\" + name
    return str(Path(tempfile.gettempdir()) / f"CoreFxPipe_{name}")


class NamedPipeServer:
    """Listens on a named pipe and fans decoded objects out to subscribers."""

    def __init__(
        self,
        name: str | None = None,
        read_limit: int = DEFAULT_READ_LIMIT,
        logger: StructLogger | None = None,
    ):
        self.name = name or f"PesterTestController-{os.getpid()}"
        self.path = pipe_path(self.name)
        self.read_limit = read_limit
        self._log = (logger or log).bind(component="pipe_server", pipe=self.path)
        self._server: asyncio.AbstractServer | None = None
        self._pipe_servers: list[Any] = []
        self._handlers: list[Handler] = []
        self._writers: set[asyncio.StreamWriter] = set()
        self._waiters: list[asyncio.Future[asyncio.StreamWriter]] = []
        self._disposed = False

    @property
    def is_listening(self) -> bool:
        return self._server is not None or bool(self._pipe_servers)

    async def listen(self) -> None:
        """Binds the pipe. Safe to call more than once."""
        if self.is_listening:
            return
        if self._disposed:
            raise ListenerBindFailure(self.path, RuntimeError("server was disposed"))
        try:
            if sys.platform == "win32":
                await self._listen_windows()
            else:
                self._server = await asyncio.start_unix_server(
                    self._handle_connection, path=self.path, limit=self.read_limit
                )
        except OSError as e:
            self._log.error("Failed to bind named pipe", error=str(e))
            raise ListenerBindFailure(self.path, e) from e
        self._log.info("Listening for test objects", emoji_key="pipe")

    async def _listen_windows(self) -> None:
        loop = asyncio.get_running_loop()
        start_serving_pipe = getattr(loop, "start_serving_pipe", None)
        if start_serving_pipe is None:
            raise ListenerBindFailure(self.path, NotImplementedError("named pipes need the proactor event loop"))

        def protocol_factory() -> asyncio.StreamReaderProtocol:
            reader = asyncio.StreamReader(limit=self.read_limit)
            return asyncio.StreamReaderProtocol(reader, self._handle_connection)

        self._pipe_servers = await start_serving_pipe(protocol_factory, self.path)

    def subscribe(self, handler: Handler) -> Subscription:
        """Every object received from now on is passed to handler, until disposed."""
        self._handlers.append(handler)
        return Subscription(lambda: self._handlers.remove(handler))

    async def wait_for_connection(self) -> asyncio.StreamWriter:
        """
        Waits for the next client to connect.

        Every waiter present at that moment receives the same connection.
        """
        await self.listen()
        waiter: asyncio.Future[asyncio.StreamWriter] = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            return await waiter
        finally:
            if waiter in self._waiters:
                self._waiters.remove(waiter)

    async def _handle_connection(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self._writers.add(writer)
        waiters, self._waiters = self._waiters, []
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(writer)
        self._log.debug("Client connected")
        received = 0
        try:
            async for line in iter_lines(reader):
                try:
                    obj = json.loads(line)
                except json.JSONDecodeError:
                    self._log.warning("Skipping undecodable line from pipe", fragment=line[:200])
                    continue
                received += 1
                self._emit(obj)
        except DecodeError as e:
            self._log.error("Pipe connection produced an oversized line", error=str(e))
        except ConnectionError as e:
            self._log.debug("Pipe connection lost", error=str(e))
        finally:
            self._writers.discard(writer)
            writer.close()
            self._log.debug("Client disconnected", objects=received)

    def _emit(self, obj: Any) -> None:
        for handler in list(self._handlers):
            try:
                handler(obj)
            except Exception:
                # One faulty subscriber must not starve the others
                self._log.exception("Pipe subscriber raised", handler=repr(handler))

    def dispose(self) -> None:
        """Closes the listener and any open connections."""
        if self._disposed:
            return
        self._disposed = True
        for waiter in self._waiters:
            if not waiter.done():
                waiter.set_exception(ListenerBindFailure(self.path, RuntimeError("server was disposed")))
        self._waiters.clear()
        for writer in list(self._writers):
            writer.close()
        self._writers.clear()
        if self._server is not None:
            self._server.close()
            self._server = None
        for pipe_server in self._pipe_servers:
            pipe_server.close()
        self._pipe_servers = []
        if sys.platform != "win32":
            try:
                os.unlink(self.path)
            except FileNotFoundError:
                pass
        self._log.debug("Named pipe server disposed")


# 🔼⚙️
