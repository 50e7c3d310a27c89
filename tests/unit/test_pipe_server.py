# tests/unit/test_pipe_server.py

"""Tests for the named-pipe side channel."""

import asyncio
import os
import sys
import uuid
from unittest.mock import patch

import pytest

from pesterbridge.exceptions import ListenerBindFailure
from pesterbridge.pipe_server import NamedPipeServer, pipe_path

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="unix domain socket transport")


def short_name() -> str:
    return f"pbt-{uuid.uuid4().hex[:8]}"


async def send_lines(path: str, *lines: str) -> None:
    _, writer = await asyncio.open_unix_connection(path)
    for line in lines:
        writer.write((line + "\n").encode("utf-8"))
    await writer.drain()
    writer.close()
    await writer.wait_closed()


async def wait_for(predicate, timeout: float = 2.0) -> None:
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.01)


class TestPipePath:
    def test_unix_path_uses_dotnet_socket_name(self):
        with patch("pesterbridge.pipe_server.sys.platform", "linux"):
            path = pipe_path("Example")
        assert os.path.basename(path) == "CoreFxPipe_Example"

    def test_windows_path_uses_pipe_namespace(self):
        with patch("pesterbridge.pipe_server.sys.platform", "win32"):
            assert pipe_path("Example") == "\\\\.\\pipe\\Example"

    def test_default_name_includes_pid(self):
        server = NamedPipeServer()
        assert server.name == f"PesterTestController-{os.getpid()}"


@pytest.mark.asyncio
class TestNamedPipeServer:
    async def test_objects_fan_out_to_every_subscriber(self):
        server = NamedPipeServer(short_name())
        first: list = []
        second: list = []
        server.subscribe(first.append)
        server.subscribe(second.append)
        try:
            await server.listen()
            await send_lines(server.path, '{"id": "a"}', '{"id": "b"}')
            await wait_for(lambda: len(second) == 2)
        finally:
            server.dispose()

        assert first == [{"id": "a"}, {"id": "b"}]
        assert second == first

    async def test_undecodable_lines_are_skipped(self):
        server = NamedPipeServer(short_name())
        received: list = []
        server.subscribe(received.append)
        try:
            await server.listen()
            await send_lines(server.path, "garbage {", '{"ok": true}')
            await wait_for(lambda: received)
        finally:
            server.dispose()

        assert received == [{"ok": True}]

    async def test_disposed_subscription_stops_delivery(self):
        server = NamedPipeServer(short_name())
        received: list = []
        subscription = server.subscribe(received.append)
        try:
            await server.listen()
            await send_lines(server.path, '{"n": 1}')
            await wait_for(lambda: received)
            subscription.dispose()
            late: list = []
            server.subscribe(late.append)
            await send_lines(server.path, '{"n": 2}')
            await wait_for(lambda: late)
        finally:
            server.dispose()

        assert received == [{"n": 1}]

    async def test_failing_subscriber_does_not_starve_others(self):
        server = NamedPipeServer(short_name())
        received: list = []

        def explode(obj):
            raise RuntimeError("bad subscriber")

        server.subscribe(explode)
        server.subscribe(received.append)
        try:
            await server.listen()
            await send_lines(server.path, '{"n": 1}')
            await wait_for(lambda: received)
        finally:
            server.dispose()

        assert received == [{"n": 1}]

    async def test_wait_for_connection_resolves_on_connect(self):
        server = NamedPipeServer(short_name())
        try:
            waiter = asyncio.create_task(server.wait_for_connection())
            await asyncio.sleep(0.05)
            assert not waiter.done()
            await send_lines(server.path, '{"n": 1}')
            connection = await asyncio.wait_for(waiter, 2.0)
            assert connection is not None
        finally:
            server.dispose()

    async def test_dispose_fails_pending_waiters_and_removes_socket(self):
        server = NamedPipeServer(short_name())
        waiter = asyncio.create_task(server.wait_for_connection())
        await asyncio.sleep(0.05)
        assert os.path.exists(server.path)

        server.dispose()

        with pytest.raises(ListenerBindFailure):
            await waiter
        assert not os.path.exists(server.path)

    async def test_listen_is_idempotent(self):
        server = NamedPipeServer(short_name())
        try:
            await server.listen()
            await server.listen()
            assert server.is_listening
        finally:
            server.dispose()

    async def test_bind_failure(self, tmp_path):
        server = NamedPipeServer(short_name())
        server.path = str(tmp_path / "missing-dir" / "socket")

        with pytest.raises(ListenerBindFailure):
            await server.listen()
