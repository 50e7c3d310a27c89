#
# src/pesterbridge/powershell/streams.py
#
"""
Turns the raw stdout of a PowerShell host into objects on seven output streams.

Three stages run per invocation: newline framing, JSON decoding and
demultiplexing on the `__PSStream` tag. Completion is signalled in-band by a
sentinel record so the same stdout can be reused by the next invocation.
"""

import asyncio
import json
import re
from collections.abc import AsyncIterator, Callable
from typing import Any

import attrs
import structlog

from pesterbridge.exceptions import DecodeError, InterpreterExited, UnknownStreamTag
from pesterbridge.telemetry import StructLogger

log: StructLogger = structlog.get_logger("powershell.streams")

STREAM_TAG = "__PSStream"
INVOCATION_ID_KEY = "__PSINVOCATIONID"
STREAM_NAMES = ("success", "error", "warning", "verbose", "debug", "information", "progress")
# Maps the tag value emitted by the runner script to a channel attribute.
TAGGED_STREAMS = {
    "Error": "error",
    "Warning": "warning",
    "Verbose": "verbose",
    "Debug": "debug",
    "Information": "information",
    "Progress": "progress",
}
_ANSI_ESCAPE = re.compile(r"\x1b\[[0-?]*[ -/]*[@-~]|\x1b\][^\x07]*\x07")

Handler = Callable[[Any], None]


class Subscription:
    """Handle returned by subscribe(); dispose() stops delivery."""

    def __init__(self, dispose: Callable[[], None]):
        self._dispose = dispose
        self.disposed = False

    def dispose(self) -> None:
        if not self.disposed:
            self.disposed = True
            self._dispose()


class OutputChannel:
    """
    Receives the objects of one PowerShell stream.

    Items are kept in arrival order and handed synchronously to every
    subscriber as they arrive. An exception raised by a subscriber propagates
    into the pipeline and fails the invocation.
    """

    def __init__(self, name: str):
        self.name = name
        self.items: list[Any] = []
        self._handlers: list[Handler] = []
        self._closed = asyncio.Event()

    def __repr__(self) -> str:
        return f"OutputChannel({self.name!r}, items={len(self.items)}, closed={self.closed})"

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def subscribe(self, handler: Handler) -> Subscription:
        self._handlers.append(handler)
        return Subscription(lambda: self._handlers.remove(handler))

    def push(self, item: Any) -> None:
        if self.closed:
            log.debug("Dropping item pushed to closed channel", channel=self.name)
            return
        self.items.append(item)
        for handler in list(self._handlers):
            handler(item)

    def close(self) -> None:
        self._closed.set()

    async def wait_closed(self) -> list[Any]:
        await self._closed.wait()
        return self.items


@attrs.define(slots=True)
class PSOutput:
    """One channel per PowerShell output stream."""

    success: OutputChannel = attrs.field(factory=lambda: OutputChannel("success"))
    error: OutputChannel = attrs.field(factory=lambda: OutputChannel("error"))
    warning: OutputChannel = attrs.field(factory=lambda: OutputChannel("warning"))
    verbose: OutputChannel = attrs.field(factory=lambda: OutputChannel("verbose"))
    debug: OutputChannel = attrs.field(factory=lambda: OutputChannel("debug"))
    information: OutputChannel = attrs.field(factory=lambda: OutputChannel("information"))
    progress: OutputChannel = attrs.field(factory=lambda: OutputChannel("progress"))

    def channels(self) -> list[OutputChannel]:
        """Distinct channels, in stream order."""
        seen: list[OutputChannel] = []
        for name in STREAM_NAMES:
            channel = getattr(self, name)
            if not any(channel is s for s in seen):
                seen.append(channel)
        return seen

    def close(self) -> None:
        for channel in self.channels():
            channel.close()


class PSOutputUnified(PSOutput):
    """Collects every stream into the single success channel."""

    def __init__(self, channel: OutputChannel | None = None):
        channel = channel or OutputChannel("unified")
        super().__init__(*(channel for _ in STREAM_NAMES))


# --- Stage 1: line framing ---
async def iter_lines(reader: asyncio.StreamReader, strip_ansi: bool = True) -> AsyncIterator[str]:
    """Yields non-blank text lines until EOF."""
    while True:
        try:
            raw = await reader.readline()
        except ValueError as e:
            raise DecodeError("<line exceeds the stream read limit>", details=e) from e
        if not raw:
            return
        line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
        if strip_ansi:
            line = _ANSI_ESCAPE.sub("", line)
        if line.strip():
            yield line


# --- Stage 2: decoding ---
def decode_record(line: str) -> Any:
    try:
        return json.loads(line)
    except json.JSONDecodeError as e:
        raise DecodeError(line, details=e) from e


def is_finished_sentinel(value: Any) -> bool:
    return isinstance(value, dict) and INVOCATION_ID_KEY in value and value.get("finished") is True


def make_sentinel(invocation_id: str) -> bytes:
    return (json.dumps({INVOCATION_ID_KEY: invocation_id, "finished": True}) + "\n").encode("utf-8")


# --- Stage 3: demultiplexing ---
class StreamDemultiplexer:
    """Routes decoded records to the channel named by their stream tag."""

    def __init__(self, output: PSOutput):
        self.output = output

    def dispatch(self, record: Any) -> None:
        tag = record.get(STREAM_TAG) if isinstance(record, dict) else None
        if tag is None or tag == "Success":
            self.output.success.push(record)
            return
        channel_name = TAGGED_STREAMS.get(tag)
        if channel_name is None:
            raise UnknownStreamTag(tag)
        value = record.get("value")
        getattr(self.output, channel_name).push(record if value is None else value)


async def pipe_output(
    reader: asyncio.StreamReader,
    output: PSOutput,
    invocation_id: str | None = None,
    strip_ansi: bool = True,
) -> dict:
    """
    Runs framing, decoding and demultiplexing until the finished sentinel.

    Returns the sentinel record, which may carry failed=True when the runner
    reported a terminating error on stderr.

    Args:
        reader: The shared stdout reader; it is never closed here.
        output: Channels receiving the records. They are closed on exit.
        invocation_id: Only a sentinel with this id ends the pipeline. Sentinels
            for other ids are stale leftovers and skipped. None accepts any.

    Raises:
        DecodeError: A line was not JSON.
        UnknownStreamTag: A record named a stream that does not exist.
        InterpreterExited: EOF was reached before the sentinel.
    """
    demux = StreamDemultiplexer(output)
    pipe_log = log.bind(invocation_id=invocation_id)
    try:
        async for line in iter_lines(reader, strip_ansi):
            record = decode_record(line)
            if is_finished_sentinel(record):
                sentinel_id = record[INVOCATION_ID_KEY]
                if invocation_id is None or sentinel_id == invocation_id:
                    pipe_log.debug("Finished sentinel received")
                    return record
                pipe_log.debug("Skipping stale sentinel", sentinel_id=sentinel_id)
                continue
            demux.dispatch(record)
        raise InterpreterExited("PowerShell output ended before the invocation finished", invocation_id)
    finally:
        output.close()


async def drain_until_sentinel(reader: asyncio.StreamReader, invocation_id: str) -> bool:
    """
    Discards output up to and including the sentinel for invocation_id.

    Returns False if EOF was reached first.
    """
    discarded = 0
    async for line in iter_lines(reader):
        try:
            record = json.loads(line)
        except json.JSONDecodeError:
            record = None
        if is_finished_sentinel(record) and record[INVOCATION_ID_KEY] == invocation_id:
            log.debug("Drained invocation output", invocation_id=invocation_id, discarded=discarded)
            return True
        discarded += 1
    return False


# 🔼⚙️
