#
# src/pesterbridge/powershell/__init__.py
#
"""
PowerShell process supervision and the stdio invocation protocol.
"""
from .invocation import CoordinatorState, Invocation, PowerShell, format_invocation, quote
from .process import PWSH_ARGS, ProcessHandle, ProcessSupervisor, resolve_executable
from .streams import (
    OutputChannel,
    PSOutput,
    PSOutputUnified,
    StreamDemultiplexer,
    Subscription,
    decode_record,
    is_finished_sentinel,
    iter_lines,
    pipe_output,
)

__all__ = [
    "PWSH_ARGS",
    "CoordinatorState",
    "Invocation",
    "OutputChannel",
    "PSOutput",
    "PSOutputUnified",
    "PowerShell",
    "ProcessHandle",
    "ProcessSupervisor",
    "StreamDemultiplexer",
    "Subscription",
    "decode_record",
    "format_invocation",
    "is_finished_sentinel",
    "iter_lines",
    "pipe_output",
    "quote",
    "resolve_executable",
]

# 🔼⚙️
