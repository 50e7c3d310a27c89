#
# src/pesterbridge/__init__.py
#
"""
pesterbridge: discover and run Pester tests through a long-lived PowerShell host.
"""

from importlib.metadata import PackageNotFoundError, version

from .config import BridgeConfig, load_config
from .controller import HostCommandResult, HostLauncher, PesterTestController
from .powershell import PowerShell, PSOutput, PSOutputUnified
from .run import RunRequest, TestRun, TestState

try:
    __version__ = version("pesterbridge")
except PackageNotFoundError:
    __version__ = "0.0.0-dev"

__all__ = [
    "BridgeConfig",
    "HostCommandResult",
    "HostLauncher",
    "PSOutput",
    "PSOutputUnified",
    "PesterTestController",
    "PowerShell",
    "RunRequest",
    "TestRun",
    "TestState",
    "__version__",
    "load_config",
]

# 🔼⚙️
