#
# tests/conftest.py
#
"""
Shared fixtures: a fake PowerShell host that speaks the stdio protocol, and
fake interface scripts for the controller.
"""

import json
import stat
import sys
import uuid
from pathlib import Path

import pytest
import pytest_asyncio

from pesterbridge.config import BridgeConfig, PesterConfig, PowerShellConfig
from pesterbridge.powershell import PowerShell, ProcessSupervisor

FAKE_PWSH = Path(__file__).parent / "support" / "fake_pwsh.py"


@pytest.fixture
def fake_pwsh(tmp_path: Path) -> str:
    """An executable that launches the fake host with this interpreter."""
    if sys.platform == "win32":
        pytest.skip("The fake PowerShell launcher is a POSIX shell script")
    launcher = tmp_path / "fake-pwsh"
    launcher.write_text(f'#!/bin/sh\nexec "{sys.executable}" "{FAKE_PWSH}" "$@"\n')
    launcher.chmod(launcher.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return str(launcher)


@pytest_asyncio.fixture
async def powershell(fake_pwsh: str):
    """A coordinator running scripts on the fake host."""
    ps = PowerShell(ProcessSupervisor(exe_path=fake_pwsh), drain_timeout=2.0)
    yield ps
    await ps.aclose()


@pytest.fixture
def make_interface(tmp_path: Path):
    """Writes a fake interface script (JSON records to replay) and returns its path."""

    def _make(
        discovery: list | dict | None = None,
        run: list | None = None,
        discovery_error: str | None = None,
        run_error: str | None = None,
        name: str = "interface.json",
    ) -> Path:
        path = tmp_path / name
        replay = {
            "discovery": discovery or [],
            "run": run or [],
            "args_log": str(tmp_path / "args.log"),
        }
        if discovery_error:
            replay["discovery_error"] = discovery_error
        if run_error:
            replay["run_error"] = run_error
        path.write_text(json.dumps(replay), encoding="utf-8")
        return path

    return _make


@pytest.fixture
def bridge_config(fake_pwsh: str, tmp_path: Path):
    """Builds a BridgeConfig for the fake host with a given interface script."""

    def _config(interface_script: Path | None = None, **pester_options) -> BridgeConfig:
        return BridgeConfig(
            powershell=PowerShellConfig(exe_path=fake_pwsh, drain_timeout=2.0),
            pester=PesterConfig(
                interface_script=interface_script,
                discovery_debounce=0.01,
                pipe_name=f"pbt-{uuid.uuid4().hex[:8]}",
                **pester_options,
            ),
        )

    return _config
