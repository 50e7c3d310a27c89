#
# config/models.py
#
"""
Attrs-based data models for pesterbridge configuration structure.
"""

import logging
from pathlib import Path
from typing import Any

from attrs import define, field

TERMINATING_ERROR_POLICIES = ("fail-invocation", "reset-process")
VERBOSITY_LEVELS = ("FromPreference", "None", "Normal", "Detailed", "Diagnostic")


# --- Validators ---
def _validate_log_level(inst: Any, attr: Any, value: str) -> None:
    """Validator for standard logging level names."""
    valid = logging._nameToLevel.keys()
    if value.upper() not in valid:
        raise ValueError(f"Invalid log_level '{value}'. Must be one of {list(valid)}.")


def _validate_positive_int(inst: Any, attr: Any, value: int) -> None:
    """Validator ensures integer is positive."""
    if not isinstance(value, int) or value <= 0:
        raise ValueError(f"Field '{attr.name}' must be positive integer, got {value}")


def _validate_non_negative(inst: Any, attr: Any, value: float) -> None:
    if not isinstance(value, int | float) or value < 0:
        raise ValueError(f"Field '{attr.name}' must be a non-negative number, got {value}")


def _validate_one_of(choices: tuple[str, ...]):
    def _validator(inst: Any, attr: Any, value: str) -> None:
        if value not in choices:
            raise ValueError(f"Invalid {attr.name} '{value}'. Must be one of {list(choices)}.")

    return _validator


def _optional_path(value: str | Path | None) -> Path | None:
    return Path(value).expanduser() if value else None


# --- Section models ---
@define(frozen=True, slots=True)
class PowerShellConfig:
    """How the supervised PowerShell process is found, launched and recovered."""

    exe_path: str | None = field(default=None)
    preferred_name: str = field(default="pwsh")
    # StreamReader line limit; Pester objects for big suites can be long lines.
    read_limit: int = field(default=16 * 1024 * 1024, validator=_validate_positive_int)
    terminating_error_policy: str = field(
        default="fail-invocation", validator=_validate_one_of(TERMINATING_ERROR_POLICIES)
    )
    drain_timeout: float = field(default=5.0, validator=_validate_non_negative)


@define(frozen=True, slots=True)
class PesterConfig:
    """Settings for discovery and test runs."""

    interface_script: Path | None = field(default=None, converter=_optional_path)
    output_verbosity: str = field(
        default="FromPreference", validator=_validate_one_of(VERBOSITY_LEVELS)
    )
    debug_output_verbosity: str = field(
        default="Diagnostic", validator=_validate_one_of(VERBOSITY_LEVELS)
    )
    hide_skipped_because_messages: bool = field(default=False)
    discovery_debounce: float = field(default=0.1, validator=_validate_non_negative)
    use_interactive_host: bool = field(default=False)
    pipe_name: str | None = field(default=None)


@define(frozen=True, slots=True)
class GlobalConfig:
    """Global default settings for pesterbridge."""

    log_level: str = field(default="WARNING", validator=_validate_log_level)

    @property
    def numeric_log_level(self) -> int:
        return logging.getLevelName(self.log_level.upper())


@define(frozen=True, slots=True)
class BridgeConfig:
    """Root configuration object for the pesterbridge application."""

    global_config: GlobalConfig = field(factory=GlobalConfig, metadata={"toml_name": "global"})
    powershell: PowerShellConfig = field(factory=PowerShellConfig)
    pester: PesterConfig = field(factory=PesterConfig)


# 🔼⚙️
