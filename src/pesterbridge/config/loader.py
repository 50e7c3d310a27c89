#
# config/loader.py
#
"""
Loads a pesterbridge TOML configuration file into attrs models.
"""

import os
import tomllib
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import attrs
import structlog

from pesterbridge.config.models import BridgeConfig, GlobalConfig, PesterConfig, PowerShellConfig
from pesterbridge.exceptions import ConfigurationError

log = structlog.get_logger("config.loader")

ENV_OVERRIDES = {
    "PESTERBRIDGE_LOG_LEVEL": ("global_config", "log_level"),
    "PESTERBRIDGE_PWSH": ("powershell", "exe_path"),
    "PESTERBRIDGE_INTERFACE_SCRIPT": ("pester", "interface_script"),
}

_SECTIONS: dict[str, tuple[str, type]] = {
    "global": ("global_config", GlobalConfig),
    "powershell": ("powershell", PowerShellConfig),
    "pester": ("pester", PesterConfig),
}


def _section_table(name: str, value: Any) -> dict[str, Any]:
    """A mutable copy of one TOML section; a missing section is empty."""
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigurationError(f"Section [{name}] must be a table, got {type(value).__name__}")
    return dict(value)


def _build_section(name: str, model: type, data: Mapping[str, Any]) -> Any:
    known = {a.name for a in attrs.fields(model)}
    unknown = set(data) - known
    if unknown:
        raise ConfigurationError(f"Unknown keys in [{name}]: {sorted(unknown)}")
    try:
        return model(**data)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid value in [{name}]: {e}", details=e) from e


def build_config(data: Mapping[str, Any], environ: Mapping[str, str] | None = None) -> BridgeConfig:
    """Builds a BridgeConfig from parsed TOML data, applying environment overrides."""
    unknown_sections = set(data) - set(_SECTIONS)
    if unknown_sections:
        raise ConfigurationError(f"Unknown configuration sections: {sorted(unknown_sections)}")

    sections: dict[str, dict[str, Any]] = {
        attr_name: _section_table(toml_name, data.get(toml_name)) for toml_name, (attr_name, _) in _SECTIONS.items()
    }

    environ = os.environ if environ is None else environ
    for env_var, (section, key) in ENV_OVERRIDES.items():
        value = environ.get(env_var)
        if value:
            log.debug("Applying environment override", env_var=env_var, key=f"{section}.{key}")
            sections[section][key] = value

    kwargs = {
        attr_name: _build_section(toml_name, model, sections[attr_name])
        for toml_name, (attr_name, model) in _SECTIONS.items()
    }
    return BridgeConfig(**kwargs)


def load_config(config_path: Path | None) -> BridgeConfig:
    """
    Loads configuration from a TOML file.

    A missing path yields the defaults (still subject to environment overrides).
    """
    if config_path is None:
        log.debug("No configuration file given, using defaults")
        return build_config({})

    log.info("Loading configuration", path=str(config_path), emoji_key="general")
    try:
        with open(config_path, "rb") as f:
            data = tomllib.load(f)
    except FileNotFoundError as e:
        raise ConfigurationError(f"Configuration file not found: {config_path}", details=e) from e
    except tomllib.TOMLDecodeError as e:
        raise ConfigurationError(f"Invalid TOML in '{config_path}': {e}", details=e) from e

    config = build_config(data)
    log.debug("Configuration loaded", config=repr(config))
    return config


# 🔼⚙️
