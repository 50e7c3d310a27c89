#
# tests/unit/test_config.py
#
"""
Tests for configuration models and TOML loading.
"""

from pathlib import Path

import pytest

from pesterbridge.config import BridgeConfig, PesterConfig, PowerShellConfig, build_config, load_config
from pesterbridge.exceptions import ConfigurationError


class TestModels:
    def test_defaults(self) -> None:
        config = BridgeConfig()

        assert config.global_config.log_level == "WARNING"
        assert config.powershell.preferred_name == "pwsh"
        assert config.powershell.terminating_error_policy == "fail-invocation"
        assert config.pester.output_verbosity == "FromPreference"
        assert config.pester.debug_output_verbosity == "Diagnostic"
        assert config.pester.discovery_debounce == 0.1
        assert config.pester.interface_script is None

    def test_interface_script_becomes_a_path(self) -> None:
        config = PesterConfig(interface_script="~/PesterInterface.ps1")
        assert config.interface_script == Path("~/PesterInterface.ps1").expanduser()

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"read_limit": 0},
            {"terminating_error_policy": "ignore"},
            {"drain_timeout": -1},
        ],
    )
    def test_invalid_powershell_values(self, kwargs) -> None:
        with pytest.raises(ValueError):
            PowerShellConfig(**kwargs)

    def test_invalid_verbosity(self) -> None:
        with pytest.raises(ValueError, match="output_verbosity"):
            PesterConfig(output_verbosity="Loud")


class TestBuildConfig:
    def test_sections_are_mapped(self) -> None:
        config = build_config(
            {
                "global": {"log_level": "DEBUG"},
                "powershell": {"exe_path": "/opt/pwsh", "terminating_error_policy": "reset-process"},
                "pester": {"output_verbosity": "Detailed", "hide_skipped_because_messages": True},
            },
            environ={},
        )

        assert config.global_config.log_level == "DEBUG"
        assert config.powershell.exe_path == "/opt/pwsh"
        assert config.powershell.terminating_error_policy == "reset-process"
        assert config.pester.output_verbosity == "Detailed"
        assert config.pester.hide_skipped_because_messages is True

    def test_unknown_section(self) -> None:
        with pytest.raises(ConfigurationError, match="Unknown configuration sections"):
            build_config({"repositories": {}}, environ={})

    def test_unknown_key(self) -> None:
        with pytest.raises(ConfigurationError, match="Unknown keys in \\[pester\\]"):
            build_config({"pester": {"verbosity": "Detailed"}}, environ={})

    @pytest.mark.parametrize("value", ["Detailed", ["Detailed"], 3])
    def test_section_must_be_a_table(self, value) -> None:
        with pytest.raises(ConfigurationError, match="must be a table"):
            build_config({"pester": value}, environ={})

    def test_invalid_value_is_a_configuration_error(self) -> None:
        with pytest.raises(ConfigurationError, match="Invalid value in \\[powershell\\]"):
            build_config({"powershell": {"drain_timeout": -5}}, environ={})

    def test_environment_overrides_file_values(self) -> None:
        config = build_config(
            {"powershell": {"exe_path": "/opt/pwsh"}},
            environ={
                "PESTERBRIDGE_PWSH": "/usr/local/bin/pwsh",
                "PESTERBRIDGE_INTERFACE_SCRIPT": "/scripts/PesterInterface.ps1",
                "PESTERBRIDGE_LOG_LEVEL": "ERROR",
            },
        )

        assert config.powershell.exe_path == "/usr/local/bin/pwsh"
        assert config.pester.interface_script == Path("/scripts/PesterInterface.ps1")
        assert config.global_config.log_level == "ERROR"

    def test_empty_environment_values_are_ignored(self) -> None:
        config = build_config({"powershell": {"exe_path": "/opt/pwsh"}}, environ={"PESTERBRIDGE_PWSH": ""})
        assert config.powershell.exe_path == "/opt/pwsh"


class TestLoadConfig:
    def test_no_path_gives_defaults(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("PESTERBRIDGE_PWSH", raising=False)
        assert load_config(None).powershell.exe_path is None

    def test_loads_toml(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("PESTERBRIDGE_INTERFACE_SCRIPT", raising=False)
        config_file = tmp_path / "pesterbridge.toml"
        config_file.write_text(
            """
[pester]
interface_script = "/scripts/PesterInterface.ps1"
discovery_debounce = 0.25
use_interactive_host = true
"""
        )

        config = load_config(config_file)

        assert config.pester.interface_script == Path("/scripts/PesterInterface.ps1")
        assert config.pester.discovery_debounce == 0.25
        assert config.pester.use_interactive_host is True

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigurationError, match="not found"):
            load_config(tmp_path / "missing.toml")

    def test_invalid_toml(self, tmp_path: Path) -> None:
        config_file = tmp_path / "broken.toml"
        config_file.write_text('[pester\ninterface_script = "x')

        with pytest.raises(ConfigurationError, match="Invalid TOML"):
            load_config(config_file)
