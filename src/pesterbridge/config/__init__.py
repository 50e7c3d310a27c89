#
# config/__init__.py
#
"""
Configuration handling sub-package for pesterbridge.

Exports the loading function and core configuration models.
"""

from .loader import build_config, load_config
from .models import (
    BridgeConfig,
    GlobalConfig,
    PesterConfig,
    PowerShellConfig,
)

__all__ = [
    "BridgeConfig",
    "GlobalConfig",
    "PesterConfig",
    "PowerShellConfig",
    "build_config",
    "load_config",
]

# 🔼⚙️
