"""
FlowStudio Configuration.

Controls the execution service endpoint, tracker memory bounds,
cycle reporting cap and layout spacing.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from flowstudio.config.env_utils import read_env_defaults


@dataclass
class StudioConfig:
    """Editor, compiler and tracker settings."""

    execution_api_url: str = "http://localhost:3000"
    request_timeout: float = 30.0
    max_log_entries: int = 1000
    max_reported_cycles: int = 100
    layout_node_gap: float = 50.0
    layout_layer_gap: float = 75.0
    dsl_module: str = "@flowstudio/dsl"

    _ENV_MAP = {
        "execution_api_url": "FLOWSTUDIO_API_URL",
        "request_timeout": "FLOWSTUDIO_REQUEST_TIMEOUT",
        "max_log_entries": "FLOWSTUDIO_MAX_LOG_ENTRIES",
        "max_reported_cycles": "FLOWSTUDIO_MAX_CYCLES",
        "layout_node_gap": "FLOWSTUDIO_LAYOUT_NODE_GAP",
        "layout_layer_gap": "FLOWSTUDIO_LAYOUT_LAYER_GAP",
        "dsl_module": "FLOWSTUDIO_DSL_MODULE",
    }

    @classmethod
    def get_default_instance(cls) -> "StudioConfig":
        defaults = read_env_defaults(cls._ENV_MAP, cls.__dataclass_fields__)
        return cls(**defaults)


# ── Singleton ──

_config_instance: Optional[StudioConfig] = None


def get_studio_config() -> StudioConfig:
    """Return the process-wide default StudioConfig."""
    global _config_instance
    if _config_instance is None:
        _config_instance = StudioConfig.get_default_instance()
    return _config_instance


def reset_studio_config() -> None:
    """Drop the cached config so the environment is read again."""
    global _config_instance
    _config_instance = None
