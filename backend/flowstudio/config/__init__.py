"""FlowStudio configuration."""

from flowstudio.config.studio_config import (
    StudioConfig,
    get_studio_config,
    reset_studio_config,
)

__all__ = ["StudioConfig", "get_studio_config", "reset_studio_config"]
