"""Configuration for the patch module build system."""

from .build_config import (
    CapabilityFlags,
    PatchBuildConfig,
    WorkspaceLayout,
    load_build_config,
    save_build_config,
)

__all__ = ['CapabilityFlags', 'PatchBuildConfig', 'WorkspaceLayout', 'load_build_config', 'save_build_config']
