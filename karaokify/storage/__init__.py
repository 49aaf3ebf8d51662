"""
Storage Layer.

This package handles everything that lives on disk: per-job workspaces, the
published artifact directory, and the configuration file.
"""

from .artifacts import ArtifactStore
from .config_manager import ConfigManager
from .workspace import WorkspaceManager

__all__ = ["ArtifactStore", "ConfigManager", "WorkspaceManager"]
