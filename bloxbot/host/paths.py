"""Filesystem locations used by the local host."""
from __future__ import annotations

import os
import sys
from pathlib import Path

PLUGIN_FILE_NAME = "MCPPlugin.rbxmx"


def default_plugin_dir() -> Path:
    """Roblox Studio's local plugins folder for this platform."""
    if sys.platform == "win32":
        base = os.getenv("LOCALAPPDATA") or str(Path.home() / "AppData" / "Local")
        return Path(base) / "Roblox" / "Plugins"
    return Path.home() / "Documents" / "Roblox" / "Plugins"


def ensure_workspace(path: Path) -> Path:
    """Create the workspace directory if missing and return it."""
    path.mkdir(parents=True, exist_ok=True)
    return path


def engine_home(workspace: Path) -> Path:
    """Per-workspace root of the engine's isolated XDG directories."""
    return workspace / ".opencode"
