"""
Cross-platform utilities for Tree Mirror.

Centralises OS detection so the config and logging code can find the
platform-appropriate application directory without scattering
``sys.platform`` checks around.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

# ---- platform flags ----------------------------------------------------

IS_WINDOWS: bool = sys.platform == "win32"
IS_MACOS: bool = sys.platform == "darwin"

APP_DIR_NAME = "TreeMirror"

# ---- directories -------------------------------------------------------


def get_config_dir() -> Path:
    """
    Return the application config directory, created if needed.

    - Windows : ``%APPDATA%\\TreeMirror``
    - macOS   : ``~/Library/Application Support/TreeMirror``
    - Linux   : ``$XDG_CONFIG_HOME/TreeMirror`` (default ``~/.config``)
    """
    if IS_WINDOWS:
        base = os.environ.get("APPDATA", str(Path.home()))
    elif IS_MACOS:
        base = str(Path.home() / "Library" / "Application Support")
    else:
        base = os.environ.get("XDG_CONFIG_HOME", str(Path.home() / ".config"))

    config_dir = Path(base) / APP_DIR_NAME
    config_dir.mkdir(parents=True, exist_ok=True)
    return config_dir


def get_log_path() -> Path:
    """Return the path to the log file (inside the config directory)."""
    return get_config_dir() / "tree_mirror.log"
