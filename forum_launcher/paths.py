"""Project-wide path helpers."""

from __future__ import annotations

from pathlib import Path

# Default locations inside the forum container image
DEFAULT_APP_DIR = Path("/usr/src/app")
DEFAULT_CONFIG_DIR = Path("/opt/config")

CONFIG_FILENAME = "config.json"
CACHE_RECORD_FILENAME = "install_hash.md5"

__all__ = [
    "DEFAULT_APP_DIR",
    "DEFAULT_CONFIG_DIR",
    "CONFIG_FILENAME",
    "CACHE_RECORD_FILENAME",
]
