# Utility functions for launch helpers.

from __future__ import annotations

from pathlib import Path
from typing import Iterable


_TRUE_VALUES = {"1", "true", "yes", "y", "on", "enable", "enabled", "t"}
_FALSE_VALUES = {"0", "false", "no", "n", "off", "disable", "disabled", "f"}
_SECRET_KEYS = ("PASSWORD", "SECRET", "TOKEN")


def parse_bool(value: str | None) -> bool | None:
    """Return ``True``/``False`` for recognised spellings and ``None`` otherwise."""

    if value is None:
        return None
    norm = value.strip().lower()
    if norm in _TRUE_VALUES:
        return True
    if norm in _FALSE_VALUES:
        return False
    return None


def redact(name: str, value: str) -> str:
    """Mask ``value`` when ``name`` looks like a credential."""

    upper = name.upper()
    if any(marker in upper for marker in _SECRET_KEYS):
        return "[REDACTED]" if value else ""
    return value


def first_existing(candidates: Iterable[Path]) -> Path | None:
    for candidate in candidates:
        if candidate.exists():
            return candidate
    return None
