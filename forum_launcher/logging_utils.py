"""Logging setup for the launcher.

Two outputs exist side by side:

* regular :mod:`logging` records, sent to stdout and to a rotating
  ``launcher.log`` in the forum's log directory;
* ``startup.log``, a short append-only timeline of launch stages written by
  :func:`log_startup`. It is reset at the start of every launch.
"""

from __future__ import annotations

import json
import logging
import os
import sys
import time
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

from .paths import DEFAULT_APP_DIR
from .util import parse_bool

__all__ = [
    "JsonFormatter",
    "console_handler",
    "configure_launch_logging",
    "prepare_startup_log",
    "log_startup",
]

STARTUP_LOG = DEFAULT_APP_DIR / "logs" / "startup.log"
STARTUP_LOG_LIMIT = 1_000_000
LAUNCH_LOG_NAME = "launcher.log"
LAUNCH_LOG_LIMIT = 5_000_000
LAUNCH_LOG_BACKUPS = 3

TEXT_FORMAT = "%(asctime)sZ [%(levelname)s] %(name)s | %(message)s"
TEXT_DATEFMT = "%Y-%m-%d %H:%M:%S"

_startup_log_path: Path = STARTUP_LOG

# attributes every LogRecord carries; anything else came in through ``extra``
_STANDARD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime"}


class _UTCFormatter(logging.Formatter):
    converter = time.gmtime


class JsonFormatter(logging.Formatter):
    """One JSON object per record, including ``extra`` fields."""

    def format(self, record: logging.LogRecord) -> str:
        stamp = datetime.fromtimestamp(record.created, tz=timezone.utc)
        entry: dict[str, Any] = {
            "ts": stamp.strftime("%Y-%m-%dT%H:%M:%S.") + f"{stamp.microsecond // 1000:03d}Z",
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        entry.update(
            (key, value)
            for key, value in vars(record).items()
            if key not in _STANDARD_ATTRS and not key.startswith("_")
        )
        if record.exc_info:
            entry["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str, ensure_ascii=False)


def console_handler(level: int = logging.INFO, formatter: logging.Formatter | None = None) -> logging.Handler:
    """Return the launcher's stdout handler, installing it on first use.

    Repeated calls reconfigure the same handler instead of stacking new ones.
    """

    root = logging.getLogger()
    handler = next((h for h in root.handlers if getattr(h, "_forum_launcher_console", False)), None)
    if handler is None:
        handler = logging.StreamHandler(sys.stdout)
        handler._forum_launcher_console = True  # type: ignore[attr-defined]
        root.addHandler(handler)
    else:
        handler.setStream(sys.stdout)
    handler.setLevel(level)
    if formatter is not None:
        handler.setFormatter(formatter)
    root.setLevel(level)
    return handler


def prepare_startup_log(path: Path, *, limit: int = STARTUP_LOG_LIMIT, keep: int = 1) -> Path:
    """Start a fresh ``startup.log`` at ``path``.

    An oversized previous log is shifted to ``startup.log.1`` (older copies
    move up to ``keep``); a small one is simply emptied. ``path`` becomes
    the default target of :func:`log_startup`.
    """

    global _startup_log_path

    path.parent.mkdir(parents=True, exist_ok=True)
    try:
        size = path.stat().st_size
    except FileNotFoundError:
        size = None
    if size is not None:
        if size > limit and keep > 0:
            numbered = [path.with_name(f"{path.name}.{n}") for n in range(1, keep + 1)]
            numbered[-1].unlink(missing_ok=True)
            for older, newer in zip(reversed(numbered[1:]), reversed(numbered[:-1])):
                if newer.exists():
                    newer.replace(older)
            path.replace(numbered[0])
        else:
            path.write_text("", encoding="utf-8")

    _startup_log_path = path
    return path


def log_startup(message: str, path: Path | None = None) -> None:
    """Add a timestamped line to the startup timeline; never raises."""
    line = f"{datetime.now().isoformat(timespec='seconds')} {message}\n"
    try:
        with open(path or _startup_log_path, "a", encoding="utf-8") as fh:
            fh.write(line)
    except OSError:
        pass


def _level_from(value: str | int | None) -> int:
    if isinstance(value, int):
        return value
    name = (value or "").strip().upper()
    if not name:
        return logging.INFO
    if name.isdigit():
        return int(name)
    resolved = logging.getLevelName(name)
    return resolved if isinstance(resolved, int) else logging.INFO


def configure_launch_logging(
    log_dir: Path | None = None,
    *,
    level: str | int | None = None,
    json_logs: bool | None = None,
) -> Path | None:
    """Set up stdout logging and, with ``log_dir``, a rotating ``launcher.log``.

    ``level`` and ``json_logs`` default to ``LOG_LEVEL`` and ``LOG_JSON``.
    Returns the log file path, or ``None`` when only stdout is used.
    """

    resolved = _level_from(level if level is not None else os.getenv("LOG_LEVEL"))
    if json_logs is None:
        json_logs = bool(parse_bool(os.getenv("LOG_JSON")))
    formatter = JsonFormatter() if json_logs else _UTCFormatter(TEXT_FORMAT, datefmt=TEXT_DATEFMT)

    console_handler(resolved, formatter)
    if log_dir is None:
        return None

    target = (log_dir / LAUNCH_LOG_NAME).resolve()
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        logging.getLogger(__name__).warning("Cannot create log directory %s: %s", log_dir, exc)
        return None

    root = logging.getLogger()
    for stale in [h for h in root.handlers if getattr(h, "baseFilename", None) == str(target)]:
        root.removeHandler(stale)
        stale.close()

    file_handler = RotatingFileHandler(
        target, maxBytes=LAUNCH_LOG_LIMIT, backupCount=LAUNCH_LOG_BACKUPS, encoding="utf-8"
    )
    file_handler.setLevel(resolved)
    file_handler.setFormatter(formatter)
    root.addHandler(file_handler)
    return target
