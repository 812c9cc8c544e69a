"""Dependency manifest synchronisation and installation."""

from __future__ import annotations

import logging
import shutil
import subprocess
from pathlib import Path
from typing import Callable

from .errors import DependencyInstallFailed, InvalidSetting
from .logging_utils import log_startup

logger = logging.getLogger(__name__)

__all__ = [
    "LOCK_FILES",
    "INSTALL_COMMANDS",
    "lock_file_for",
    "sync_manifests",
    "install_dependencies",
]

LOCK_FILES: dict[str, str] = {
    "npm": "package-lock.json",
    "yarn": "yarn.lock",
    "pnpm": "pnpm-lock.yaml",
}

INSTALL_COMMANDS: dict[str, list[str]] = {
    "npm": ["npm", "ci", "--only=production", "--no-audit", "--no-fund"],
    "yarn": ["yarn", "install", "--production", "--frozen-lockfile"],
    "pnpm": ["pnpm", "install", "--prod", "--frozen-lockfile"],
}


def lock_file_for(manager: str) -> str:
    try:
        return LOCK_FILES[manager]
    except KeyError:
        raise InvalidSetting("PACKAGE_MANAGER", manager, " or ".join(LOCK_FILES)) from None


def _same_file(a: Path, b: Path) -> bool:
    try:
        return a.resolve(strict=True) == b.resolve(strict=True)
    except OSError:
        return False


def _copy_and_link(src: Path, dest: Path, overwrite: bool) -> bool:
    """Persist ``src`` into ``dest`` and point ``src`` back at it.

    An existing ``dest`` is only replaced when ``overwrite`` is set.
    """

    changed = False
    if src.exists() and not _same_file(src, dest) and (overwrite or not dest.exists()):
        shutil.copyfile(src, dest)
        logger.info("Copied %s to %s", src.name, dest.parent)
        changed = True
    if dest.exists() and not _same_file(src, dest):
        if src.exists() or src.is_symlink():
            src.unlink()
        src.symlink_to(dest)
        logger.info("Linked %s -> %s", src, dest)
        changed = True
    return changed


def sync_manifests(app_dir: Path, config_dir: Path, manager: str, override_lock: bool = False) -> bool:
    """Keep ``package.json`` and the lock file in the persistent config dir.

    The image's ``package.json`` always replaces the stored copy. A stored
    lock file is kept unless ``override_lock`` is set. The files in
    ``app_dir`` become symlinks to the copies in ``config_dir`` so resolved
    dependency versions survive container replacement. Returns ``True``
    when anything was copied or linked.
    """

    lock_name = lock_file_for(manager)
    logger.info("Setting up package files for %s...", manager)
    changed = _copy_and_link(app_dir / "package.json", config_dir / "package.json", True)
    changed = _copy_and_link(app_dir / lock_name, config_dir / lock_name, override_lock) or changed
    return changed


def install_dependencies(
    app_dir: Path,
    manager: str,
    *,
    timeout: float | None = None,
    run: Callable[..., subprocess.CompletedProcess] = subprocess.run,
) -> None:
    """Run the production install for ``manager`` inside ``app_dir``."""

    lock_file_for(manager)
    cmd = INSTALL_COMMANDS[manager]
    logger.info("Installing dependencies with %s...", manager)
    log_startup(f"Installing dependencies: {' '.join(cmd)}")
    try:
        result = run(cmd, cwd=app_dir, timeout=timeout)
    except FileNotFoundError as exc:
        raise DependencyInstallFailed(manager, None) from exc
    except subprocess.TimeoutExpired as exc:
        raise DependencyInstallFailed(manager, None) from exc
    if result.returncode != 0:
        raise DependencyInstallFailed(manager, result.returncode)
    logger.info("Dependencies installed successfully")
