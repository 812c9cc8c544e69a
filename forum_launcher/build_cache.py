"""Conditional forum build driven by a dependency-manifest fingerprint.

The fingerprint of the manifest that was last built successfully is stored
in ``install_hash.md5`` inside the persistent config directory. A changed
fingerprint triggers ``upgrade``; an unchanged one only rebuilds when the
force-build flag is set.
"""

from __future__ import annotations

import enum
import hashlib
import logging
import os
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional

from .errors import BuildFailed, BuildTimedOut
from .launch_config import LaunchConfiguration
from .logging_utils import log_startup
from .paths import CACHE_RECORD_FILENAME
from .util import first_existing

logger = logging.getLogger(__name__)

__all__ = [
    "BuildDecision",
    "BuildOutcome",
    "CacheRecord",
    "BuildRunner",
    "manifest_path",
    "fingerprint",
    "decide_build",
    "verify_build_output",
]

CACHE_BUSTER = "cache-buster"


class BuildDecision(enum.Enum):
    UPGRADE = "upgrade"
    BUILD = "build"
    SKIP = "skip"


def manifest_path(app_dir: Path) -> Optional[Path]:
    """Return the dependency manifest to fingerprint, if any."""
    return first_existing([app_dir / "install" / "package.json", app_dir / "package.json"])


def fingerprint(path: Path | None) -> str:
    """Return the md5 hex digest of ``path``; empty string when absent."""
    if path is None or not path.is_file():
        return ""
    digest = hashlib.md5()
    with open(path, "rb") as fh:
        for chunk in iter(lambda: fh.read(65536), b""):
            digest.update(chunk)
    return digest.hexdigest()


@dataclass
class CacheRecord:
    """Fingerprint of the manifest from the last successful upgrade."""

    path: Path

    @classmethod
    def for_config_dir(cls, config_dir: Path) -> "CacheRecord":
        return cls(config_dir / CACHE_RECORD_FILENAME)

    def load(self) -> str:
        try:
            return self.path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return ""
        except OSError as exc:
            logger.warning("Cannot read cache record %s: %s", self.path, exc)
            return ""

    def save(self, value: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(value, encoding="utf-8")
        tmp.replace(self.path)


def decide_build(current: str, stored: str, force_build: bool) -> BuildDecision:
    if current and current != stored:
        return BuildDecision.UPGRADE
    if force_build:
        return BuildDecision.BUILD
    return BuildDecision.SKIP


@dataclass
class BuildOutcome:
    decision: BuildDecision
    fingerprint: str
    fallback: bool = False


Runner = Callable[..., subprocess.CompletedProcess]


class BuildRunner:
    """Invoke the forum's upgrade/build routines for one launch."""

    def __init__(self, config: LaunchConfiguration, *, run: Runner = subprocess.run) -> None:
        self.config = config
        self._run = run
        self.record = CacheRecord.for_config_dir(config.config_dir)

    def _command(self, verb: str) -> List[str]:
        return [
            self.config.node_binary,
            str(self.config.executable),
            verb,
            f"--config={self.config.runtime_config_path}",
        ]

    def upgrade_available(self) -> bool:
        exe = self.config.executable
        return exe.is_file() and os.access(exe, os.X_OK)

    def invoke(self, verb: str) -> None:
        """Run ``verb`` under the configured timeout; raise on failure."""

        cmd = self._command(verb)
        timeout = self.config.build_timeout or None
        logger.info("Executing: %s", " ".join(cmd))
        log_startup(f"Running forum {verb}")
        start = time.monotonic()
        try:
            result = self._run(cmd, cwd=self.config.app_dir, timeout=timeout)
        except subprocess.TimeoutExpired as exc:
            log_startup(f"Forum {verb} timed out")
            raise BuildTimedOut(verb, self.config.build_timeout) from exc
        except OSError as exc:
            raise BuildFailed(verb, None, str(exc)) from exc
        if result.returncode != 0:
            log_startup(f"Forum {verb} failed with exit code {result.returncode}")
            raise BuildFailed(verb, result.returncode)
        logger.info("Forum %s completed in %.1fs", verb, time.monotonic() - start)

    def plan(self) -> tuple[BuildDecision, str]:
        current = fingerprint(manifest_path(self.config.app_dir))
        stored = self.record.load()
        decision = decide_build(current, stored, self.config.force_build)
        return decision, current

    def run(self, decision: BuildDecision | None = None, current: str | None = None) -> BuildOutcome:
        """Execute the build step and return what was actually done."""

        if decision is None or current is None:
            decision, current = self.plan()

        if decision is BuildDecision.SKIP:
            logger.info("No changes in package.json and build not forced. Skipping build...")
            log_startup("Build skipped")
            return BuildOutcome(decision, current)

        if decision is BuildDecision.UPGRADE:
            logger.info("Package.json changes detected. Running upgrade...")
            if self.upgrade_available():
                self.invoke("upgrade")
                outcome = BuildOutcome(BuildDecision.UPGRADE, current)
            else:
                logger.warning(
                    "%s is not executable; running %s instead of upgrade",
                    self.config.executable,
                    self.config.build_verb,
                )
                log_startup("Upgrade unavailable, falling back to build")
                self.invoke(self.config.build_verb)
                outcome = BuildOutcome(BuildDecision.BUILD, current, fallback=True)
            self.record.save(current)
            logger.info("Upgrade completed and hash saved")
        else:
            logger.info("Build before start is enabled. Building...")
            self.invoke(self.config.build_verb)
            outcome = BuildOutcome(BuildDecision.BUILD, current)

        verify_build_output(self.config.app_dir)
        return outcome


def verify_build_output(app_dir: Path) -> List[str]:
    """Report build output directories and ensure a cache-buster file exists.

    Never raises; returns the notes it logged.
    """

    notes: List[str] = []
    for rel in ("build/public", "public/build"):
        directory = app_dir / rel
        if directory.is_dir():
            try:
                count = sum(1 for _ in directory.iterdir())
            except OSError as exc:
                notes.append(f"cannot list {rel}: {exc}")
                continue
            notes.append(f"found {rel} directory with {count} files")

    buster = app_dir / "build" / CACHE_BUSTER
    if not buster.exists():
        try:
            buster.parent.mkdir(parents=True, exist_ok=True)
            buster.write_text(str(int(time.time())), encoding="utf-8")
            notes.append("created missing cache-buster file")
        except OSError as exc:
            notes.append(f"could not create cache-buster: {exc}")

    for note in notes:
        logger.info("Build verification: %s", note)
    return notes
