"""Pre-start validation of the forum installation.

Each check is an independent callable returning ``(ok, message)``. All of
them run, so a single report lists every problem instead of only the first
one. Checks follow the ``Check`` convention of the startup helpers: they do
not raise; :func:`run_preflight` turns unexpected exceptions into failures.
"""

from __future__ import annotations

import json
import logging
import os
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Sequence, Tuple

from .asset_patcher import is_patched
from .errors import PreflightFailed
from .launch_config import LaunchConfiguration
from .logging_utils import log_startup

logger = logging.getLogger(__name__)

Check = Tuple[bool, str]
NamedCheck = Tuple[str, Callable[[], Check]]

__all__ = [
    "Check",
    "ValidationReport",
    "check_config_file",
    "check_executable",
    "check_dependency_dir",
    "check_writable_dir",
    "check_runtime",
    "default_checks",
    "run_preflight",
    "enforce",
    "write_report",
    "validate",
    "NamedCheck",
]

CRITICAL_DIRS: tuple[str, ...] = ("public/uploads", "logs", "build")


@dataclass
class ValidationReport:
    successes: List[Tuple[str, str]] = field(default_factory=list)
    failures: List[Tuple[str, str]] = field(default_factory=list)
    notes: List[str] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.failures)

    @property
    def ok(self) -> bool:
        return not self.failures

    def details(self) -> List[str]:
        return [f"{name}: {message}" for name, message in self.failures]

    def to_dict(self) -> dict:
        return {
            "successes": [{"name": n, "message": m} for n, m in self.successes],
            "failures": [{"name": n, "message": m} for n, m in self.failures],
            "notes": list(self.notes),
        }


def check_config_file(path: Path) -> Check:
    if not path.is_file():
        return False, f"Configuration file missing: {path}"
    return True, f"Configuration file exists: {path}"


def check_executable(path: Path) -> Check:
    if not path.is_file():
        return False, f"Forum executable missing: {path}"
    if not os.access(path, os.X_OK):
        return False, f"Forum executable not executable: {path}"
    return True, "Forum executable ready"


def check_dependency_dir(path: Path) -> Check:
    if not path.is_dir():
        return False, f"Dependency directory missing: {path}"
    return True, "Node modules available"


def check_writable_dir(path: Path) -> Check:
    """Create ``path`` when missing; fail only when it is not writable."""

    if not path.is_dir():
        try:
            path.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            return False, f"Cannot create directory {path}: {exc}"
        logger.info("Created directory: %s", path)
    if not os.access(path, os.W_OK):
        return False, f"Directory not writable: {path}"
    return True, f"Directory writable: {path}"


def check_runtime(node_binary: str, timeout: float = 15.0) -> Check:
    try:
        result = subprocess.run(
            [node_binary, "-e", "console.log('Node.js runtime OK')"],
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except FileNotFoundError:
        return False, f"Runtime {node_binary!r} not found"
    except subprocess.TimeoutExpired:
        return False, f"Runtime {node_binary!r} smoke test timed out"
    except OSError as exc:
        return False, f"Runtime {node_binary!r} failed to execute: {exc}"
    if result.returncode != 0:
        stderr = (result.stderr or "").strip()[:200]
        return False, f"Runtime {node_binary!r} error (exit {result.returncode}): {stderr}"
    return True, "Node.js runtime working"


def default_checks(config: LaunchConfiguration) -> List[NamedCheck]:
    app = config.app_dir
    checks: List[NamedCheck] = [
        ("config", lambda: check_config_file(config.runtime_config_path)),
        ("executable", lambda: check_executable(config.executable)),
        ("node_modules", lambda: check_dependency_dir(app / "node_modules")),
    ]
    for rel in CRITICAL_DIRS:
        checks.append((f"dir:{rel}", lambda p=app / rel: check_writable_dir(p)))
    checks.append(("runtime", lambda: check_runtime(config.node_binary)))
    return checks


def _asset_note(config: LaunchConfiguration) -> str | None:
    bundle = config.asset_dir / "admin.min.js"
    if not bundle.exists():
        return "admin.min.js not found"
    try:
        if not is_patched(bundle.read_bytes()):
            return "jQuery not detected in admin.min.js"
    except OSError as exc:
        return f"cannot read admin.min.js: {exc}"
    return None


def run_preflight(checks: Sequence[NamedCheck]) -> ValidationReport:
    report = ValidationReport()
    for name, check in checks:
        try:
            ok, message = check()
        except Exception as exc:  # a broken check counts as a failure
            ok, message = False, f"check raised {exc.__class__.__name__}: {exc}"
        if ok:
            report.successes.append((name, message))
            logger.info("Preflight %s: %s", name, message)
        else:
            report.failures.append((name, message))
            logger.error("Preflight %s: %s", name, message)
    return report


def write_report(report: ValidationReport, path: Path) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(report.to_dict(), indent=2), encoding="utf-8")
    except OSError as exc:
        logger.warning("Unable to write preflight report %s: %s", path, exc)


def enforce(report: ValidationReport) -> None:
    if report.ok:
        logger.info("All pre-start validations passed")
        log_startup("Preflight passed")
        return
    log_startup(f"Preflight failed: {report.count} error(s)")
    raise PreflightFailed(report.count, report.details())


def validate(config: LaunchConfiguration, checks: Sequence[NamedCheck] | None = None) -> ValidationReport:
    """Run the gate for ``config`` and raise :class:`PreflightFailed` on errors."""

    report = run_preflight(checks if checks is not None else default_checks(config))
    if config.patch_assets:
        note = _asset_note(config)
        if note:
            logger.warning("Preflight note: %s", note)
            report.notes.append(note)
    write_report(report, config.log_dir / "preflight.json")
    enforce(report)
    return report
