"""The launch sequence for one container start.

:class:`LaunchPipeline` runs the stages in a fixed order and stops at the
first failing gate::

    directories -> database -> dependencies -> config -> build
        -> plugins -> assets -> preflight -> start

Optional stages are switched on or off by :class:`LaunchConfiguration`
rather than by separate entry points. External effects (subprocesses, the
TCP probe, downloads, ``exec``) are injectable so the whole sequence can be
driven from tests.
"""

from __future__ import annotations

import json
import logging
import os
import subprocess
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

from rich.console import Console
from rich.table import Table

from .asset_patcher import AssetPatcher, PatchReport, fetch_dependency
from .build_cache import BuildOutcome, BuildRunner, verify_build_output
from .config_builder import write_forum_config
from .launch_config import LaunchConfiguration, ensure_directories
from .logging_utils import log_startup
from .packages import install_dependencies, sync_manifests
from .preflight import NamedCheck, ValidationReport, validate
from .readiness import ProbeResult, probe_once, wait_for_dependency
from .supervisor import SupervisedLoop, handoff

logger = logging.getLogger(__name__)

__all__ = ["StageResult", "LaunchPipeline", "PLUGIN_RESET_VERSION_PREFIX"]

PLUGIN_RESET_VERSION_PREFIX = "4.4"
PLUGIN_RESET_TIMEOUT = 120


@dataclass
class StageResult:
    name: str
    status: str
    detail: str = ""


class LaunchPipeline:
    """Take the forum from "code present" to "process running"."""

    def __init__(
        self,
        config: LaunchConfiguration,
        *,
        run: Callable[..., subprocess.CompletedProcess] = subprocess.run,
        probe: Callable[[str, int, int, float], ProbeResult] = probe_once,
        sleep: Callable[[float], None] = time.sleep,
        fetch: Callable[[str], bytes] = fetch_dependency,
        execvp: Callable[[str, Sequence[str]], None] = os.execvp,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
        checks: Optional[Sequence[NamedCheck]] = None,
        console: Console | None = None,
    ) -> None:
        self.config = config
        self._run = run
        self._probe = probe
        self._sleep = sleep
        self._fetch = fetch
        self._execvp = execvp
        self._popen = popen
        self._checks = checks
        self.console = console or Console()
        self.stages: List[StageResult] = []
        self.build_outcome: BuildOutcome | None = None
        self.patch_report: PatchReport | None = None
        self.preflight_report: ValidationReport | None = None

    # ------------------------------------------------------------------
    # commands
    def start_command(self) -> List[str]:
        return [self.config.node_binary, "app.js", f"--config={self.config.runtime_config_path}"]

    def setup_command(self) -> List[str]:
        return [str(self.config.executable), "setup", f"--config={self.config.config_path}"]

    def _record(self, name: str, status: str, detail: str = "") -> None:
        self.stages.append(StageResult(name, status, detail))
        log_startup(f"Stage {name}: {status}{' - ' + detail if detail else ''}")

    # ------------------------------------------------------------------
    # stages
    def prepare_directories(self) -> None:
        created = ensure_directories(self.config)
        self._record("directories", "ok", f"{len(created)} ready")

    def wait_for_database(self) -> ProbeResult:
        cfg = self.config
        result = wait_for_dependency(
            cfg.db_host,
            cfg.db_port,
            max_attempts=cfg.probe_attempts,
            interval=cfg.probe_interval,
            timeout=cfg.probe_timeout,
            probe=self._probe,
            sleep=self._sleep,
        )
        self._record("database", "ok", f"reachable after {result.attempt} attempt(s)")
        return result

    def install_dependencies(self) -> None:
        cfg = self.config
        if not cfg.install_dependencies:
            self._record("dependencies", "skipped")
            return
        sync_manifests(cfg.app_dir, cfg.config_dir, cfg.package_manager, cfg.override_lock)
        install_dependencies(
            cfg.app_dir, cfg.package_manager, timeout=cfg.build_timeout or None, run=self._run
        )
        self._record("dependencies", "ok", cfg.package_manager)

    def write_config(self) -> None:
        path = write_forum_config(self.config)
        detail = "documentdb tuning" if self.config.documentdb_tuning else str(path)
        self._record("config", "ok", detail)

    def build(self) -> BuildOutcome:
        outcome = BuildRunner(self.config, run=self._run).run()
        detail = "upgrade unavailable, built instead" if outcome.fallback else ""
        self._record("build", outcome.decision.value, detail)
        self.build_outcome = outcome
        return outcome

    def app_version(self) -> str | None:
        manifest = self.config.app_dir / "package.json"
        try:
            data = json.loads(manifest.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.debug("Cannot read forum version from %s: %s", manifest, exc)
            return None
        version = data.get("version") if isinstance(data, dict) else None
        return str(version) if version else None

    def reset_plugins(self) -> bool:
        """Deactivate third-party plugins on affected forum versions.

        Failures are logged and ignored; returns ``True`` when the reset ran
        successfully.
        """

        cfg = self.config
        if not cfg.reset_plugins:
            self._record("plugins", "skipped")
            return False
        version = self.app_version()
        if not version or not version.startswith(PLUGIN_RESET_VERSION_PREFIX):
            self._record("plugins", "skipped", f"version {version or 'unknown'}")
            return False
        if not cfg.executable.is_file():
            self._record("plugins", "skipped", "forum executable missing")
            return False

        logger.info("Forum v%s detected; resetting plugins", version)
        cmd = [str(cfg.executable), "reset", "-p", f"--config={cfg.runtime_config_path}"]
        try:
            result = self._run(
                cmd,
                cwd=cfg.app_dir,
                input="y\n",
                text=True,
                capture_output=True,
                timeout=PLUGIN_RESET_TIMEOUT,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            logger.warning("Plugin reset failed: %s", exc)
            self._record("plugins", "warning", str(exc))
            return False
        if result.returncode != 0:
            logger.warning("Plugin reset exited with code %d; continuing", result.returncode)
            self._record("plugins", "warning", f"exit code {result.returncode}")
            return False
        logger.info("Plugin reset completed")
        self._record("plugins", "ok", f"version {version}")
        return True

    def patch_assets(self) -> PatchReport | None:
        cfg = self.config
        if not cfg.patch_assets:
            self._record("assets", "skipped")
            return None
        report = AssetPatcher(cfg.asset_dir, cfg.asset_dependency_url, fetch=self._fetch).patch()
        for warning in report.warnings:
            logger.warning("Asset patch: %s", warning)
        status = "warning" if report.warnings else "ok"
        detail = f"patched {len(report.patched)}, already patched {len(report.already_patched)}"
        self._record("assets", status, detail)
        self.patch_report = report
        return report

    def preflight(self) -> ValidationReport:
        report = validate(self.config, self._checks)
        self._record("preflight", "ok", f"{len(report.successes)} checks passed")
        self.preflight_report = report
        return report

    # ------------------------------------------------------------------
    def prepare(self) -> None:
        """Run every stage up to, but not including, starting the forum.

        A setup session stops after the config has been written.
        """

        log_startup("Launch pipeline started")
        self.prepare_directories()
        self.wait_for_database()
        self.install_dependencies()
        self.write_config()
        if self.config.setup:
            return
        self.build()
        self.reset_plugins()
        self.patch_assets()
        self.preflight()

    def rebuild(self) -> None:
        """Rebuild requested by the running forum (exit code 200)."""

        logger.info("Rebuilding forum assets")
        runner = BuildRunner(self.config, run=self._run)
        runner.invoke(self.config.build_verb)
        verify_build_output(self.config.app_dir)
        if self.config.patch_assets:
            AssetPatcher(self.config.asset_dir, self.config.asset_dependency_url, fetch=self._fetch).patch()
        log_startup("Rebuild completed")

    def render_summary(self) -> Table:
        table = Table(title="Launch Summary")
        table.add_column("Item", style="cyan", no_wrap=True)
        table.add_column("Status", style="green")
        for item, value in self.config.summary_rows():
            table.add_row(item, value)
        for stage in self.stages:
            status = stage.status if not stage.detail else f"{stage.status} ({stage.detail})"
            table.add_row(f"Stage: {stage.name}", status)
        self.console.print(table)
        return table

    def launch(self, mode: str | None = None) -> int:
        """Prepare and start the forum; returns the launcher's exit code.

        In handoff mode this only returns when ``execvp`` was replaced.
        """

        self.prepare()
        cfg = self.config

        if cfg.setup:
            logger.info("Starting setup session")
            self.render_summary()
            handoff(self.setup_command(), cwd=cfg.app_dir, execvp=self._execvp)

        mode = mode or cfg.supervisor_mode
        self._record("start", mode)
        self.render_summary()
        if mode == "handoff":
            handoff(self.start_command(), cwd=cfg.app_dir, execvp=self._execvp)

        loop = SupervisedLoop(
            self.start_command(),
            rebuild=self.rebuild,
            restart_delay=cfg.restart_delay,
            grace_period=cfg.shutdown_grace_period,
            cwd=cfg.app_dir,
            popen=self._popen,
            sleep=self._sleep,
        )
        return loop.run()
