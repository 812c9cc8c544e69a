from __future__ import annotations

import logging
import signal
from argparse import ArgumentParser
from typing import Mapping

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__
from .build_cache import CacheRecord, decide_build, fingerprint, manifest_path
from .env_defaults import SUPERVISOR_MODES
from .errors import LaunchError, ShutdownRequested
from .launch_config import LaunchConfiguration, resolve_configuration
from .logging_utils import configure_launch_logging, log_startup, prepare_startup_log
from .pipeline import LaunchPipeline
from .preflight import validate
from .restart import strategy_from_config
from .supervisor import flush_logging, install_signal_handlers

logger = logging.getLogger("forum_launcher")

console = Console()


def _build_parser() -> ArgumentParser:
    parser = ArgumentParser(prog="forum-launch", description="Launch and supervise the forum")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command", required=True)

    start_p = subparsers.add_parser("start", help="Prepare the container and start the forum")
    start_p.add_argument(
        "--mode",
        choices=SUPERVISOR_MODES,
        default=None,
        help="Override SUPERVISOR_MODE",
    )

    subparsers.add_parser("check", help="Run the pre-start validation only")
    subparsers.add_parser("restart", help="Restart the deployment using RESTART_STRATEGY")
    subparsers.add_parser("fingerprint", help="Show the build cache state")
    return parser


def _attach_file_logging(config: LaunchConfiguration) -> None:
    configure_launch_logging(config.log_dir)
    try:
        prepare_startup_log(config.log_dir / "startup.log")
    except OSError as exc:
        logger.warning("Startup log unavailable in %s: %s", config.log_dir, exc)


def _cmd_start(config: LaunchConfiguration, mode: str | None) -> int:
    return LaunchPipeline(config, console=console).launch(mode)


def _cmd_check(config: LaunchConfiguration) -> int:
    report = validate(config)
    table = Table(title="Pre-start Validation")
    table.add_column("Check", style="cyan", no_wrap=True)
    table.add_column("Result", style="green")
    for name, message in report.successes:
        table.add_row(name, message)
    for note in report.notes:
        table.add_row("note", note)
    console.print(table)
    return 0


def _cmd_restart(config: LaunchConfiguration) -> int:
    strategy_from_config(config).restart()
    return 0


def _cmd_fingerprint(config: LaunchConfiguration) -> int:
    manifest = manifest_path(config.app_dir)
    current = fingerprint(manifest)
    stored = CacheRecord.for_config_dir(config.config_dir).load()
    decision = decide_build(current, stored, config.force_build)
    table = Table(title="Build Cache")
    table.add_column("Item", style="cyan", no_wrap=True)
    table.add_column("Value", style="green")
    table.add_row("Manifest", str(manifest) if manifest else "missing")
    table.add_row("Current fingerprint", current or "-")
    table.add_row("Stored fingerprint", stored or "-")
    table.add_row("Decision", decision.value)
    console.print(table)
    return 0


def _report_failure(exc: LaunchError) -> None:
    logger.error("%s", exc.message)
    for line in exc.details:
        logger.error("  - %s", line)
    log_startup(f"Launch failed: {exc.message}")
    console.print(f"[bold red]Error:[/bold red] {escape(exc.message)}")
    for line in exc.details:
        console.print(f"  - {line}", markup=False, highlight=False)


def main(argv: list[str] | None = None, env: Mapping[str, str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    configure_launch_logging()
    previous = install_signal_handlers(cleanup=flush_logging)
    try:
        config = resolve_configuration(env)
        _attach_file_logging(config)
        logger.info("forum-launch %s: %s", __version__, args.command)
        if args.command == "start":
            return _cmd_start(config, args.mode)
        if args.command == "check":
            return _cmd_check(config)
        if args.command == "restart":
            return _cmd_restart(config)
        return _cmd_fingerprint(config)
    except LaunchError as exc:
        _report_failure(exc)
        return exc.exit_code
    except ShutdownRequested as exc:
        logger.info("Launch interrupted by signal %s", exc.signum)
        return exc.exit_code
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)
        flush_logging()


if __name__ == "__main__":
    raise SystemExit(main())
