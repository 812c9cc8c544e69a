"""Starting and supervising the forum process.

Two modes share one exit-code contract:

* **handoff** replaces the launcher with the forum process (``os.execvp``)
  so an external process manager supervises the forum directly.
* **supervise** keeps the launcher alive and relaunches the forum according
  to its exit code: ``0`` asks for a clean restart, ``200`` for a rebuild
  followed by a restart, anything else is fatal and becomes the launcher's
  own exit code.
"""

from __future__ import annotations

import enum
import logging
import os
import signal
import subprocess
import threading
import time
from typing import Callable, NoReturn, Optional, Sequence

from .errors import LaunchError, ShutdownRequested
from .logging_utils import log_startup

logger = logging.getLogger(__name__)

__all__ = [
    "CLEAN_RESTART_CODE",
    "REBUILD_RESTART_CODE",
    "SupervisionOutcome",
    "classify_exit",
    "normalize_exit_code",
    "install_signal_handlers",
    "run_bounded",
    "flush_logging",
    "handoff",
    "SupervisedLoop",
]

CLEAN_RESTART_CODE = 0
REBUILD_RESTART_CODE = 200
TERMINATION_SIGNALS: tuple[int, ...] = (signal.SIGTERM, signal.SIGINT, signal.SIGQUIT)


class SupervisionOutcome(enum.Enum):
    CLEAN_RESTART = "clean-restart"
    REBUILD_RESTART = "rebuild-restart"
    FATAL = "fatal"


def classify_exit(code: int) -> SupervisionOutcome:
    if code == CLEAN_RESTART_CODE:
        return SupervisionOutcome.CLEAN_RESTART
    if code == REBUILD_RESTART_CODE:
        return SupervisionOutcome.REBUILD_RESTART
    return SupervisionOutcome.FATAL


def normalize_exit_code(returncode: int) -> int:
    """Map ``Popen`` return codes to shell exit statuses (``-N`` -> ``128+N``)."""
    if returncode < 0:
        return 128 - returncode
    return returncode


def run_bounded(action: Callable[[], None], timeout: float) -> bool:
    """Run ``action`` in a helper thread for at most ``timeout`` seconds.

    Returns ``False`` when the action did not finish in time or raised.
    """

    errors: list[BaseException] = []

    def _target() -> None:
        try:
            action()
        except Exception as exc:
            errors.append(exc)

    worker = threading.Thread(target=_target, name="launch-cleanup", daemon=True)
    worker.start()
    worker.join(timeout)
    if worker.is_alive():
        logger.warning("Cleanup did not finish within %gs", timeout)
        return False
    if errors:
        logger.warning("Cleanup failed: %s", errors[0])
        return False
    return True


def flush_logging() -> None:
    for handler in logging.getLogger().handlers:
        try:
            handler.flush()
        except (OSError, ValueError):
            pass


def install_signal_handlers(
    cleanup: Callable[[], None] | None = None,
    *,
    cleanup_timeout: float = 5.0,
    signals: Sequence[int] = TERMINATION_SIGNALS,
) -> dict[int, object]:
    """Turn termination signals into :class:`ShutdownRequested`.

    The exception unwinds whatever blocking step is running (probe sleep,
    build subprocess, supervisor wait). ``cleanup`` runs first, bounded by
    ``cleanup_timeout``. Returns the previous handlers.
    """

    def _handler(signum: int, _frame: Optional[object] = None) -> None:
        logger.warning("Received signal %s; shutting down gracefully", signum)
        log_startup(f"Shutdown requested by signal {signum}")
        if cleanup is not None:
            run_bounded(cleanup, cleanup_timeout)
        raise ShutdownRequested(signum)

    previous: dict[int, object] = {}
    for sig in signals:
        previous[sig] = signal.signal(sig, _handler)
    return previous


def handoff(
    command: Sequence[str],
    *,
    cwd: os.PathLike | str | None = None,
    execvp: Callable[[str, Sequence[str]], None] = os.execvp,
) -> NoReturn:
    """Replace the current process with ``command``."""

    if cwd is not None:
        os.chdir(cwd)
    logger.info("Executing: %s", " ".join(command))
    log_startup(f"Handing off to: {' '.join(command)}")
    flush_logging()
    try:
        execvp(command[0], list(command))
    except OSError as exc:
        raise LaunchError(f"Failed to launch {command[0]}: {exc}") from exc
    # only reachable when execvp is substituted
    raise LaunchError(f"{command[0]} returned without replacing the launcher")


class SupervisedLoop:
    """Relaunch the forum based on its exit code until a fatal exit."""

    def __init__(
        self,
        command: Sequence[str],
        *,
        rebuild: Callable[[], None] | None = None,
        restart_delay: float = 2.0,
        grace_period: float = 10.0,
        cwd: os.PathLike | str | None = None,
        env: dict[str, str] | None = None,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.command = list(command)
        self.rebuild = rebuild
        self.restart_delay = restart_delay
        self.grace_period = grace_period
        self.cwd = cwd
        self.env = env
        self._popen = popen
        self._sleep = sleep
        self._proc: subprocess.Popen | None = None
        self.launches = 0
        self.rebuilds = 0

    def _launch(self) -> subprocess.Popen:
        self.launches += 1
        logger.info("Starting forum (launch #%d): %s", self.launches, " ".join(self.command))
        log_startup(f"Supervisor launch #{self.launches}")
        return self._popen(self.command, cwd=self.cwd, env=self.env)

    def _rebuild(self) -> None:
        if self.rebuild is None:
            logger.warning("Rebuild requested but no rebuild step is configured")
            return
        self.rebuilds += 1
        try:
            self.rebuild()
        except ShutdownRequested:
            raise
        except LaunchError as exc:
            logger.error("Rebuild failed, restarting with existing build: %s", exc)
            log_startup(f"Rebuild failed: {exc}")
        except Exception as exc:
            logger.exception("Rebuild crashed, restarting with existing build")
            log_startup(f"Rebuild failed: {exc!r}")

    def _stop_child(self) -> None:
        proc = self._proc
        if proc is None or proc.poll() is not None:
            return
        logger.info("Stopping forum (pid=%s), grace period %gs", proc.pid, self.grace_period)
        try:
            proc.send_signal(signal.SIGTERM)
            proc.wait(timeout=self.grace_period)
        except subprocess.TimeoutExpired:
            logger.warning("Forum did not stop in time; killing it")
            proc.kill()
            proc.wait()
        except ShutdownRequested:
            logger.warning("Second termination signal; killing forum")
            proc.kill()
            proc.wait()

    def run(self) -> int:
        """Supervise until a fatal exit or a termination signal.

        Returns the exit code the launcher should terminate with.
        """

        try:
            while True:
                self._proc = self._launch()
                returncode = self._proc.wait()
                self._proc = None
                code = normalize_exit_code(returncode)
                outcome = classify_exit(code)
                logger.info("Forum exited with code %d (%s)", code, outcome.value)
                log_startup(f"Forum exited with code {code} ({outcome.value})")

                if outcome is SupervisionOutcome.FATAL:
                    logger.error("Forum exited with fatal code %d; stopping supervisor", code)
                    return code
                if outcome is SupervisionOutcome.REBUILD_RESTART:
                    logger.info("Rebuild requested by forum")
                    self._rebuild()
                logger.info("Restarting forum in %g seconds...", self.restart_delay)
                self._sleep(self.restart_delay)
        except ShutdownRequested as exc:
            self._stop_child()
            logger.info("Supervisor stopped by signal %s", exc.signum)
            return exc.exit_code
