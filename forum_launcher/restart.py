"""Ways to restart the running forum deployment.

``LocalExit`` asks the local supervisor for a clean restart by exiting with
code ``0``. ``RemoteRedeploy`` asks the container orchestrator for a rolling
replacement and falls back to ``LocalExit`` whenever that request cannot be
made.
"""

from __future__ import annotations

import logging
import subprocess
import sys
import time
from typing import Callable, List, Protocol

from .launch_config import LaunchConfiguration
from .logging_utils import log_startup
from .supervisor import CLEAN_RESTART_CODE

logger = logging.getLogger(__name__)

__all__ = ["RestartStrategy", "LocalExit", "RemoteRedeploy", "strategy_from_config"]


class RestartStrategy(Protocol):
    def restart(self) -> None:
        ...


class LocalExit:
    """Exit with the clean-restart code after ``delay`` seconds."""

    def __init__(
        self,
        delay: float = 1.0,
        *,
        sleep: Callable[[float], None] = time.sleep,
        exit: Callable[[int], None] = sys.exit,
    ) -> None:
        self.delay = delay
        self._sleep = sleep
        self._exit = exit

    def restart(self) -> None:
        logger.info("Using local restart: exiting with code %d in %gs", CLEAN_RESTART_CODE, self.delay)
        log_startup("Local restart requested")
        self._sleep(self.delay)
        self._exit(CLEAN_RESTART_CODE)


class RemoteRedeploy:
    """Force a new deployment of the ECS service through the AWS CLI."""

    def __init__(
        self,
        cluster: str,
        service: str,
        region: str,
        *,
        timeout: float = 5.0,
        fallback: RestartStrategy | None = None,
        run: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    ) -> None:
        self.cluster = cluster
        self.service = service
        self.region = region
        self.timeout = timeout
        self.fallback = fallback if fallback is not None else LocalExit()
        self._run = run

    def command(self) -> List[str]:
        return [
            "aws",
            "ecs",
            "update-service",
            "--cluster",
            self.cluster,
            "--service",
            self.service,
            "--force-new-deployment",
            "--region",
            self.region,
        ]

    def _fall_back(self, reason: str) -> None:
        logger.warning("Remote redeploy unavailable (%s); using fallback restart", reason)
        log_startup(f"Remote redeploy failed: {reason}")
        self.fallback.restart()

    def restart(self) -> None:
        logger.info("Requesting rolling deployment of %s/%s", self.cluster, self.service)
        try:
            result = self._run(self.command(), capture_output=True, text=True, timeout=self.timeout)
        except FileNotFoundError:
            self._fall_back("AWS CLI not available")
            return
        except subprocess.TimeoutExpired:
            self._fall_back(f"AWS CLI timed out after {self.timeout:g}s")
            return
        except OSError as exc:
            self._fall_back(str(exc))
            return
        if result.returncode != 0:
            stderr = (result.stderr or "").strip()
            self._fall_back(f"AWS CLI exited with code {result.returncode}: {stderr}".rstrip(": "))
            return
        logger.info("ECS rolling deployment initiated successfully")
        log_startup(f"Remote redeploy requested for {self.cluster}/{self.service}")


def strategy_from_config(config: LaunchConfiguration) -> RestartStrategy:
    if config.restart_strategy == "remote":
        return RemoteRedeploy(config.ecs_cluster, config.ecs_service, config.aws_region)
    return LocalExit()
