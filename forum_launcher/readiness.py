"""Database readiness probing.

Container start order is not guaranteed, so the launcher polls the database
port instead of failing on the first refused connection. The polling bounds
come from :class:`~forum_launcher.launch_config.LaunchConfiguration`.
"""

from __future__ import annotations

import logging
import socket
import time
from dataclasses import dataclass
from typing import Callable, Optional

from .errors import DependencyUnreachable
from .logging_utils import log_startup

logger = logging.getLogger(__name__)

__all__ = ["ProbeResult", "probe_once", "wait_for_dependency"]


@dataclass(frozen=True)
class ProbeResult:
    host: str
    port: int
    attempt: int
    reachable: bool
    error: Optional[str] = None


def probe_once(host: str, port: int, attempt: int, timeout: float = 2.0) -> ProbeResult:
    """Try a single TCP connection to ``host:port``."""
    try:
        with socket.create_connection((host, port), timeout=timeout):
            pass
    except OSError as exc:
        return ProbeResult(host, port, attempt, False, str(exc) or exc.__class__.__name__)
    return ProbeResult(host, port, attempt, True)


def wait_for_dependency(
    host: str,
    port: int,
    *,
    max_attempts: int = 60,
    interval: float = 3.0,
    timeout: float = 2.0,
    probe: Callable[[str, int, int, float], ProbeResult] = probe_once,
    sleep: Callable[[float], None] = time.sleep,
) -> ProbeResult:
    """Block until ``host:port`` accepts connections.

    Performs at most ``max_attempts`` probes with ``interval`` seconds between
    consecutive attempts and returns the first successful
    :class:`ProbeResult`. Raises :class:`DependencyUnreachable` once every
    attempt failed.
    """

    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    logger.info("Testing connection to %s:%s...", host, port)
    last: ProbeResult | None = None
    for attempt in range(1, max_attempts + 1):
        last = probe(host, port, attempt, timeout)
        if last.reachable:
            logger.info("Database is reachable at %s:%s (attempt %d)", host, port, attempt)
            log_startup(f"Database reachable at {host}:{port} after {attempt} attempt(s)")
            return last
        if attempt < max_attempts:
            logger.info(
                "[%d/%d] Database not ready (%s), waiting %g seconds...",
                attempt,
                max_attempts,
                last.error,
                interval,
            )
            sleep(interval)

    log_startup(f"Database unreachable at {host}:{port} after {max_attempts} attempts")
    raise DependencyUnreachable(host, port, max_attempts, last.error if last else None)
