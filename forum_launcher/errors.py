"""Exceptions raised by the launch pipeline.

Every :class:`LaunchError` aborts the launch. The CLI prints the message and
each entry of :attr:`LaunchError.details` before exiting with
:attr:`LaunchError.exit_code`.
"""

from __future__ import annotations

from typing import Iterable, List, Sequence

__all__ = [
    "LaunchError",
    "MissingRequiredSetting",
    "InvalidSetting",
    "DirectoryNotWritable",
    "DependencyUnreachable",
    "DependencyInstallFailed",
    "BuildFailed",
    "BuildTimedOut",
    "AssetPatchFailed",
    "PreflightFailed",
    "ShutdownRequested",
]


class LaunchError(Exception):
    """Base class for launch-aborting failures."""

    exit_code = 1

    def __init__(self, message: str, details: Iterable[str] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details: List[str] = list(details or [])


class MissingRequiredSetting(LaunchError):
    def __init__(self, key: str) -> None:
        super().__init__(f"Required environment variable {key} is not set")
        self.key = key


class InvalidSetting(LaunchError):
    def __init__(self, key: str, value: str, expected: str) -> None:
        super().__init__(f"Invalid value for {key}: {value!r} (expected {expected})")
        self.key = key
        self.value = value


class DirectoryNotWritable(LaunchError):
    def __init__(self, path: str, reason: str | None = None) -> None:
        message = f"No write permission for directory {path}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.path = path


class DependencyUnreachable(LaunchError):
    def __init__(self, host: str, port: int, attempts: int, last_error: str | None = None) -> None:
        details = [f"last error: {last_error}"] if last_error else []
        super().__init__(
            f"Database unreachable at {host}:{port} after {attempts} attempts",
            details,
        )
        self.host = host
        self.port = port
        self.attempts = attempts


class DependencyInstallFailed(LaunchError):
    def __init__(self, manager: str, returncode: int | None) -> None:
        super().__init__(
            f"Failed to install dependencies with {manager} (exit code {returncode})"
        )
        self.manager = manager
        self.returncode = returncode


class BuildFailed(LaunchError):
    def __init__(self, verb: str, returncode: int | None, reason: str | None = None) -> None:
        message = f"Forum {verb} failed"
        if returncode is not None:
            message = f"{message} with exit code {returncode}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.verb = verb
        self.returncode = returncode


class BuildTimedOut(LaunchError):
    def __init__(self, verb: str, timeout: float) -> None:
        super().__init__(f"Forum {verb} did not finish within {timeout:g}s")
        self.verb = verb
        self.timeout = timeout


class AssetPatchFailed(LaunchError):
    pass


class PreflightFailed(LaunchError):
    def __init__(self, count: int, details: Sequence[str]) -> None:
        super().__init__(f"{count} pre-start validation error(s) found", details)
        self.count = count


class ShutdownRequested(Exception):
    """Raised from the signal handler to unwind the current blocking step."""

    def __init__(self, signum: int) -> None:
        super().__init__(f"received signal {signum}")
        self.signum = signum

    @property
    def exit_code(self) -> int:
        return 128 + self.signum
