"""Environment resolution for one launch attempt.

:func:`resolve_configuration` turns the raw process environment into an
immutable :class:`LaunchConfiguration`. It only reads: the required database
settings are checked before anything else so a missing key never leaves
directories or processes behind. :func:`ensure_directories` performs the
filesystem side of environment preparation.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import os
import secrets
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from .env_defaults import (
    DEFAULTS,
    PACKAGE_MANAGERS,
    REQUIRED,
    RESTART_STRATEGIES,
    SUPERVISOR_MODES,
)
from .errors import DirectoryNotWritable, InvalidSetting, MissingRequiredSetting
from .paths import CONFIG_FILENAME
from .util import parse_bool, redact

logger = logging.getLogger(__name__)

__all__ = [
    "LaunchConfiguration",
    "resolve_configuration",
    "ensure_directories",
    "ensure_writable_directory",
]


@dataclass(frozen=True)
class LaunchConfiguration:
    """Resolved settings for a single launch; never mutated after creation."""

    package_manager: str
    config_dir: Path
    app_dir: Path
    force_build: bool
    override_lock: bool
    site_url: str
    secret: str
    session_secret: str
    db_host: str
    db_port: int
    db_user: str
    db_password: str
    db_name: str
    db_auth_source: str
    db_tls: bool
    port: int
    probe_attempts: int
    probe_interval: float
    probe_timeout: float
    build_timeout: float
    build_verb: str
    node_binary: str
    install_dependencies: bool
    documentdb_tuning: bool
    reset_plugins: bool
    patch_assets: bool
    asset_dependency_url: str
    supervisor_mode: str
    restart_delay: float
    shutdown_grace_period: float
    restart_strategy: str
    ecs_cluster: str
    ecs_service: str
    aws_region: str
    setup: bool = False

    @property
    def config_path(self) -> Path:
        return self.config_dir / CONFIG_FILENAME

    @property
    def runtime_config_path(self) -> Path:
        """Copy of the generated config inside the application directory."""
        return self.app_dir / CONFIG_FILENAME

    @property
    def upload_dir(self) -> Path:
        return self.app_dir / "public" / "uploads"

    @property
    def log_dir(self) -> Path:
        return self.app_dir / "logs"

    @property
    def build_dir(self) -> Path:
        return self.app_dir / "build"

    @property
    def asset_dir(self) -> Path:
        return self.build_dir / "public"

    @property
    def executable(self) -> Path:
        return self.app_dir / "nodebb"

    def summary_rows(self) -> list[tuple[str, str]]:
        return [
            ("Config file", str(self.config_path)),
            ("Package manager", self.package_manager),
            ("Site URL", self.site_url),
            ("Database", f"{self.db_host}:{self.db_port}/{self.db_name}"),
            ("Auth source", self.db_auth_source),
            ("DB password", redact("DB_PASSWORD", self.db_password)),
            ("Port", str(self.port)),
            ("Force build", "yes" if self.force_build else "no"),
            ("Supervisor mode", self.supervisor_mode),
        ]


def _get(env: Mapping[str, str], name: str) -> str:
    value = env.get(name)
    if value is None or not value.strip():
        return DEFAULTS.get(name, "")
    return value.strip()


def _get_bool(env: Mapping[str, str], name: str, default: bool | None = None) -> bool:
    raw = env.get(name)
    if raw is None or not raw.strip():
        if default is not None:
            return default
        raw = DEFAULTS[name]
    value = parse_bool(raw)
    if value is None:
        raise InvalidSetting(name, raw, "a boolean such as true/false")
    return value


def _get_int(env: Mapping[str, str], name: str, *, minimum: int = 0) -> int:
    raw = _get(env, name)
    try:
        value = int(raw)
    except ValueError:
        raise InvalidSetting(name, raw, "an integer") from None
    if value < minimum:
        raise InvalidSetting(name, raw, f"an integer >= {minimum}")
    return value


def _get_float(env: Mapping[str, str], name: str) -> float:
    raw = _get(env, name)
    try:
        value = float(raw)
    except ValueError:
        raise InvalidSetting(name, raw, "a number") from None
    if value < 0:
        raise InvalidSetting(name, raw, "a non-negative number")
    return value


def _get_choice(env: Mapping[str, str], name: str, choices: tuple[str, ...]) -> str:
    value = _get(env, name).lower()
    if value not in choices:
        raise InvalidSetting(name, value, " or ".join(choices))
    return value


def _existing_secrets(config_path: Path) -> dict[str, str]:
    """Return secrets from a config file written by an earlier launch."""

    try:
        data = json.loads(config_path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return {}
    if not isinstance(data, dict):
        return {}
    found: dict[str, str] = {}
    for key in ("secret", "session_secret"):
        value = data.get(key)
        if isinstance(value, str) and value:
            found[key] = value
    return found


def _derive_session_secret(secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), b"forum-launcher:session", hashlib.sha256).hexdigest()


def resolve_configuration(env: Mapping[str, str] | None = None) -> LaunchConfiguration:
    """Build a :class:`LaunchConfiguration` from ``env`` (``os.environ`` by default).

    Raises :class:`MissingRequiredSetting` for the first absent database
    setting, in the order of :data:`env_defaults.REQUIRED`, and
    :class:`InvalidSetting` for malformed optional values.
    """

    if env is None:
        env = os.environ

    for key in REQUIRED:
        value = env.get(key)
        if value is None or not value.strip():
            raise MissingRequiredSetting(key)

    config_dir = Path(_get(env, "CONFIG_DIR"))
    app_dir = Path(_get(env, "APP_DIR"))
    documentdb = _get_bool(env, "DOCUMENTDB_TUNING")

    # START_BUILD wins over the legacy FORCE_BUILD_BEFORE_START alias
    if (env.get("START_BUILD") or "").strip():
        force_build = _get_bool(env, "START_BUILD")
    elif (env.get("FORCE_BUILD_BEFORE_START") or "").strip():
        force_build = _get_bool(env, "FORCE_BUILD_BEFORE_START")
    else:
        force_build = _get_bool(env, "START_BUILD")

    previous = _existing_secrets(config_dir / CONFIG_FILENAME)
    secret = (env.get("NODEBB_SECRET") or "").strip() or previous.get("secret")
    session_secret = (env.get("SESSION_SECRET") or "").strip() or previous.get("session_secret")
    if not secret:
        secret = secrets.token_hex(32)
        logger.info("Generated a new forum secret")
        if not session_secret:
            session_secret = secrets.token_hex(32)
    elif not session_secret:
        # a known secret always yields the same session secret
        session_secret = _derive_session_secret(secret)

    return LaunchConfiguration(
        package_manager=_get_choice(env, "PACKAGE_MANAGER", PACKAGE_MANAGERS),
        config_dir=config_dir,
        app_dir=app_dir,
        force_build=force_build,
        override_lock=_get_bool(env, "OVERRIDE_UPDATE_LOCK"),
        site_url=_get(env, "SITE_URL"),
        secret=secret,
        session_secret=session_secret,
        db_host=env["NODEBB_DB_HOST"].strip(),
        db_port=_get_int(env, "NODEBB_DB_PORT", minimum=1),
        db_user=env["NODEBB_DB_USER"].strip(),
        db_password=env["NODEBB_DB_PASSWORD"],
        db_name=env["NODEBB_DB_NAME"].strip(),
        db_auth_source=_get(env, "NODEBB_DB_AUTH_SOURCE"),
        db_tls=_get_bool(env, "NODEBB_DB_SSL", default=documentdb),
        port=_get_int(env, "PORT", minimum=1),
        probe_attempts=_get_int(env, "DB_PROBE_ATTEMPTS", minimum=1),
        probe_interval=_get_float(env, "DB_PROBE_INTERVAL"),
        probe_timeout=_get_float(env, "DB_PROBE_TIMEOUT"),
        build_timeout=_get_float(env, "BUILD_TIMEOUT"),
        build_verb=_get(env, "NODEBB_BUILD_VERB"),
        node_binary=_get(env, "NODE_BINARY"),
        install_dependencies=_get_bool(env, "INSTALL_DEPENDENCIES"),
        documentdb_tuning=documentdb,
        reset_plugins=_get_bool(env, "RESET_PLUGINS"),
        patch_assets=_get_bool(env, "PATCH_ASSETS"),
        asset_dependency_url=_get(env, "ASSET_DEPENDENCY_URL"),
        supervisor_mode=_get_choice(env, "SUPERVISOR_MODE", SUPERVISOR_MODES),
        restart_delay=_get_float(env, "RESTART_DELAY"),
        shutdown_grace_period=_get_float(env, "SHUTDOWN_GRACE_PERIOD"),
        restart_strategy=_get_choice(env, "RESTART_STRATEGY", RESTART_STRATEGIES),
        ecs_cluster=_get(env, "ECS_CLUSTER"),
        ecs_service=_get(env, "ECS_SERVICE"),
        aws_region=_get(env, "AWS_REGION"),
        setup=bool((env.get("SETUP") or "").strip()),
    )


def _repair_permissions(path: Path) -> None:
    """Best-effort ownership and mode repair; errors are logged, not raised."""

    uid, gid = os.getuid(), os.getgid()
    targets = [path]
    try:
        targets.extend(path.rglob("*"))
    except OSError as exc:
        logger.debug("Cannot walk %s: %s", path, exc)
    for target in targets:
        try:
            os.chown(target, uid, gid)
        except OSError as exc:
            logger.debug("chown %s failed: %s", target, exc)
        try:
            os.chmod(target, 0o760)
        except OSError as exc:
            logger.debug("chmod %s failed: %s", target, exc)


def ensure_writable_directory(path: Path, description: str) -> Path:
    """Create ``path`` if needed and make sure it is writable.

    One permission repair is attempted before giving up with
    :class:`DirectoryNotWritable`.
    """

    if not path.is_dir():
        logger.info("Creating %s directory: %s", description, path)
        try:
            path.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise DirectoryNotWritable(str(path), f"cannot create: {exc}") from exc

    if not os.access(path, os.W_OK):
        logger.warning("Fixing permissions for %s directory %s", description, path)
        _repair_permissions(path)
        if not os.access(path, os.W_OK):
            raise DirectoryNotWritable(str(path))

    logger.info("%s directory ready: %s", description.capitalize(), path)
    return path


def ensure_directories(config: LaunchConfiguration) -> list[Path]:
    """Prepare the config, upload and log directories."""

    return [
        ensure_writable_directory(config.config_dir, "config"),
        ensure_writable_directory(config.upload_dir, "uploads"),
        ensure_writable_directory(config.log_dir, "logs"),
    ]
