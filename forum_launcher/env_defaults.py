"""Default environment variable values for the forum launcher.

This module centralizes the default values for every optional environment
variable read by :func:`forum_launcher.launch_config.resolve_configuration`.
Required database settings are listed separately in :data:`REQUIRED`.
"""

from __future__ import annotations

from .paths import DEFAULT_APP_DIR, DEFAULT_CONFIG_DIR

REQUIRED: tuple[str, ...] = (
    "NODEBB_DB_HOST",
    "NODEBB_DB_USER",
    "NODEBB_DB_PASSWORD",
    "NODEBB_DB_NAME",
)

DEFAULTS: dict[str, str] = {
    # Package management
    "PACKAGE_MANAGER": "npm",
    "OVERRIDE_UPDATE_LOCK": "false",
    "INSTALL_DEPENDENCIES": "false",

    # Locations
    "CONFIG_DIR": str(DEFAULT_CONFIG_DIR),
    "APP_DIR": str(DEFAULT_APP_DIR),

    # Build
    "START_BUILD": "true",
    "NODEBB_BUILD_VERB": "build",
    "BUILD_TIMEOUT": "600",
    "NODE_BINARY": "node",

    # Forum settings
    "SITE_URL": "https://forum.codeproject.com",
    "PORT": "4567",

    # Database
    "NODEBB_DB_PORT": "27017",
    "NODEBB_DB_AUTH_SOURCE": "admin",
    "DB_PROBE_ATTEMPTS": "60",
    "DB_PROBE_INTERVAL": "3",
    "DB_PROBE_TIMEOUT": "2",

    # Optional stages
    "DOCUMENTDB_TUNING": "false",
    "RESET_PLUGINS": "false",
    "PATCH_ASSETS": "true",
    "ASSET_DEPENDENCY_URL": "https://code.jquery.com/jquery-3.7.1.min.js",

    # Supervision
    "SUPERVISOR_MODE": "handoff",
    "RESTART_DELAY": "2",
    "SHUTDOWN_GRACE_PERIOD": "10",
    "RESTART_STRATEGY": "local",
    "ECS_CLUSTER": "forum-nodebb-cluster",
    "ECS_SERVICE": "forum-nodebb-service",
    "AWS_REGION": "us-east-1",
}

PACKAGE_MANAGERS: tuple[str, ...] = ("npm", "yarn", "pnpm")
SUPERVISOR_MODES: tuple[str, ...] = ("handoff", "supervise")
RESTART_STRATEGIES: tuple[str, ...] = ("local", "remote")

__all__ = [
    "REQUIRED",
    "DEFAULTS",
    "PACKAGE_MANAGERS",
    "SUPERVISOR_MODES",
    "RESTART_STRATEGIES",
]
