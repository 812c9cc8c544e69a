"""Generation of the forum's ``config.json``."""

from __future__ import annotations

import json
import logging
import os
import shutil
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .launch_config import LaunchConfiguration
from .errors import LaunchError
from .logging_utils import log_startup

logger = logging.getLogger(__name__)

__all__ = [
    "MongoSettings",
    "ForumConfig",
    "build_forum_config",
    "render_forum_config",
    "write_forum_config",
]

# Connection tuning required by DocumentDB's MongoDB compatibility layer
DOCUMENTDB_OPTIONS: Dict[str, Any] = {
    "tlsInsecure": True,
    "sslCA": None,
    "retryWrites": False,
    "readPreference": "primary",
    "maxPoolSize": 10,
    "minPoolSize": 2,
    "maxIdleTimeMS": 30000,
    "serverSelectionTimeoutMS": 5000,
    "socketTimeoutMS": 45000,
    "connectTimeoutMS": 10000,
    "heartbeatFrequencyMS": 10000,
    "w": "majority",
    "journal": True,
    "readConcern": {"level": "local"},
    "writeConcern": {"w": "majority", "j": True, "wtimeout": 10000},
}

MAX_UPLOAD_SIZE = 10 * 1024 * 1024


class MongoSettings(BaseModel):
    """Database coordinates as the forum expects them."""

    host: str
    port: int = Field(gt=0, lt=65536)
    database: str
    username: str
    password: str
    options: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("host", "database", "username")
    @classmethod
    def _non_empty(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be empty")
        return value


class ForumConfig(BaseModel):
    """Schema for the generated forum configuration file."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    url: str
    secret: str
    database: str = "mongo"
    mongo: MongoSettings
    port: int = Field(gt=0, lt=65536)
    bind_address: str = "0.0.0.0"
    session_secret: Optional[str] = None
    sessionStore: Dict[str, str] = Field(default_factory=lambda: {"name": "database"})
    cluster: Dict[str, int] = Field(default_factory=dict)
    upload_path: Optional[str] = None
    maximum_upload_size: Optional[int] = None
    socket_io: Optional[Dict[str, Any]] = Field(default=None, alias="socket.io")
    sessionKey: Optional[str] = None
    cookieDomain: Optional[str] = None
    secureCookie: Optional[bool] = None
    cors: Optional[Dict[str, Any]] = None

    @field_validator("url")
    @classmethod
    def _http_url(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            raise ValueError("url must start with http:// or https://")
        return value.rstrip("/")


def build_forum_config(config: LaunchConfiguration) -> ForumConfig:
    """Return the validated config model for ``config``."""

    options: Dict[str, Any] = {"authSource": config.db_auth_source}
    if config.documentdb_tuning:
        options["ssl"] = config.db_tls
        options.update(DOCUMENTDB_OPTIONS)
    elif config.db_tls:
        options["ssl"] = True

    fields: Dict[str, Any] = {
        "url": config.site_url,
        "secret": config.secret,
        "mongo": {
            "host": config.db_host,
            "port": config.db_port,
            "database": config.db_name,
            "username": config.db_user,
            "password": config.db_password,
            "options": options,
        },
        "port": config.port,
        "cluster": {"port": config.port},
    }
    if config.documentdb_tuning:
        transports: List[str] = ["polling", "websocket"]
        fields.update(
            session_secret=config.session_secret,
            upload_path=str(config.upload_dir),
            maximum_upload_size=MAX_UPLOAD_SIZE,
            socket_io={"transports": transports, "origins": f"{config.site_url}:*"},
            sessionKey="nodebb.sid",
            cookieDomain="",
            secureCookie=True,
            cors={"origin": True, "credentials": True},
        )
    try:
        return ForumConfig(**fields)
    except ValidationError as exc:
        details = [
            f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in exc.errors()
        ]
        raise LaunchError("Generated forum configuration is invalid", details) from exc


def render_forum_config(config: LaunchConfiguration) -> str:
    """Serialize the forum config deterministically."""

    model = build_forum_config(config)
    data = model.model_dump(by_alias=True, exclude_none=True)
    return json.dumps(data, indent=2) + "\n"


def write_forum_config(config: LaunchConfiguration) -> Path:
    """Write ``config.json`` to the config dir and mirror it into the app dir."""

    text = render_forum_config(config)
    target = config.config_path
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(text, encoding="utf-8")
    os.chmod(target, 0o644)
    logger.info("Configuration file created at %s", target)

    mirror = config.runtime_config_path
    if mirror.resolve() != target.resolve():
        mirror.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(target, mirror)
        logger.info("Copied %s to %s", target.name, mirror.parent)

    log_startup(
        f"Config generated: site={config.site_url} "
        f"db={config.db_host}:{config.db_port}/{config.db_name} port={config.port}"
    )
    return target
