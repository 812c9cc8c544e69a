import logging
import os
import subprocess
from pathlib import Path

import pytest

from forum_launcher import logging_utils
from forum_launcher.launch_config import resolve_configuration


@pytest.fixture(autouse=True)
def _isolate_logging(tmp_path, monkeypatch):
    """Keep startup log writes and root handlers local to each test."""

    monkeypatch.setattr(logging_utils, "_startup_log_path", tmp_path / "startup.log")
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    for handler in list(root.handlers):
        if handler not in handlers:
            root.removeHandler(handler)
            handler.close()
    root.setLevel(level)


@pytest.fixture
def base_env(tmp_path):
    return {
        "NODEBB_DB_HOST": "db.internal",
        "NODEBB_DB_USER": "forum",
        "NODEBB_DB_PASSWORD": "s3cret",
        "NODEBB_DB_NAME": "nodebb",
        "CONFIG_DIR": str(tmp_path / "config"),
        "APP_DIR": str(tmp_path / "app"),
    }


@pytest.fixture
def make_config(base_env):
    def _make(**overrides):
        env = dict(base_env)
        env.update({key: str(value) for key, value in overrides.items()})
        return resolve_configuration(env)

    return _make


@pytest.fixture
def app_dir(tmp_path):
    """A minimal installed forum tree."""

    app = tmp_path / "app"
    (app / "install").mkdir(parents=True)
    (app / "install" / "package.json").write_text('{"name": "nodebb", "version": "4.4.3"}\n')
    (app / "package.json").write_text('{"name": "nodebb", "version": "4.4.3"}\n')
    (app / "node_modules").mkdir()
    exe = app / "nodebb"
    exe.write_text("#!/bin/sh\n")
    os.chmod(exe, 0o755)
    (app / "build" / "public").mkdir(parents=True)
    (app / "build" / "public" / "admin.min.js").write_bytes(b"console.log('admin');\n")
    return app


class FakeRun:
    """Records ``subprocess.run`` calls and replays return codes."""

    def __init__(self, returncodes=None, exc=None):
        self.calls = []
        self.returncodes = list(returncodes or [])
        self.exc = exc

    def __call__(self, cmd, **kwargs):
        self.calls.append((list(cmd), kwargs))
        if self.exc is not None:
            raise self.exc
        code = self.returncodes.pop(0) if self.returncodes else 0
        return subprocess.CompletedProcess(cmd, code, stdout="", stderr="")

    @property
    def commands(self):
        return [cmd for cmd, _ in self.calls]


@pytest.fixture
def fake_run():
    return FakeRun


def jquery_payload(size=60_000):
    return b"/*! jQuery */" + b"j" * size


@pytest.fixture
def payload():
    return jquery_payload()
