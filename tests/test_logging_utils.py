import json
import logging
import sys

from forum_launcher import logging_utils
from forum_launcher.logging_utils import (
    JsonFormatter,
    configure_launch_logging,
    console_handler,
    log_startup,
    prepare_startup_log,
)


def _console_handlers():
    return [h for h in logging.getLogger().handlers if getattr(h, "_forum_launcher_console", False)]


def test_console_handler_reuses_its_handler():
    first = console_handler()
    second = console_handler(level=logging.DEBUG)

    assert first is second
    assert _console_handlers() == [first]
    assert first.stream is sys.stdout
    assert logging.getLogger().level == logging.DEBUG


def test_configure_launch_logging_deduplicates_file_handlers(tmp_path):
    root = logging.getLogger()

    path = configure_launch_logging(tmp_path / "logs", level="INFO", json_logs=False)
    configure_launch_logging(tmp_path / "logs", level="INFO", json_logs=False)

    assert path == (tmp_path / "logs" / "launcher.log").resolve()
    file_handlers = [h for h in root.handlers if getattr(h, "baseFilename", None) == str(path)]
    assert len(file_handlers) == 1


def test_configure_launch_logging_reads_env(monkeypatch):
    monkeypatch.setenv("LOG_LEVEL", "warning")
    monkeypatch.setenv("LOG_JSON", "yes")

    assert configure_launch_logging() is None

    [handler] = _console_handlers()
    assert handler.level == logging.WARNING
    assert isinstance(handler.formatter, JsonFormatter)


def test_json_formatter_includes_extra_fields():
    record = logging.LogRecord("forum_launcher.test", logging.INFO, __file__, 10, "built %s", ("ok",), None)
    record.verb = "upgrade"

    payload = json.loads(JsonFormatter().format(record))

    assert payload["msg"] == "built ok"
    assert payload["level"] == "INFO"
    assert payload["logger"] == "forum_launcher.test"
    assert payload["verb"] == "upgrade"
    assert payload["ts"].endswith("Z")
    assert "args" not in payload


def test_prepare_startup_log_empties_small_log(tmp_path):
    path = tmp_path / "logs" / "startup.log"
    path.parent.mkdir()
    path.write_text("previous launch\n")

    prepare_startup_log(path)
    log_startup("Launch pipeline started")

    lines = path.read_text().splitlines()
    assert len(lines) == 1
    assert lines[0].endswith("Launch pipeline started")
    assert logging_utils._startup_log_path == path


def test_prepare_startup_log_shifts_large_log(tmp_path):
    path = tmp_path / "startup.log"
    path.write_text("x" * 200)
    (tmp_path / "startup.log.1").write_text("older")

    prepare_startup_log(path, limit=100, keep=2)

    assert (tmp_path / "startup.log.1").read_text() == "x" * 200
    assert (tmp_path / "startup.log.2").read_text() == "older"
    assert not path.exists()


def test_log_startup_never_raises(tmp_path):
    log_startup("ignored", path=tmp_path / "missing" / "startup.log")
