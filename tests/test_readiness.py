import pytest

from forum_launcher import readiness
from forum_launcher.errors import DependencyUnreachable
from forum_launcher.readiness import ProbeResult, probe_once, wait_for_dependency


def _scripted(successful_attempt=None):
    calls = []

    def probe(host, port, attempt, timeout):
        calls.append(attempt)
        ok = successful_attempt is not None and attempt >= successful_attempt
        return ProbeResult(host, port, attempt, ok, None if ok else "connection refused")

    return probe, calls


def test_gives_up_after_exactly_max_attempts():
    probe, calls = _scripted()
    sleeps = []

    with pytest.raises(DependencyUnreachable) as exc:
        wait_for_dependency("db", 27017, max_attempts=5, interval=3, probe=probe, sleep=sleeps.append)

    assert calls == [1, 2, 3, 4, 5]
    assert sleeps == [3, 3, 3, 3]
    assert exc.value.attempts == 5
    assert "db:27017" in str(exc.value)
    assert exc.value.details == ["last error: connection refused"]


def test_returns_first_success():
    probe, calls = _scripted(successful_attempt=3)
    sleeps = []

    result = wait_for_dependency("db", 27017, max_attempts=10, interval=1.5, probe=probe, sleep=sleeps.append)

    assert result.reachable
    assert result.attempt == 3
    assert calls == [1, 2, 3]
    assert sleeps == [1.5, 1.5]


def test_rejects_zero_attempts():
    with pytest.raises(ValueError):
        wait_for_dependency("db", 1, max_attempts=0)


def test_probe_once_reports_refusal(monkeypatch):
    def refuse(address, timeout):
        raise ConnectionRefusedError("refused")

    monkeypatch.setattr(readiness.socket, "create_connection", refuse)

    result = probe_once("db", 27017, 1, timeout=0.1)

    assert not result.reachable
    assert result.error == "refused"


def test_probe_once_success(monkeypatch):
    class Conn:
        def __enter__(self):
            return self

        def __exit__(self, *exc):
            return False

    seen = {}

    def connect(address, timeout):
        seen["address"] = address
        seen["timeout"] = timeout
        return Conn()

    monkeypatch.setattr(readiness.socket, "create_connection", connect)

    result = probe_once("db", 27017, 2, timeout=0.5)

    assert result.reachable
    assert seen == {"address": ("db", 27017), "timeout": 0.5}
