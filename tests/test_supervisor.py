import os
import signal
import subprocess
import threading

import pytest

from forum_launcher import supervisor
from forum_launcher.errors import BuildFailed, LaunchError, ShutdownRequested
from forum_launcher.supervisor import (
    SupervisedLoop,
    SupervisionOutcome,
    classify_exit,
    handoff,
    install_signal_handlers,
    normalize_exit_code,
    run_bounded,
)


@pytest.mark.parametrize(
    "code,outcome",
    [
        (0, SupervisionOutcome.CLEAN_RESTART),
        (200, SupervisionOutcome.REBUILD_RESTART),
        (1, SupervisionOutcome.FATAL),
        (17, SupervisionOutcome.FATAL),
        (143, SupervisionOutcome.FATAL),
    ],
)
def test_classify_exit(code, outcome):
    assert classify_exit(code) is outcome


def test_normalize_exit_code():
    assert normalize_exit_code(-9) == 137
    assert normalize_exit_code(3) == 3


class FakeProc:
    def __init__(self, code, interrupt=None, stubborn=False):
        self.code = code
        self.interrupt = interrupt
        self.stubborn = stubborn
        self.pid = 4242
        self.returncode = None
        self.signals = []
        self.killed = False

    def wait(self, timeout=None):
        if self.interrupt is not None and timeout is None and not self.signals:
            signum, self.interrupt = self.interrupt, None
            raise ShutdownRequested(signum)
        if timeout is not None and self.stubborn and not self.killed:
            raise subprocess.TimeoutExpired("node", timeout)
        self.returncode = self.code
        return self.code

    def poll(self):
        return self.returncode

    def send_signal(self, signum):
        self.signals.append(signum)

    def kill(self):
        self.killed = True


class FakePopen:
    def __init__(self, procs):
        self.procs = list(procs)
        self.started = []

    def __call__(self, cmd, **kwargs):
        proc = self.procs.pop(0)
        self.started.append((list(cmd), kwargs))
        return proc


def test_loop_restarts_rebuilds_and_propagates_fatal_code():
    popen = FakePopen([FakeProc(0), FakeProc(200), FakeProc(17)])
    sleeps = []
    rebuilds = []

    loop = SupervisedLoop(
        ["node", "app.js"],
        rebuild=lambda: rebuilds.append(True),
        restart_delay=2,
        cwd="/srv/app",
        popen=popen,
        sleep=sleeps.append,
    )

    assert loop.run() == 17
    assert loop.launches == 3
    assert rebuilds == [True]
    assert sleeps == [2, 2]
    assert popen.started[0] == (["node", "app.js"], {"cwd": "/srv/app", "env": None})


def test_failed_rebuild_still_restarts():
    popen = FakePopen([FakeProc(200), FakeProc(1)])

    def rebuild():
        raise BuildFailed("build", 2)

    loop = SupervisedLoop(["node", "app.js"], rebuild=rebuild, popen=popen, sleep=lambda s: None)

    assert loop.run() == 1
    assert loop.rebuilds == 1
    assert loop.launches == 2


def test_rebuild_os_error_still_restarts():
    popen = FakePopen([FakeProc(200), FakeProc(17)])

    def rebuild():
        raise PermissionError("admin.min.js.tmp")

    loop = SupervisedLoop(["node", "app.js"], rebuild=rebuild, popen=popen, sleep=lambda s: None)

    assert loop.run() == 17
    assert loop.rebuilds == 1
    assert loop.launches == 2


def test_shutdown_during_rebuild_is_not_swallowed():
    popen = FakePopen([FakeProc(200)])

    def rebuild():
        raise ShutdownRequested(signal.SIGTERM)

    loop = SupervisedLoop(["node", "app.js"], rebuild=rebuild, popen=popen, sleep=lambda s: None)

    assert loop.run() == 128 + signal.SIGTERM
    assert loop.launches == 1


def test_killed_child_is_fatal():
    loop = SupervisedLoop(["node"], popen=FakePopen([FakeProc(-9)]), sleep=lambda s: None)
    assert loop.run() == 137


def test_signal_forwards_sigterm_and_returns_128_plus_signum():
    proc = FakeProc(0, interrupt=signal.SIGTERM)
    loop = SupervisedLoop(["node"], grace_period=7, popen=FakePopen([proc]), sleep=lambda s: None)

    assert loop.run() == 128 + signal.SIGTERM
    assert proc.signals == [signal.SIGTERM]
    assert proc.killed is False


def test_child_killed_after_grace_period():
    proc = FakeProc(0, interrupt=signal.SIGINT, stubborn=True)
    loop = SupervisedLoop(["node"], grace_period=0.1, popen=FakePopen([proc]), sleep=lambda s: None)

    assert loop.run() == 128 + signal.SIGINT
    assert proc.signals == [signal.SIGTERM]
    assert proc.killed is True


def test_signal_during_restart_delay_stops_loop():
    def sleep(_):
        raise ShutdownRequested(signal.SIGTERM)

    popen = FakePopen([FakeProc(0)])
    loop = SupervisedLoop(["node"], popen=popen, sleep=sleep)

    assert loop.run() == 143
    assert loop.launches == 1


def test_handoff_execs_command(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    app = tmp_path / "app"
    app.mkdir()
    calls = []

    class Replaced(Exception):
        pass

    def fake_execvp(file, args):
        calls.append((file, args, os.getcwd()))
        raise Replaced()

    with pytest.raises(Replaced):
        handoff(["node", "app.js", "--config=/srv/config.json"], cwd=app, execvp=fake_execvp)

    assert calls == [("node", ["node", "app.js", "--config=/srv/config.json"], str(app.resolve()))]


def test_handoff_exec_failure_is_launch_error(monkeypatch):
    def fake_execvp(file, args):
        raise FileNotFoundError(2, "No such file", file)

    with pytest.raises(LaunchError):
        handoff(["missing-binary"], execvp=fake_execvp)


def test_signal_handler_raises_shutdown_after_cleanup():
    cleaned = []
    previous = install_signal_handlers(cleanup=lambda: cleaned.append(True), signals=(signal.SIGUSR1,))
    try:
        with pytest.raises(ShutdownRequested) as exc:
            signal.raise_signal(signal.SIGUSR1)
        assert exc.value.signum == signal.SIGUSR1
        assert exc.value.exit_code == 128 + signal.SIGUSR1
        assert cleaned == [True]
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


def test_run_bounded_gives_up_on_slow_cleanup():
    release = threading.Event()
    try:
        assert run_bounded(lambda: release.wait(5), timeout=0.05) is False
    finally:
        release.set()


def test_run_bounded_reports_errors():
    def broken():
        raise RuntimeError("nope")

    assert run_bounded(broken, timeout=1) is False
    assert run_bounded(lambda: None, timeout=1) is True


def test_default_signals_cover_termination():
    assert set(supervisor.TERMINATION_SIGNALS) == {signal.SIGTERM, signal.SIGINT, signal.SIGQUIT}
