import signal
import time

from hotspot_enabler.engine import supervisor


def test_wait_until_checks_at_least_once():
    calls = []
    assert supervisor.wait_until(lambda: calls.append(1) or True, 0) is True
    assert calls == [1]


def test_wait_until_times_out():
    t0 = time.monotonic()
    assert supervisor.wait_until(lambda: False, 0.1, poll_s=0.01) is False
    assert time.monotonic() - t0 >= 0.1


def test_read_pid_file(tmp_path):
    p = tmp_path / "x.pid"
    assert supervisor.read_pid_file(p) is None
    p.write_text("")
    assert supervisor.read_pid_file(p) is None
    p.write_text("garbage\n")
    assert supervisor.read_pid_file(p) is None
    p.write_text("4321\n")
    assert supervisor.read_pid_file(p) == 4321


def test_missing_binary_is_rc_127():
    rc, out = supervisor.run(["/nonexistent/definitely-not-a-tool", "--help"])
    assert rc == 127
    assert "not found" in out


def test_kill_pid_without_pid():
    assert supervisor.kill_pid(None) is False
    assert supervisor.kill_pid(0) is False
    assert supervisor.pid_running(None) is False


def test_remove_file_and_log_tail(tmp_path):
    p = tmp_path / "hostapd.log"
    assert supervisor.read_log_tail(p) == []
    p.write_text("\n".join(str(i) for i in range(100)))
    assert supervisor.read_log_tail(p, max_lines=3) == ["97", "98", "99"]
    assert supervisor.remove_file(p) is True
    assert supervisor.remove_file(p) is False


class _Signals:
    """Records os.kill calls; ``alive`` decides what pid_running reports afterwards."""

    def __init__(self, exits_on_term=True, missing=False):
        self.sent = []
        self.exits_on_term = exits_on_term
        self.missing = missing

    def kill(self, pid, sig):
        if self.missing:
            raise ProcessLookupError(pid)
        self.sent.append((pid, sig))

    def alive(self, pid):
        if self.exits_on_term and (pid, signal.SIGTERM) in self.sent:
            return False
        return (pid, signal.SIGKILL) not in self.sent


def _patch_signals(monkeypatch, sig):
    monkeypatch.setattr(supervisor.os, "kill", sig.kill)
    monkeypatch.setattr(supervisor, "pid_running", sig.alive)


def test_kill_pid_term_is_enough(monkeypatch):
    sig = _Signals(exits_on_term=True)
    _patch_signals(monkeypatch, sig)

    assert supervisor.kill_pid(4242, timeout_s=0.2) is True
    assert sig.sent == [(4242, signal.SIGTERM)]


def test_kill_pid_escalates_when_term_is_ignored(monkeypatch):
    sig = _Signals(exits_on_term=False)
    _patch_signals(monkeypatch, sig)

    t0 = time.monotonic()
    assert supervisor.kill_pid(4242, timeout_s=0.1) is True
    assert time.monotonic() - t0 >= 0.1
    assert sig.sent == [(4242, signal.SIGTERM), (4242, signal.SIGKILL)]


def test_kill_pid_already_gone(monkeypatch):
    sig = _Signals(missing=True)
    _patch_signals(monkeypatch, sig)
    assert supervisor.kill_pid(4242, timeout_s=0.1) is False
    assert sig.sent == []


def test_pid_matches_checks_cmdline(monkeypatch):
    monkeypatch.setattr(supervisor, "pid_running", lambda pid: pid == 77)
    monkeypatch.setattr(supervisor, "pid_cmdline", lambda pid: "/usr/sbin/hostapd -B -P /run/x/hostapd.pid")
    assert supervisor.pid_matches(77, "hostapd") is True
    assert supervisor.pid_matches(77, "dnsmasq") is False
    assert supervisor.pid_matches(78, "hostapd") is False
    assert supervisor.pid_matches(None, "hostapd") is False


def test_run_reports_exec_errors_as_rc(tmp_path):
    # a directory cannot be executed: PermissionError, not FileNotFoundError
    rc, out = supervisor.run([str(tmp_path)])
    assert rc == 126
    assert out
