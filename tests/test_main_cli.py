import json

import pytest

from hotspot_enabler import main as cli


@pytest.fixture
def env(tmp_path, monkeypatch):
    monkeypatch.setenv("HOTSPOT_ENABLER_CONFIG", str(tmp_path / "hotspot.conf"))
    monkeypatch.setenv("HOTSPOT_ENABLER_RUN_DIR", str(tmp_path / "run"))
    return tmp_path


def _run(argv, capsys):
    rc = cli.main(["--log-level", "ERROR"] + argv)
    return rc, capsys.readouterr().out


def test_config_show_defaults(env, capsys):
    rc, out = _run(["config", "show"], capsys)
    data = json.loads(out)
    assert rc == 0
    assert data["ssid"] == "LinuxHotspot"
    assert data["password"] == "********"
    assert data["from_file"] == []
    assert data["path"] == str(env / "hotspot.conf")


def test_config_set_then_show(env, capsys):
    rc, out = _run(["config", "set", "ssid", "Cafe"], capsys)
    assert rc == 0
    assert "ssid saved" in out

    rc, out = _run(["config", "set", "channel", "11"], capsys)
    assert rc == 0

    rc, out = _run(["config", "show"], capsys)
    data = json.loads(out)
    assert data["ssid"] == "Cafe"
    assert data["channel"] == 11
    assert sorted(data["from_file"]) == ["channel", "hidden", "max_clients", "password", "ssid"]


def test_config_set_rejects_short_password(env, capsys):
    rc, out = _run(["config", "set", "password", "short"], capsys)
    detail = json.loads(out)
    assert rc == 2
    assert detail["code"] == "invalid_passphrase"
    assert detail["context"] == {"key": "password"}
    assert not (env / "hotspot.conf").exists()


def test_config_set_unknown_key_is_usage_error(env, capsys):
    with pytest.raises(SystemExit) as exc:
        cli.main(["config", "set", "bogus", "1"])
    assert exc.value.code == 2


def test_status_without_state(env, capsys):
    rc, out = _run(["status"], capsys)
    assert rc == 0
    assert json.loads(out) == {"phase": "stopped", "running": False}


def test_clients_reads_leases(env, capsys):
    run_dir = env / "run"
    run_dir.mkdir()
    (run_dir / "dnsmasq.leases").write_text("0 aa:bb:cc:dd:ee:ff 192.168.12.10 phone\n")
    rc, out = _run(["clients"], capsys)
    assert rc == 0
    assert json.loads(out) == [{"mac": "aa:bb:cc:dd:ee:ff", "ip": "192.168.12.10", "hostname": "phone"}]


def test_run_stops_on_preflight_errors(env, capsys, monkeypatch):
    monkeypatch.setattr(
        cli.preflight,
        "run",
        lambda: {"errors": ["missing_dependencies:hostapd"], "warnings": [], "details": {"install_hint": "sudo dnf install -y hostapd"}},
    )
    rc = cli.main(["--log-level", "CRITICAL", "run"])
    assert rc == 1
    assert "sudo dnf install -y hostapd" in capsys.readouterr().err
