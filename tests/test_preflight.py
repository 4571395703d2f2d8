import pytest

from hotspot_enabler import os_release, preflight


RFKILL_LIST = """0: hci0: Bluetooth
	Soft blocked: yes
	Hard blocked: no
1: phy0: Wireless LAN
	Soft blocked: yes
	Hard blocked: no
2: phy1: Wireless LAN
	Soft blocked: no
	Hard blocked: yes
"""


@pytest.mark.parametrize(
    "os_release_text,family,hint_prefix",
    [
        ('ID=ubuntu\nID_LIKE=debian\n', "apt", "sudo apt install"),
        ('ID=linuxmint\nID_LIKE="ubuntu debian"\n', "apt", "sudo apt install"),
        ("ID=arch\n", "pacman", "sudo pacman -Sy"),
        ("ID=endeavouros\nID_LIKE=arch\n", "pacman", "sudo pacman -Sy"),
        ('ID="fedora"\n', "dnf", "sudo dnf install"),
        ('ID="opensuse-slowroll"\nID_LIKE="suse opensuse"\n', "zypper", "sudo zypper"),
        ("ID=void\n", "xbps", "sudo xbps-install"),
    ],
)
def test_install_hint_per_distro(os_release_text, family, hint_prefix):
    info = os_release.parse_os_release(os_release_text)
    assert os_release.package_family(info) == family
    hint = preflight.install_hint(info)
    assert hint.startswith(hint_prefix)
    for tool in ("iw", "hostapd", "dnsmasq", "iptables"):
        assert tool in hint


def test_install_hint_unknown_distro():
    hint = preflight.install_hint({"id": "gentoo"})
    assert not hint.startswith("sudo")
    assert "package manager" in hint


def test_parse_os_release_ignores_comments_and_quotes(tmp_path):
    p = tmp_path / "os-release"
    p.write_text('# comment\nNAME="Debian GNU/Linux"\nID=debian\nbogus\n')
    info = os_release.read_os_release((str(tmp_path / "missing"), str(p)))
    assert info == {"name": "Debian GNU/Linux", "id": "debian"}
    assert os_release.read_os_release((str(tmp_path / "missing"),)) == {}


def test_parse_rfkill():
    devices = preflight.parse_rfkill(RFKILL_LIST)
    assert [d["name"] for d in devices] == ["hci0", "phy0", "phy1"]
    assert devices[1] == {"name": "phy0", "type": "Wireless LAN", "soft": "yes", "hard": "no"}


def test_rfkill_hard_block_is_error_soft_is_warning(monkeypatch):
    monkeypatch.setattr(preflight.shutil, "which", lambda name: "/usr/sbin/" + name)
    monkeypatch.setattr(preflight, "_run", lambda cmd: (0, RFKILL_LIST))
    errors, warnings = preflight._check_rfkill()
    assert errors == ["rfkill_hard_blocked:phy1"]
    assert warnings == ["rfkill_soft_blocked:phy0"]


def test_subnet_conflicts():
    text = (
        "1: lo    inet 127.0.0.1/8 scope host lo\\       valid_lft forever\n"
        "3: eth0    inet 192.168.12.40/24 brd 192.168.12.255 scope global eth0\n"
        "4: wlan0    inet 192.168.1.5/24 brd 192.168.1.255 scope global wlan0\n"
    )
    assert preflight.subnet_conflicts(text) == ["eth0:192.168.12.40"]
    assert preflight.subnet_conflicts("") == []


def test_run_collects_errors_and_warnings(monkeypatch):
    monkeypatch.setattr(preflight, "is_root", lambda: False)
    monkeypatch.setattr(
        preflight, "check_dependencies", lambda: {"iw": True, "hostapd": False, "dnsmasq": True, "iptables": True}
    )
    monkeypatch.setattr(preflight, "install_hint", lambda info=None: "sudo apt install -y hostapd")
    monkeypatch.setattr(preflight, "_check_rfkill", lambda: ([], ["rfkill_soft_blocked:phy0"]))
    monkeypatch.setattr(preflight, "_run", lambda cmd: (0, "3: eth0    inet 192.168.12.9/24 scope global eth0\n"))

    result = preflight.run()

    assert result["errors"] == ["not_root", "missing_dependencies:hostapd"]
    assert result["warnings"] == ["rfkill_soft_blocked:phy0", "subnet_conflict:eth0:192.168.12.9"]
    assert result["details"]["install_hint"] == "sudo apt install -y hostapd"
