import pytest

from hotspot_enabler.engine import virtual_iface
from hotspot_enabler.errors import ApInterfaceError


class FakeLinks:
    """Interface table driven by the iw commands the module issues."""

    def __init__(self, present=(), stuck=(), create_error=None):
        self.present = set(present)
        self.stuck = set(stuck)
        self.create_error = create_error
        self.cmds = []

    def run(self, cmd):
        self.cmds.append(cmd)
        args = cmd[1:]
        if args[:1] == ["dev"] and args[-1] == "del":
            name = args[1]
            if name in self.present and name not in self.stuck:
                self.present.discard(name)
                return 0, ""
            return 1, "command failed: No such device (-19)"
        if "interface" in args and "add" in args:
            name = args[args.index("add") + 1]
            if self.create_error is not None:
                return 1, self.create_error
            if name in self.present:
                return 1, "command failed: Name not unique on network (-76)"
            self.present.add(name)
            return 0, ""
        return 0, ""

    def creates(self):
        return [c for c in self.cmds if "interface" in c and "add" in c]


@pytest.fixture
def links(tmp_path, monkeypatch):
    def _setup(**kw):
        fake = FakeLinks(**kw)
        monkeypatch.setattr(virtual_iface, "_run", fake.run)
        monkeypatch.setattr(virtual_iface.inventory, "iface_exists", lambda name: name in fake.present)
        monkeypatch.setattr(virtual_iface, "NM_UNMANAGED_CONF", tmp_path / "conf.d" / "unmanaged.conf")
        monkeypatch.setattr(virtual_iface, "IFACE_SETTLE_S", 0.05)
        return fake

    return _setup


def test_first_free_name_is_used(links):
    fake = links()

    name = virtual_iface.create_ap_interface("phy0", "wlan0")

    assert name == "ap0"
    assert "ap0" in fake.present
    assert fake.creates()[0][1:] == ["phy", "phy0", "interface", "add", "ap0", "type", "__ap"]
    assert virtual_iface.NM_UNMANAGED_CONF.read_text() == (
        "[keyfile]\nunmanaged-devices=interface-name:ap0\n"
    )


def test_stale_interface_is_replaced(links):
    fake = links(present={"ap0"})
    assert virtual_iface.create_ap_interface("phy0", "wlan0") == "ap0"
    assert any(c[1:] == ["dev", "ap0", "del"] for c in fake.cmds)


def test_stuck_names_are_skipped(links):
    links(present={"ap0", "ap1"}, stuck={"ap0", "ap1"})
    assert virtual_iface.create_ap_interface("phy0", "wlan0") == "ap2"


def test_all_names_in_use(links):
    links(present={"ap0", "ap1", "ap2", "ap3"}, stuck={"ap0", "ap1", "ap2", "ap3"})

    with pytest.raises(ApInterfaceError) as exc:
        virtual_iface.create_ap_interface("phy0", "wlan0")

    assert str(exc.value) == "Failed to create virtual AP interface: all names (ap0, ap1, ap2, ap3) are in use."
    assert exc.value.code == "ap_iface_names_in_use"
    assert not virtual_iface.NM_UNMANAGED_CONF.exists()


def test_driver_without_concurrency(links):
    fake = links(create_error="command failed: Operation not supported (-95)")

    with pytest.raises(ApInterfaceError) as exc:
        virtual_iface.create_ap_interface("phy0", "wlan0")

    assert str(exc.value).startswith(
        "Failed to create virtual AP interface. Your WiFi driver may not support AP/STA concurrency."
    )
    assert exc.value.code == "ap_iface_unsupported"
    # phy-level add, then the dev-level retry, for every candidate
    assert len(fake.creates()) == 8
    assert not virtual_iface.NM_UNMANAGED_CONF.exists()


def test_remove_is_safe_to_repeat(links):
    fake = links(present={"ap1"})
    virtual_iface.write_nm_override("ap1")

    virtual_iface.remove_ap_interface("ap1")
    virtual_iface.remove_ap_interface("ap1")
    virtual_iface.remove_ap_interface(None)

    assert "ap1" not in fake.present
    assert not virtual_iface.NM_UNMANAGED_CONF.exists()


def test_stale_ap_interfaces(links, monkeypatch):
    iw_dev = """phy#0
\tInterface ap1
\t\tifindex 7
\t\ttype AP
\tInterface wlan0
\t\ttype managed
\tInterface hostap9
\t\ttype AP
"""
    monkeypatch.setattr(virtual_iface, "_run", lambda cmd: (0, iw_dev))
    assert virtual_iface.parse_ap_type_ifaces(iw_dev) == ["ap1", "hostap9"]
    assert virtual_iface.stale_ap_interfaces() == ["ap1"]
