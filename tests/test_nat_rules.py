import pytest

from hotspot_enabler.engine import nat
from hotspot_enabler.errors import NatError


class FakeIptables:
    """In-memory iptables: tracks rules per (table, chain) and answers -C/-A/-D."""

    def __init__(self, fail_on_append=None):
        self.rules = []
        self.fail_on_append = fail_on_append
        self.sysctl_calls = []

    def run(self, cmd):
        if cmd[0] == "sysctl":
            self.sysctl_calls.append(cmd[-1])
            return 1, "sysctl: permission denied"  # exercise the /proc fallback
        args = cmd[1:]
        table = "filter"
        if args[:1] == ["-t"]:
            table, args = args[1], args[2:]
        verb, rule = args[0], (table, tuple(args[1:]))
        if verb == "-C":
            return (0, "") if rule in self.rules else (1, "Bad rule")
        if verb == "-A":
            if self.fail_on_append and self.fail_on_append in rule[1]:
                return 4, "iptables: No chain/target/match by that name."
            self.rules.append(rule)
            return 0, ""
        if verb == "-D":
            if rule in self.rules:
                self.rules.remove(rule)
                return 0, ""
            return 1, "Bad rule (does a matching rule exist in that chain?)"
        raise AssertionError(cmd)


@pytest.fixture
def fake_nat(tmp_path, monkeypatch):
    def _setup(initial_forward="0", fail_on_append=None):
        fwd = tmp_path / "ip_forward"
        fwd.write_text(initial_forward + "\n")
        fake = FakeIptables(fail_on_append=fail_on_append)
        monkeypatch.setattr(nat, "IP_FORWARD_PATH", fwd)
        monkeypatch.setattr(nat, "_iptables", lambda: "iptables")
        monkeypatch.setattr(nat.supervisor, "tool", lambda name: name)
        monkeypatch.setattr(nat, "_run", fake.run)
        return fake

    return _setup


def test_apply_installs_three_rules_and_remove_restores(fake_nat):
    fake = fake_nat("0")

    was = nat.apply("wlan0", "ap0")

    assert was is False
    assert nat.read_ip_forward() is True
    assert fake.rules == [
        ("nat", ("POSTROUTING", "-o", "wlan0", "-j", "MASQUERADE")),
        (
            "filter",
            ("FORWARD", "-i", "wlan0", "-o", "ap0", "-m", "state", "--state", "RELATED,ESTABLISHED", "-j", "ACCEPT"),
        ),
        ("filter", ("FORWARD", "-i", "ap0", "-o", "wlan0", "-j", "ACCEPT")),
    ]

    nat.remove("wlan0", "ap0", was)

    assert fake.rules == []
    assert nat.read_ip_forward() is False


def test_apply_is_idempotent(fake_nat):
    fake = fake_nat("1")
    nat.apply("wlan0", "ap0")
    nat.apply("wlan0", "ap0")
    assert len(fake.rules) == 3


def test_forwarding_left_on_when_it_was_on(fake_nat):
    fake_nat("1")
    was = nat.apply("wlan0", "ap0")
    nat.remove("wlan0", "ap0", was)
    assert was is True
    assert nat.read_ip_forward() is True


def test_remove_without_apply_leaves_forwarding_alone(fake_nat):
    fake = fake_nat("1")
    nat.remove("wlan0", "ap0", None)
    assert nat.read_ip_forward() is True
    assert fake.sysctl_calls == []


def test_failed_rule_rolls_back(fake_nat):
    fake = fake_nat("0", fail_on_append="FORWARD")

    with pytest.raises(NatError) as exc:
        nat.apply("wlan0", "ap0")

    assert exc.value.code == "nat_failed"
    assert fake.rules == []
    assert nat.read_ip_forward() is False


def test_missing_iptables(fake_nat, monkeypatch):
    fake_nat("0")
    monkeypatch.setattr(nat, "_iptables", lambda: None)
    with pytest.raises(NatError):
        nat.apply("wlan0", "ap0")
    assert nat.read_ip_forward() is False


def test_forwarding_that_cannot_be_enabled_is_fatal(fake_nat, tmp_path, monkeypatch):
    fake = fake_nat("0")
    # sysctl fails in the fake and the proc path has no parent to write into
    monkeypatch.setattr(nat, "IP_FORWARD_PATH", tmp_path / "missing" / "ip_forward")

    with pytest.raises(NatError) as exc:
        nat.apply("wlan0", "ap0")

    assert str(exc.value) == "Failed to enable IP forwarding."
    assert exc.value.code == "nat_failed"
    assert fake.sysctl_calls == ["net.ipv4.ip_forward=1"]
    assert fake.rules == []
