import logging
import shutil
from pathlib import Path
from typing import List, Optional, Tuple

from hotspot_enabler.engine import supervisor
from hotspot_enabler.errors import NatError

log = logging.getLogger("hotspot_enabler.nat")

IP_FORWARD_PATH = Path("/proc/sys/net/ipv4/ip_forward")


def _run(cmd: List[str]) -> Tuple[int, str]:
    return supervisor.run(cmd)


def _iptables() -> Optional[str]:
    return shutil.which("iptables")


def nat_rules(client_if: str, ap_if: str) -> List[List[str]]:
    """
    The three rules shared by apply/remove, without the -A/-C/-D verb.

    Client->AP traffic is limited to RELATED,ESTABLISHED while AP->client is
    accepted unconditionally.
    """
    return [
        ["-t", "nat", "POSTROUTING", "-o", client_if, "-j", "MASQUERADE"],
        [
            "FORWARD",
            "-i",
            client_if,
            "-o",
            ap_if,
            "-m",
            "state",
            "--state",
            "RELATED,ESTABLISHED",
            "-j",
            "ACCEPT",
        ],
        ["FORWARD", "-i", ap_if, "-o", client_if, "-j", "ACCEPT"],
    ]


def _with_verb(rule: List[str], verb: str) -> List[str]:
    # "-t nat" must stay in front of the chain name.
    if rule[:1] == ["-t"]:
        return rule[:2] + [verb] + rule[2:]
    return [verb] + rule


def read_ip_forward() -> bool:
    try:
        return IP_FORWARD_PATH.read_text().strip() == "1"
    except OSError:
        return False


def set_ip_forward(enable: bool) -> bool:
    val = "1" if enable else "0"
    rc, _ = _run([supervisor.tool("sysctl"), "-w", f"net.ipv4.ip_forward={val}"])
    if rc == 0:
        return True
    try:
        IP_FORWARD_PATH.write_text(val + "\n")
    except OSError as e:
        log.warning("ip_forward_write_failed value=%s err=%s", val, e)
        return False
    return True


def _iptables_add_unique(ipt: str, rule: List[str]) -> None:
    rc, _ = _run([ipt] + _with_verb(rule, "-C"))
    if rc == 0:
        return
    rc, out = _run([ipt] + _with_verb(rule, "-A"))
    if rc != 0:
        raise NatError(f"Failed to configure NAT forwarding: iptables {' '.join(rule)}: {out.strip()}")


def _iptables_del(ipt: str, rule: List[str]) -> None:
    # -D on an absent rule just fails; nothing to check first.
    _run([ipt] + _with_verb(rule, "-D"))


def apply(client_if: str, ap_if: str) -> bool:
    """
    Enable forwarding and install the NAT rules. Returns the forwarding flag
    as it was before, for ``remove`` to restore. A partial install is rolled
    back before NatError propagates.
    """
    ipt = _iptables()
    if not ipt:
        raise NatError("Failed to configure NAT forwarding: iptables not found.")

    was_enabled = read_ip_forward()
    if not set_ip_forward(True):
        raise NatError("Failed to enable IP forwarding.")
    installed: List[List[str]] = []
    try:
        for rule in nat_rules(client_if, ap_if):
            _iptables_add_unique(ipt, rule)
            installed.append(rule)
    except NatError:
        for rule in reversed(installed):
            _iptables_del(ipt, rule)
        if not was_enabled:
            set_ip_forward(False)
        raise
    log.info(
        "nat_applied client=%s ap=%s ip_forward_was_enabled=%s",
        client_if,
        ap_if,
        was_enabled,
        extra={"iface": ap_if},
    )
    return was_enabled


def remove(client_if: Optional[str], ap_if: Optional[str], was_enabled: Optional[bool]) -> None:
    """
    Delete the NAT rules and put forwarding back the way ``apply`` found it.
    ``was_enabled=None`` means NAT was never applied: the flag is left alone.
    """
    ipt = _iptables()
    if ipt and client_if and ap_if:
        for rule in reversed(nat_rules(client_if, ap_if)):
            _iptables_del(ipt, rule)
    if was_enabled is not None and read_ip_forward() != was_enabled:
        set_ip_forward(was_enabled)
        log.info("ip_forward_restored value=%s", int(was_enabled))
