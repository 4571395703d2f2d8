from __future__ import annotations

import ipaddress
import os
import re
import shutil
from typing import Any, Dict, List, Optional, Tuple

from hotspot_enabler import os_release
from hotspot_enabler.engine import supervisor
from hotspot_enabler.engine.dnsmasq import GATEWAY_CIDR

REQUIRED_TOOLS = ("iw", "hostapd", "dnsmasq", "iptables")

_INSTALL_COMMANDS = {
    "apt": "apt install -y iw hostapd dnsmasq iptables",
    "pacman": "pacman -Sy --noconfirm iw hostapd dnsmasq iptables",
    "dnf": "dnf install -y iw hostapd dnsmasq iptables",
    "zypper": "zypper --non-interactive install iw hostapd dnsmasq iptables",
    "xbps": "xbps-install -Sy iw hostapd dnsmasq iptables",
}

_RFKILL_WIFI_HINTS = ("wireless", "wifi", "wlan", "wi-fi")
_RFKILL_HEADER_RE = re.compile(r"^\d+:\s")
_IP_ADDR_RE = re.compile(r"^\d+:\s+(\S+)\s+inet\s+(\d+\.\d+\.\d+\.\d+)/(\d+)")


def _run(cmd: List[str]) -> Tuple[int, str]:
    return supervisor.run(cmd, timeout_s=2.0)


def is_root() -> bool:
    return os.geteuid() == 0


def check_dependencies(tools=REQUIRED_TOOLS) -> Dict[str, bool]:
    return {name: shutil.which(name) is not None for name in tools}


def install_hint(info: Optional[Dict[str, str]] = None) -> str:
    family = os_release.package_family(info)
    cmd = _INSTALL_COMMANDS.get(family or "")
    if cmd:
        return f"sudo {cmd}"
    return "Install iw, hostapd, dnsmasq and iptables with your distribution's package manager."


def parse_rfkill(text: str) -> List[Dict[str, Optional[str]]]:
    """`rfkill list` blocks: ``N: name: type`` then Soft/Hard blocked lines."""
    devices: List[Dict[str, Optional[str]]] = []
    cur: Dict[str, Optional[str]] = {}
    for raw in text.splitlines():
        line = raw.strip()
        if not line:
            continue
        if _RFKILL_HEADER_RE.match(line):
            if cur:
                devices.append(cur)
            _idx, rest = line.split(":", 1)
            name, _, dev_type = rest.partition(":")
            cur = {"name": name.strip() or None, "type": dev_type.strip() or None, "soft": None, "hard": None}
        elif line.startswith("Soft blocked:"):
            cur["soft"] = line.split(":", 1)[1].strip().lower()
        elif line.startswith("Hard blocked:"):
            cur["hard"] = line.split(":", 1)[1].strip().lower()
    if cur:
        devices.append(cur)
    return devices


def _check_rfkill() -> Tuple[List[str], List[str]]:
    rfkill = shutil.which("rfkill")
    if not rfkill:
        return [], ["rfkill_not_found"]
    rc, out = _run([rfkill, "list"])
    if rc != 0:
        return [], ["rfkill_list_failed"]
    errors: List[str] = []
    warnings: List[str] = []
    for dev in parse_rfkill(out):
        dev_type = (dev.get("type") or "").lower()
        if not any(hint in dev_type for hint in _RFKILL_WIFI_HINTS):
            continue
        if dev.get("hard") == "yes":
            errors.append(f"rfkill_hard_blocked:{dev.get('name') or 'wifi'}")
        elif dev.get("soft") == "yes":
            # `rfkill unblock wifi` runs during start, so a soft block is recoverable.
            warnings.append(f"rfkill_soft_blocked:{dev.get('name') or 'wifi'}")
    return errors, warnings


def subnet_conflicts(ip_addr_text: str, cidr: str = GATEWAY_CIDR) -> List[str]:
    """Interfaces that already hold an address inside the hotspot subnet."""
    subnet = ipaddress.ip_network(cidr, strict=False)
    out: List[str] = []
    for line in ip_addr_text.splitlines():
        m = _IP_ADDR_RE.match(line.strip())
        if m and ipaddress.ip_address(m.group(2)) in subnet:
            out.append(f"{m.group(1)}:{m.group(2)}")
    return out


def run() -> Dict[str, Any]:
    errors: List[str] = []
    warnings: List[str] = []
    details: Dict[str, Any] = {}

    if not is_root():
        errors.append("not_root")

    deps = check_dependencies()
    details["dependencies"] = deps
    missing = [name for name, present in deps.items() if not present]
    if missing:
        errors.append("missing_dependencies:" + ",".join(missing))
        details["install_hint"] = install_hint()

    rf_err, rf_warn = _check_rfkill()
    errors += rf_err
    warnings += rf_warn

    rc, out = _run([supervisor.tool("ip"), "-4", "-o", "addr", "show"])
    if rc == 0:
        conflicts = subnet_conflicts(out)
        if conflicts:
            warnings.append("subnet_conflict:" + ",".join(conflicts))
    else:
        warnings.append("ip_addr_check_failed")

    return {"errors": errors, "warnings": warnings, "details": details}
