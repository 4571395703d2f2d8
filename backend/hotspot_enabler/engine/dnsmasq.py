import ipaddress
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple

from hotspot_enabler.engine import supervisor
from hotspot_enabler.errors import DaemonLaunchError

log = logging.getLogger("hotspot_enabler.dnsmasq")

GATEWAY_IP = "192.168.12.1"
GATEWAY_CIDR = f"{GATEWAY_IP}/24"
DHCP_START = "192.168.12.10"
DHCP_END = "192.168.12.254"
DHCP_NETMASK = "255.255.255.0"
DHCP_LEASE_TIME = "12h"
UPSTREAM_DNS = ("8.8.8.8", "8.8.4.4")

MAX_CLIENTS = 64
UNKNOWN_HOSTNAME = "unknown"
DNSMASQ_SETTLE_S = 1.0

_MAC_RE = re.compile(r"^[0-9A-Fa-f]{2}(:[0-9A-Fa-f]{2}){5}$")


@dataclass(frozen=True)
class ConnectedClient:
    mac: str
    ip: str
    hostname: str = UNKNOWN_HOSTNAME


def _run(cmd: List[str]) -> Tuple[int, str]:
    return supervisor.run(cmd)


def write_dnsmasq_conf(path: Path, ap_iface: str, paths, max_clients: int) -> None:
    lines = [
        f"interface={ap_iface}",
        "bind-interfaces",
        "except-interface=lo",
        f"dhcp-range={DHCP_START},{DHCP_END},{DHCP_NETMASK},{DHCP_LEASE_TIME}",
        f"dhcp-option=option:router,{GATEWAY_IP}",
        f"dhcp-option=option:dns-server,{','.join(UPSTREAM_DNS)}",
        f"dhcp-leasefile={paths.dnsmasq_leases}",
        f"log-facility={paths.dnsmasq_log}",
        f"dhcp-lease-max={int(max_clients)}",
    ]
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        f.write("\n".join(lines) + "\n")


def start(ap_iface: str, paths) -> int:
    """
    Launch dnsmasq on the prepared config and return its pid.
    Competing instances bound to the AP interface, and the distro's
    dnsmasq.service, are stopped first.
    """
    supervisor.pkill(["-f", f"dnsmasq.*{ap_iface}"])
    _run([supervisor.tool("systemctl"), "stop", "dnsmasq"])
    supervisor.remove_file(paths.dnsmasq_pid)

    rc, out = _run(
        [
            supervisor.tool("dnsmasq"),
            "-C",
            str(paths.dnsmasq_conf),
            f"--pid-file={paths.dnsmasq_pid}",
        ]
    )
    if rc != 0:
        log.error("dnsmasq_launch_failed rc=%s out=%s", rc, " ".join(out.split())[:200])
        raise DaemonLaunchError("Failed to start dnsmasq. Port 53 may be in use.")

    found: List[int] = []

    def _alive() -> bool:
        pid = supervisor.read_pid_file(paths.dnsmasq_pid)
        if supervisor.pid_running(pid):
            found.append(pid)
            return True
        return False

    if not supervisor.wait_until(_alive, DNSMASQ_SETTLE_S):
        log.error("dnsmasq_no_pid pid_file=%s", paths.dnsmasq_pid)
        raise DaemonLaunchError("Failed to start dnsmasq. Port 53 may be in use.")
    log.info("dnsmasq_started pid=%s", found[-1], extra={"iface": ap_iface, "pid": found[-1]})
    return found[-1]


def stop(pid: Optional[int], paths) -> None:
    target = pid or supervisor.read_pid_file(paths.dnsmasq_pid)
    if supervisor.pid_matches(target, "dnsmasq"):
        supervisor.kill_pid(target)
    elif target:
        log.info("dnsmasq_pid_stale pid=%s", target)
    # Backstop for an instance whose pid we lost; matches only our config path.
    supervisor.pkill(["-9", "-f", str(paths.dnsmasq_conf)])
    supervisor.remove_file(paths.dnsmasq_pid)


def _valid_ip(raw: str) -> bool:
    try:
        ipaddress.IPv4Address(raw)
    except ValueError:
        return False
    return True


def parse_leases(text: str, max_clients: int = MAX_CLIENTS) -> List[ConnectedClient]:
    """
    dnsmasq lease lines are ``expiry mac ip hostname clientid``. Malformed
    lines are skipped; file order is kept.
    """
    out: List[ConnectedClient] = []
    for raw in text.splitlines():
        if len(out) >= max_clients:
            break
        parts = raw.split()
        if len(parts) < 3:
            continue
        mac, ip = parts[1], parts[2]
        if not _MAC_RE.match(mac) or not _valid_ip(ip):
            continue
        hostname = parts[3] if len(parts) > 3 and parts[3] != "*" else UNKNOWN_HOSTNAME
        out.append(ConnectedClient(mac=mac, ip=ip, hostname=hostname))
    return out


def enumerate_clients(lease_file: Path, max_clients: int = MAX_CLIENTS) -> List[ConnectedClient]:
    try:
        text = lease_file.read_text(errors="ignore")
    except FileNotFoundError:
        return []
    except OSError as e:
        log.warning("lease_read_failed path=%s err=%s", lease_file, e)
        return []
    return parse_leases(text, max_clients=max_clients)
