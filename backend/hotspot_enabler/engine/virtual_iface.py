import logging
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from hotspot_enabler.adapters import inventory
from hotspot_enabler.adapters.inventory import AP_IFACE_CANDIDATES
from hotspot_enabler.engine import supervisor
from hotspot_enabler.errors import ApInterfaceError

log = logging.getLogger("hotspot_enabler.virtual_iface")

NM_UNMANAGED_CONF = Path("/etc/NetworkManager/conf.d/hotspot-enabler-unmanaged.conf")

IFACE_SETTLE_S = 2.0


def _run(cmd: List[str]) -> Tuple[int, str]:
    return supervisor.run(cmd)


def _is_iface_name_conflict_text(text: object) -> bool:
    low = str(text or "").lower()
    return ("name not unique on network" in low) or ("file exists" in low)


def detach_supplicant(ifname: str) -> None:
    """Ask wpa_supplicant to let go of ``ifname``. The daemon itself keeps running."""
    wpa_cli = supervisor.tool("wpa_cli")
    _run([wpa_cli, "-i", ifname, "disconnect"])
    _run([wpa_cli, "interface_remove", ifname])


def nm_set_managed(ifname: str, managed: bool) -> bool:
    state = "yes" if managed else "no"
    rc, out = _run([supervisor.tool("nmcli"), "device", "set", ifname, "managed", state])
    if rc != 0:
        log.debug("nmcli_set_managed_failed iface=%s managed=%s err=%s", ifname, state, out.strip())
    return rc == 0


def force_remove_iface(ifname: str) -> bool:
    """
    Tear ``ifname`` down and delete it; every step is best-effort.
    Returns True once the interface is confirmed absent.
    """
    ip = supervisor.tool("ip")
    _run([ip, "link", "set", ifname, "down"])
    _run([ip, "addr", "flush", "dev", ifname])
    detach_supplicant(ifname)
    nm_set_managed(ifname, False)
    _run([supervisor.tool("iw"), "dev", ifname, "del"])
    return supervisor.wait_until(lambda: not inventory.iface_exists(ifname), IFACE_SETTLE_S)


def _reload_nm_conf() -> None:
    _run([supervisor.tool("nmcli"), "general", "reload", "conf"])


def write_nm_override(ifname: str) -> bool:
    """Tell NetworkManager to ignore ``ifname`` before it exists."""
    try:
        NM_UNMANAGED_CONF.parent.mkdir(parents=True, exist_ok=True)
        NM_UNMANAGED_CONF.write_text(
            "[keyfile]\n" f"unmanaged-devices=interface-name:{ifname}\n",
            encoding="utf-8",
        )
    except OSError as e:
        log.warning("nm_override_write_failed path=%s err=%s", NM_UNMANAGED_CONF, e)
        return False
    _reload_nm_conf()
    return True


def remove_nm_override() -> None:
    supervisor.remove_file(NM_UNMANAGED_CONF)
    _reload_nm_conf()


def _try_create(phy: str, client_if: str, name: str) -> Tuple[bool, bool, str]:
    """Returns (created, name_conflict, last_output)."""
    iw = supervisor.tool("iw")
    rc, out = _run([iw, "phy", phy, "interface", "add", name, "type", "__ap"])
    if rc != 0:
        if _is_iface_name_conflict_text(out):
            return False, True, out
        log.info("iface_create_phy_failed iface=%s phy=%s, retrying via %s", name, phy, client_if)
        rc, out = _run([iw, "dev", client_if, "interface", "add", name, "type", "__ap"])
        if rc != 0:
            return False, _is_iface_name_conflict_text(out), out
    if not supervisor.wait_until(lambda: inventory.iface_exists(name), IFACE_SETTLE_S):
        return False, False, "interface did not appear"
    return True, False, out


def create_ap_interface(
    phy: str,
    client_if: str,
    candidates: Sequence[str] = AP_IFACE_CANDIDATES,
) -> str:
    """
    Create the AP-type virtual interface under the first free candidate name
    and return that name. The interface is left down and unaddressed.
    """
    _run([supervisor.tool("rfkill"), "unblock", "wifi"])
    conflicts = 0
    last_out = ""
    for name in candidates:
        if not force_remove_iface(name):
            log.warning("iface_still_present iface=%s", name, extra={"iface": name})
            conflicts += 1
            continue
        write_nm_override(name)
        created, conflict, out = _try_create(phy, client_if, name)
        if created:
            log.info("ap_iface_created iface=%s phy=%s", name, phy, extra={"iface": name})
            return name
        last_out = out
        if conflict:
            conflicts += 1
        log.warning(
            "ap_iface_create_failed iface=%s conflict=%s out=%s",
            name,
            conflict,
            " ".join(out.split())[:200],
            extra={"iface": name},
        )

    remove_nm_override()
    if candidates and conflicts == len(candidates):
        raise ApInterfaceError(
            f"Failed to create virtual AP interface: all names ({', '.join(candidates)}) are in use.",
            code="ap_iface_names_in_use",
        )
    raise ApInterfaceError(
        "Failed to create virtual AP interface. "
        "Your WiFi driver may not support AP/STA concurrency."
        + (f" ({' '.join(last_out.split())[:120]})" if last_out.strip() else "")
    )


def remove_ap_interface(name: Optional[str]) -> None:
    """Delete the AP interface and drop the NetworkManager override. Safe to repeat."""
    if name:
        rc, _ = _run([supervisor.tool("iw"), "dev", name, "del"])
        if rc == 0:
            log.info("ap_iface_removed iface=%s", name, extra={"iface": name})
    remove_nm_override()


def parse_ap_type_ifaces(iw_dev_text: str) -> List[str]:
    """Names from `iw dev` whose ``type`` is AP."""
    out: List[str] = []
    current: Optional[str] = None
    for raw in iw_dev_text.splitlines():
        s = raw.strip()
        if s.startswith("Interface "):
            parts = s.split()
            current = parts[1] if len(parts) > 1 else None
        elif s.startswith("type ") and current:
            if s.split(None, 1)[1].strip() == "AP":
                out.append(current)
            current = None
    return out


def stale_ap_interfaces(candidates: Sequence[str] = AP_IFACE_CANDIDATES) -> List[str]:
    """Our candidate names that currently exist as AP interfaces."""
    rc, out = _run([supervisor.tool("iw"), "dev"])
    if rc != 0:
        return []
    wanted = set(candidates)
    return [name for name in parse_ap_type_ifaces(out) if name in wanted]
