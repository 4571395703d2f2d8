import logging
import re
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

from hotspot_enabler.engine import supervisor

log = logging.getLogger("hotspot_enabler.inventory")

SYS_CLASS_NET = Path("/sys/class/net")

# Names the orchestrator creates for its own AP interface, in preference order.
AP_IFACE_CANDIDATES = ("ap0", "ap1", "ap2", "ap3")

_IW_CHANNEL_RE = re.compile(r"^channel\s+(\d+)(?:\s+\((\d+(?:\.\d+)?)\s+MHz\))?")
_IW_WIPHY_RE = re.compile(r"^wiphy\s+(\d+)$")
_SIGNAL_RE = re.compile(r"^signal:\s*(-?\d+)")
_FREQ_RE = re.compile(r"^freq:\s*(\d+(?:\.\d+)?)")
_TOKEN_RE = re.compile(r"[A-Za-z0-9/_-]+")


@dataclass(frozen=True)
class RadioInterface:
    name: str
    phy: Optional[str] = None
    ssid: Optional[str] = None
    ip: Optional[str] = None
    mac: Optional[str] = None
    channel: int = 0
    signal_dbm: Optional[int] = None
    connected: bool = False
    supports_ap: bool = False


def _run(cmd: List[str]) -> str:
    rc, out = supervisor.run(cmd)
    return out if rc == 0 else ""


def _read_sysfs(path: Path) -> Optional[str]:
    try:
        raw = path.read_text(errors="ignore").strip()
    except OSError:
        return None
    return raw or None


def list_wireless_ifaces() -> List[str]:
    """Interfaces with a ``wireless`` sysfs node, sorted by name."""
    if not SYS_CLASS_NET.is_dir():
        return []
    return sorted(p.name for p in SYS_CLASS_NET.iterdir() if (p / "wireless").exists())


def iface_exists(ifname: str) -> bool:
    return (SYS_CLASS_NET / ifname).exists()


def get_phy_name(ifname: str) -> Optional[str]:
    phy = _read_sysfs(SYS_CLASS_NET / ifname / "phy80211" / "name")
    if phy:
        return phy
    # Some drivers do not expose phy80211/name; `iw dev <if> info` has the wiphy index.
    for line in _run([supervisor.tool("iw"), "dev", ifname, "info"]).splitlines():
        m = _IW_WIPHY_RE.match(line.strip())
        if m:
            return f"phy{m.group(1)}"
    return None


def freq_to_channel(freq_mhz: Optional[float]) -> Optional[int]:
    if not freq_mhz:
        return None
    f = int(freq_mhz)
    if f == 2484:
        return 14
    if 2412 <= f <= 2472:
        return (f - 2407) // 5
    if 5000 <= f <= 5900:
        return (f - 5000) // 5
    return None


def parse_iw_link(text: str) -> Tuple[bool, Optional[str], Optional[int], Optional[int]]:
    """
    Parse `iw dev <if> link` into (connected, ssid, signal_dbm, channel).
    The channel here is derived from ``freq:`` and only used as a fallback.
    """
    if not text.strip() or text.strip().startswith("Not connected"):
        return False, None, None, None
    ssid = None
    signal_dbm = None
    channel = None
    for raw in text.splitlines():
        s = raw.strip()
        if s.startswith("SSID:"):
            ssid = s.split(":", 1)[1].strip() or None
            continue
        m = _SIGNAL_RE.match(s)
        if m:
            signal_dbm = int(m.group(1))
            continue
        m = _FREQ_RE.match(s)
        if m:
            channel = freq_to_channel(float(m.group(1)))
    return text.lstrip().startswith("Connected"), ssid, signal_dbm, channel


def parse_iw_info_channel(text: str) -> Optional[int]:
    for raw in text.splitlines():
        m = _IW_CHANNEL_RE.match(raw.strip())
        if m:
            return int(m.group(1))
    return None


def parse_ipv4(text: str) -> Optional[str]:
    """First address from `ip -4 -o addr show dev <if>`, without the prefix length."""
    for raw in text.splitlines():
        parts = raw.split()
        if "inet" in parts:
            idx = parts.index("inet")
            if idx + 1 < len(parts):
                return parts[idx + 1].split("/", 1)[0]
    return None


def _indent(line: str) -> int:
    return len(line) - len(line.lstrip())


def _concurrency_blocks(text: str) -> Iterable[str]:
    """
    Yield the text blocks of `iw phy <phy> info` that describe what may run
    together: each `*` entry (with continuation lines) under
    "valid interface combinations:", and the whole "Supported interface
    modes:" list.
    """
    section = None
    header_indent = 0
    block: List[str] = []

    def _flush():
        if block:
            yield " ".join(block)
            block.clear()

    for raw in text.splitlines():
        s = raw.strip()
        if not s:
            continue
        if section is not None and _indent(raw) <= header_indent:
            yield from _flush()
            section = None
        if section == "combinations":
            if s.startswith("*"):
                yield from _flush()
            block.append(s.lstrip("*").strip())
            continue
        if section == "modes":
            if not s.startswith("*"):
                yield from _flush()
                section = None
            else:
                block.append(s.lstrip("*").strip())
                continue
        if s.startswith("valid interface combinations"):
            section = "combinations"
            header_indent = _indent(raw)
        elif s.startswith("Supported interface modes"):
            section = "modes"
            header_indent = _indent(raw)
    yield from _flush()


def parse_ap_managed_concurrency(text: str) -> bool:
    """
    True only when one block lists both ``managed`` and ``AP`` as whole
    tokens. ``AP/VLAN`` is a different mode and does not count.
    """
    for block in _concurrency_blocks(text):
        tokens = set(_TOKEN_RE.findall(block))
        if "managed" in tokens and "AP" in tokens:
            return True
    return False


def phy_supports_ap_managed(phy: Optional[str]) -> bool:
    if not phy:
        return False
    return parse_ap_managed_concurrency(_run([supervisor.tool("iw"), "phy", phy, "info"]))


def refresh(radio: RadioInterface) -> RadioInterface:
    """Re-query the same interface; never rescans."""
    name = radio.name
    iw = supervisor.tool("iw")
    connected, ssid, signal_dbm, link_channel = parse_iw_link(_run([iw, "dev", name, "link"]))
    channel = parse_iw_info_channel(_run([iw, "dev", name, "info"])) or link_channel or 0
    ip = parse_ipv4(_run([supervisor.tool("ip"), "-4", "-o", "addr", "show", "dev", name]))
    mac = _read_sysfs(SYS_CLASS_NET / name / "address")
    return replace(
        radio,
        ssid=ssid,
        ip=ip,
        mac=mac,
        channel=channel,
        signal_dbm=signal_dbm,
        connected=connected,
    )


def detect(skip: Iterable[str] = AP_IFACE_CANDIDATES) -> Optional[RadioInterface]:
    """
    First wireless interface that is not one of our AP interfaces, fully
    populated. None when there is no such interface.
    """
    skipped = set(skip)
    for name in list_wireless_ifaces():
        if name in skipped:
            continue
        phy = get_phy_name(name)
        radio = refresh(RadioInterface(name=name, phy=phy, supports_ap=phy_supports_ap_managed(phy)))
        log.info(
            "radio_detected iface=%s phy=%s channel=%s connected=%s supports_ap=%s",
            radio.name,
            radio.phy,
            radio.channel,
            radio.connected,
            radio.supports_ap,
        )
        return radio
    return None
