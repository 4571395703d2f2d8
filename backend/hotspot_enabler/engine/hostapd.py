import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple

from hotspot_enabler.adapters.inventory import RadioInterface
from hotspot_enabler.config import HotspotConfig
from hotspot_enabler.engine import supervisor
from hotspot_enabler.engine.virtual_iface import detach_supplicant
from hotspot_enabler.errors import NegotiationError

log = logging.getLogger("hotspot_enabler.hostapd")

FALLBACK_CHANNEL = 6
FIVE_GHZ_MIN_CHANNEL = 32
DEFAULT_COUNTRY = "US"

HOSTAPD_SETTLE_S = 1.5
ERROR_TAIL_LINES = 5
ERROR_TAIL_MAX_CHARS = 400

MODE_FULL = "full"
MODE_MINIMAL = "minimal"

# hostapd log fragments meaning the regulatory domain / driver refused the channel.
_CHANNEL_REJECT_PATTERNS = (
    "could not select hardware mode and channel",
    "hw_mode and channel",
    "channel not allowed",
    "invalid channel",
    "could not determine operating frequency",
)

_REG_COUNTRY_RE = re.compile(r"^country\s+([A-Z0-9]{2}):")
_LOCALE_COUNTRY_RE = re.compile(r"^[A-Za-z]{2,3}_([A-Za-z]{2})\b")


@dataclass
class NegotiationResult:
    pid: int
    channel: int
    band: str
    mode: str
    country: str
    requested_channel: int
    fallback_reason: Optional[str] = None
    warnings: List[str] = field(default_factory=list)


def _run(cmd: List[str]) -> Tuple[int, str]:
    return supervisor.run(cmd)


def resolve_channel(config_channel: int, client_channel: Optional[int]) -> int:
    if config_channel:
        return int(config_channel)
    if client_channel and client_channel > 0:
        return int(client_channel)
    return FALLBACK_CHANNEL


def band_for_channel(channel: int) -> str:
    return "5ghz" if channel >= FIVE_GHZ_MIN_CHANNEL else "2.4ghz"


def hw_mode_for_channel(channel: int) -> str:
    return "a" if band_for_channel(channel) == "5ghz" else "g"


def parse_reg_country(text: str) -> Optional[str]:
    """Global country from `iw reg get`; the world domain ``00`` counts as unset."""
    for raw in text.splitlines():
        m = _REG_COUNTRY_RE.match(raw.strip())
        if m:
            cc = m.group(1).upper()
            return None if cc == "00" else cc
    return None


def country_from_locale() -> Optional[str]:
    for key in ("LC_ALL", "LC_MESSAGES", "LANG"):
        m = _LOCALE_COUNTRY_RE.match((os.environ.get(key) or "").strip())
        if m:
            return m.group(1).upper()
    return None


def resolve_country() -> str:
    rc, out = _run([supervisor.tool("iw"), "reg", "get"])
    cc = parse_reg_country(out) if rc == 0 else None
    return cc or country_from_locale() or DEFAULT_COUNTRY


def classify_failure(log_text: str) -> str:
    low = (log_text or "").lower()
    for pattern in _CHANNEL_REJECT_PATTERNS:
        if pattern in low:
            return "channel_rejected"
    return "generic"


def write_hostapd_conf(
    *,
    path: Path,
    ifname: str,
    config: HotspotConfig,
    channel: int,
    country: str,
    mode: str = MODE_FULL,
) -> None:
    full = mode == MODE_FULL
    five_ghz = band_for_channel(channel) == "5ghz"

    lines = [
        f"interface={ifname}",
        "driver=nl80211",
        f"ssid={config.ssid}",
        f"hw_mode={hw_mode_for_channel(channel)}",
        f"channel={int(channel)}",
        f"country_code={country}",
        "ieee80211d=1",
        f"wmm_enabled={1 if full else 0}",
        "macaddr_acl=0",
        "auth_algs=1",
        f"ignore_broadcast_ssid={1 if config.hidden else 0}",
        f"max_num_sta={int(config.max_clients)}",
    ]
    if full:
        lines.append("ieee80211n=1")
        if five_ghz:
            lines.append("ieee80211ac=1")
    lines += [
        "wpa=2",
        "wpa_key_mgmt=WPA-PSK",
        "rsn_pairwise=CCMP",
        f"wpa_passphrase={config.passphrase}",
    ]

    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write("\n".join(lines) + "\n")
    os.chmod(path, 0o600)


def stop(pid: Optional[int], pid_file: Path) -> None:
    """Stop a hostapd instance we started, by pid or by its pid file."""
    target = pid or supervisor.read_pid_file(pid_file)
    if supervisor.pid_matches(target, "hostapd"):
        supervisor.kill_pid(target)
    elif target:
        log.info("hostapd_pid_stale pid=%s", target)
    supervisor.remove_file(pid_file)


def _prepare_attempt(ap_iface: str, paths) -> None:
    detach_supplicant(ap_iface)
    _run([supervisor.tool("ip"), "link", "set", ap_iface, "down"])
    stop(None, paths.hostapd_pid)
    paths.hostapd_log.parent.mkdir(parents=True, exist_ok=True)
    paths.hostapd_log.write_text("")


def _failure_tail(paths, cmd_out: str) -> str:
    lines = supervisor.read_log_tail(paths.hostapd_log, max_lines=ERROR_TAIL_LINES)
    if not lines:
        lines = [ln for ln in cmd_out.splitlines() if ln.strip()][-ERROR_TAIL_LINES:]
    return "\n".join(lines)


def launch(conf: Path, paths) -> Tuple[Optional[int], str]:
    """
    Start hostapd daemonized and wait for a live pid.
    Returns (pid, "") on success or (None, failure_text).
    """
    cmd = [
        supervisor.tool("hostapd"),
        "-B",
        "-P",
        str(paths.hostapd_pid),
        "-f",
        str(paths.hostapd_log),
        str(conf),
    ]
    rc, out = _run(cmd)
    if rc != 0:
        return None, _failure_tail(paths, out)

    found: List[int] = []

    def _alive() -> bool:
        pid = supervisor.read_pid_file(paths.hostapd_pid)
        if supervisor.pid_running(pid):
            found.append(pid)
            return True
        return False

    if supervisor.wait_until(_alive, HOSTAPD_SETTLE_S):
        return found[-1], ""
    # rc 0 without a live pid: hostapd forked, then failed during init.
    return None, _failure_tail(paths, out)


def _collapse(text: str) -> str:
    return " ".join(text.split())[:ERROR_TAIL_MAX_CHARS]


def negotiate(
    config: HotspotConfig,
    radio: RadioInterface,
    ap_iface: str,
    paths,
) -> NegotiationResult:
    """
    Bring hostapd up on ``ap_iface``, degrading step by step:

      1. full feature set on the resolved channel
      2. minimal feature set (skipped after a channel rejection)
      3. if a 5 GHz channel was rejected, both again on channel 6

    Raises NegotiationError when every attempt failed.
    """
    requested = resolve_channel(config.channel, radio.channel)
    country = resolve_country()
    channels = [requested]
    channel_rejected = False
    last_tail = ""

    while channels:
        channel = channels.pop(0)
        for mode in (MODE_FULL, MODE_MINIMAL):
            _prepare_attempt(ap_iface, paths)
            write_hostapd_conf(
                path=paths.hostapd_conf,
                ifname=ap_iface,
                config=config,
                channel=channel,
                country=country,
                mode=mode,
            )
            pid, tail = launch(paths.hostapd_conf, paths)
            if pid:
                result = NegotiationResult(
                    pid=pid,
                    channel=channel,
                    band=band_for_channel(channel),
                    mode=mode,
                    country=country,
                    requested_channel=requested,
                )
                if channel != requested:
                    result.fallback_reason = "channel_rejected_5ghz"
                    result.warnings.append(f"hostapd_channel_fallback:{requested}->{channel}")
                elif mode == MODE_MINIMAL:
                    result.fallback_reason = "minimal_features"
                    result.warnings.append("hostapd_minimal_features")
                log.info(
                    "hostapd_started pid=%s channel=%s mode=%s country=%s",
                    pid,
                    channel,
                    mode,
                    country,
                    extra={"iface": ap_iface, "pid": pid},
                )
                return result

            last_tail = tail
            kind = classify_failure(tail)
            log.warning(
                "hostapd_attempt_failed channel=%s mode=%s kind=%s",
                channel,
                mode,
                kind,
                extra={"iface": ap_iface},
            )
            if kind == "channel_rejected":
                channel_rejected = True
                break

        if channel_rejected and channel == requested and requested >= FIVE_GHZ_MIN_CHANNEL:
            channels.append(FALLBACK_CHANNEL)

    if channel_rejected and requested >= FIVE_GHZ_MIN_CHANNEL:
        raise NegotiationError(
            f"AP mode is not supported on 5 GHz channel {requested} or on 2.4 GHz "
            f"channel {FALLBACK_CHANNEL}. Connect the WiFi client to a 2.4 GHz "
            "network and try again.",
            code="hostapd_channel_rejected",
        )
    raise NegotiationError(
        f"hostapd failed: {_collapse(last_tail)}",
        code="hostapd_channel_rejected" if channel_rejected else "hostapd_failed",
    )
