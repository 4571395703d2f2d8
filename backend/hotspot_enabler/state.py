import json
import os
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from hotspot_enabler.adapters.inventory import RadioInterface
from hotspot_enabler.config import HotspotConfig
from hotspot_enabler.engine.dnsmasq import ConnectedClient

RUN_DIR = Path("/run/hotspot-enabler")
RUN_DIR_ENV = "HOTSPOT_ENABLER_RUN_DIR"

SCHEMA_VERSION = 1

PHASE_STOPPED = "stopped"
PHASE_STARTING = "starting"
PHASE_RUNNING = "running"
PHASE_STOPPING = "stopping"
PHASE_ERROR = "error"


def run_dir() -> Path:
    override = (os.environ.get(RUN_DIR_ENV) or "").strip()
    return Path(override) if override else RUN_DIR


@dataclass(frozen=True)
class RuntimePaths:
    """Every file the orchestrator creates at runtime, rooted in one directory."""

    base: Path

    @classmethod
    def default(cls) -> "RuntimePaths":
        return cls(run_dir())

    @property
    def hostapd_conf(self) -> Path:
        return self.base / "hostapd.conf"

    @property
    def hostapd_log(self) -> Path:
        return self.base / "hostapd.log"

    @property
    def hostapd_pid(self) -> Path:
        return self.base / "hostapd.pid"

    @property
    def dnsmasq_conf(self) -> Path:
        return self.base / "dnsmasq.conf"

    @property
    def dnsmasq_log(self) -> Path:
        return self.base / "dnsmasq.log"

    @property
    def dnsmasq_pid(self) -> Path:
        return self.base / "dnsmasq.pid"

    @property
    def dnsmasq_leases(self) -> Path:
        return self.base / "dnsmasq.leases"

    @property
    def state(self) -> Path:
        return self.base / "state.json"

    def temp_files(self) -> List[Path]:
        return [
            self.hostapd_conf,
            self.hostapd_log,
            self.hostapd_pid,
            self.dnsmasq_conf,
            self.dnsmasq_log,
            self.dnsmasq_pid,
            self.dnsmasq_leases,
        ]


@dataclass
class HotspotStatus:
    phase: str = PHASE_STOPPED
    config: HotspotConfig = field(default_factory=HotspotConfig)
    radio: Optional[RadioInterface] = None
    phy: Optional[str] = None
    ap_interface: Optional[str] = None
    hostapd_pid: Optional[int] = None
    dnsmasq_pid: Optional[int] = None
    started_ts: Optional[int] = None
    last_error: Optional[str] = None
    error_code: Optional[str] = None
    # None means NAT was never applied this run; teardown then leaves the sysctl alone.
    ip_forward_was_enabled: Optional[bool] = None
    mode: Optional[str] = None
    fallback_reason: Optional[str] = None
    warnings: List[str] = field(default_factory=list)
    clients: List[ConnectedClient] = field(default_factory=list)

    @property
    def running(self) -> bool:
        return self.phase == PHASE_RUNNING


def format_uptime(started_ts: Optional[int], now: Optional[float] = None) -> str:
    if not started_ts:
        return "--"
    elapsed = max(0, int((now if now is not None else time.time()) - started_ts))
    hours, rem = divmod(elapsed, 3600)
    minutes, seconds = divmod(rem, 60)
    if hours:
        return f"{hours}h {minutes}m {seconds}s"
    if minutes:
        return f"{minutes}m {seconds}s"
    return f"{seconds}s"


def snapshot(status: HotspotStatus) -> Dict[str, Any]:
    """JSON-safe view of the status; the passphrase never leaves the process."""
    return {
        "schema_version": SCHEMA_VERSION,
        "phase": status.phase,
        "running": status.running,
        "config": status.config.redacted(),
        "radio": asdict(status.radio) if status.radio else None,
        "phy": status.phy,
        "ap_interface": status.ap_interface,
        "hostapd_pid": status.hostapd_pid,
        "dnsmasq_pid": status.dnsmasq_pid,
        "started_ts": status.started_ts,
        "uptime": format_uptime(status.started_ts) if status.running else "--",
        "last_error": status.last_error,
        "error_code": status.error_code,
        "ip_forward_was_enabled": status.ip_forward_was_enabled,
        "mode": status.mode,
        "fallback_reason": status.fallback_reason,
        "warnings": list(status.warnings),
        "clients": [asdict(c) for c in status.clients],
    }


def _write_atomic(path: Path, payload: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    with open(tmp, "w", encoding="utf-8") as f:
        f.write(payload)
        f.flush()
        try:
            os.fsync(f.fileno())
        except OSError:
            # On some FS / environments fsync may fail; best-effort.
            pass
    os.replace(tmp, path)


def save_state(status: HotspotStatus, path: Path) -> Dict[str, Any]:
    snap = snapshot(status)
    _write_atomic(path, json.dumps(snap, indent=2, sort_keys=True))
    # Runtime state is non-secret; 0644 is reasonable.
    os.chmod(path, 0o644)
    return snap


def load_state(path: Path) -> Dict[str, Any]:
    """
    Last snapshot written by any orchestrator process, or {} when there is
    none. Never throws.
    """
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text())
    except (OSError, ValueError):
        return {}
    return data if isinstance(data, dict) else {}
