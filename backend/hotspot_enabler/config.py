import logging
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from hotspot_enabler.errors import ConfigError

log = logging.getLogger("hotspot_enabler.config")

CONFIG_PATH = Path("/etc/hotspot-enabler/hotspot.conf")
CONFIG_PATH_ENV = "HOTSPOT_ENABLER_CONFIG"

MIN_PASSPHRASE_LEN = 8
MAX_PASSPHRASE_LEN = 63
MAX_SSID_BYTES = 32
MAX_CHANNEL = 196
MAX_CLIENTS_LIMIT = 255

CONFIG_KEYS = ("ssid", "password", "channel", "max_clients", "hidden")


@dataclass(frozen=True)
class HotspotConfig:
    ssid: str = "LinuxHotspot"
    passphrase: str = "password123"
    channel: int = 0  # 0 = auto, follow the client interface
    max_clients: int = 10
    hidden: bool = False

    def passphrase_valid(self) -> bool:
        return MIN_PASSPHRASE_LEN <= len(self.passphrase) <= MAX_PASSPHRASE_LEN

    def redacted(self) -> Dict[str, object]:
        return {
            "ssid": self.ssid,
            "password": "********",
            "channel": self.channel,
            "max_clients": self.max_clients,
            "hidden": self.hidden,
        }


def config_path() -> Path:
    override = (os.environ.get(CONFIG_PATH_ENV) or "").strip()
    return Path(override) if override else CONFIG_PATH


def _parse_bool(raw: str) -> bool:
    v = raw.strip().lower()
    if v in ("1", "true", "yes", "on"):
        return True
    if v in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"not a boolean: {raw!r}")


def _parse_int(raw: str, lo: int, hi: int) -> int:
    val = int(raw.strip())
    if not lo <= val <= hi:
        raise ValueError(f"{val} outside {lo}..{hi}")
    return val


def _check_ssid(raw: str) -> str:
    if not raw or "\n" in raw or "\r" in raw:
        raise ValueError("ssid must be a single non-empty line")
    if len(raw.encode("utf-8")) > MAX_SSID_BYTES:
        raise ValueError(f"ssid longer than {MAX_SSID_BYTES} bytes")
    return raw


def _check_password(raw: str) -> str:
    if "\n" in raw or "\r" in raw:
        raise ValueError("password must be a single line")
    if len(raw) > MAX_PASSPHRASE_LEN:
        raise ValueError(f"password longer than {MAX_PASSPHRASE_LEN} chars")
    return raw


def _coerce(key: str, raw: str) -> Tuple[str, object]:
    """Map a file/CLI key to its dataclass field and parsed value. Raises ValueError."""
    if key == "ssid":
        return "ssid", _check_ssid(raw)
    if key == "password":
        return "passphrase", _check_password(raw)
    if key == "channel":
        return "channel", _parse_int(raw, 0, MAX_CHANNEL)
    if key == "max_clients":
        return "max_clients", _parse_int(raw, 1, MAX_CLIENTS_LIMIT)
    if key == "hidden":
        return "hidden", _parse_bool(raw)
    raise ValueError(f"unknown key {key!r}")


def read_config_file(path: Optional[Path] = None) -> Dict[str, str]:
    """
    Returns the raw key=value pairs on disk (or {} if missing/unreadable).
    Values are kept verbatim so an SSID with spaces round-trips.
    """
    path = path or config_path()
    if not path.exists():
        return {}
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError):
        log.warning("config_read_failed path=%s", path)
        return {}
    out: Dict[str, str] = {}
    for raw in text.splitlines():
        if not raw.strip() or raw.lstrip().startswith("#") or "=" not in raw:
            continue
        key, value = raw.split("=", 1)
        out[key.strip()] = value
    return out


def load_config(
    base: Optional[HotspotConfig] = None,
    path: Optional[Path] = None,
) -> Tuple[HotspotConfig, List[str]]:
    """
    Overlay the persisted file onto ``base`` (defaults when omitted).

    Returns the merged config and the keys that were applied; an empty list
    means the file was absent or held nothing usable, and ``base`` comes back
    unchanged.
    """
    cfg = base or HotspotConfig()
    changes: Dict[str, object] = {}
    applied: List[str] = []
    for key, raw in read_config_file(path).items():
        if key not in CONFIG_KEYS:
            continue
        try:
            field, value = _coerce(key, raw)
        except ValueError as e:
            log.warning("config_value_skipped key=%s err=%s", key, e)
            continue
        changes[field] = value
        applied.append(key)
    if not changes:
        return cfg, []
    return replace(cfg, **changes), applied


def _serialize(cfg: HotspotConfig) -> str:
    lines = [
        f"ssid={cfg.ssid}",
        f"password={cfg.passphrase}",
        f"channel={int(cfg.channel)}",
        f"max_clients={int(cfg.max_clients)}",
        f"hidden={1 if cfg.hidden else 0}",
    ]
    return "\n".join(lines) + "\n"


def _write_atomic(path: Path, payload: str, mode: int = 0o600) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(payload)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp, path)
    # The file holds the passphrase: owner read/write only.
    os.chmod(path, mode)


def save_config(cfg: HotspotConfig, path: Optional[Path] = None) -> Path:
    path = path or config_path()
    try:
        _write_atomic(path, _serialize(cfg))
    except OSError as e:
        raise ConfigError(f"Failed to save configuration to {path}: {e}", code="config_write_failed") from e
    log.info("config_saved path=%s", path)
    return path


def apply_edit(cfg: HotspotConfig, key: str, raw_value: str) -> HotspotConfig:
    """
    Validated single-field edit. The passphrase must also meet the minimum
    length here, unlike on load, so a bad edit can never be persisted.
    """
    key = key.strip().lower()
    try:
        field, value = _coerce(key, raw_value)
    except ValueError as e:
        raise ConfigError(f"Invalid value for {key}: {e}") from e
    if field == "passphrase" and len(str(value)) < MIN_PASSPHRASE_LEN:
        raise ConfigError(
            f"Password must be at least {MIN_PASSPHRASE_LEN} characters.",
            code="invalid_passphrase",
        )
    return replace(cfg, **{field: value})
