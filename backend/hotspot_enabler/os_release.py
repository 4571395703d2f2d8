from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Optional, Tuple


_OS_RELEASE_PATHS = ("/etc/os-release", "/usr/lib/os-release")

# Package-manager family -> distro ids that use it.
_FAMILIES = (
    ("apt", ("debian", "ubuntu", "linuxmint", "zorin", "pop", "raspbian")),
    ("pacman", ("arch", "manjaro", "endeavouros", "cachyos")),
    ("dnf", ("fedora", "rhel", "centos", "rocky", "almalinux")),
    ("zypper", ("opensuse", "opensuse-leap", "opensuse-tumbleweed", "suse", "sles")),
    ("xbps", ("void",)),
)


def _strip_quotes(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        return value[1:-1]
    return value


def parse_os_release(text: str) -> Dict[str, str]:
    data: Dict[str, str] = {}
    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip().lower()
        if key:
            data[key] = _strip_quotes(value)
    return data


def read_os_release(paths: Optional[Tuple[str, ...]] = None) -> Dict[str, str]:
    for path in paths or _OS_RELEASE_PATHS:
        try:
            text = Path(path).read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError):
            continue
        data = parse_os_release(text)
        if data:
            return data
    return {}


def _split_like(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [item.strip().lower() for item in value.replace(",", " ").split() if item.strip()]


def package_family(info: Optional[Dict[str, str]] = None) -> Optional[str]:
    """
    apt / pacman / dnf / zypper / xbps for the running distro, or None.
    ``id`` is matched first, then each ``id_like`` entry in order.
    """
    info = info if info is not None else read_os_release()
    if not info:
        return None
    candidates = _split_like(info.get("id")) + _split_like(info.get("id_like"))
    for token in candidates:
        for family, ids in _FAMILIES:
            if token in ids or (family == "zypper" and token.startswith("opensuse")):
                return family
    return None
