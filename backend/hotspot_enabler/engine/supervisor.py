import logging
import os
import shutil
import signal
import subprocess
import time
from pathlib import Path
from typing import Callable, List, Optional, Tuple

log = logging.getLogger("hotspot_enabler.supervisor")

_CMD_TIMEOUT_S = 10.0
KILL_TIMEOUT_S = 3.0


def tool(name: str) -> str:
    """Absolute path of an external tool, falling back to /usr/sbin like the packaged layout."""
    return shutil.which(name) or f"/usr/sbin/{name}"


def run(cmd: List[str], timeout_s: float = _CMD_TIMEOUT_S) -> Tuple[int, str]:
    """
    Run an argument vector with captured output and return (rc, stdout+stderr).

    Never raises for the usual failure modes: a missing binary is rc 127 and a
    timeout is rc 124 and any other OSError is rc 126, so best-effort callers
    only need to look at rc.
    """
    try:
        p = subprocess.run(cmd, capture_output=True, text=True, errors="replace", timeout=timeout_s)
    except FileNotFoundError:
        return 127, f"{cmd[0]}: not found"
    except OSError as e:
        log.warning("cmd_failed cmd=%s err=%s", " ".join(cmd), e)
        return 126, str(e)
    except subprocess.TimeoutExpired as exc:
        out = (exc.stdout or "") if isinstance(exc.stdout, str) else ""
        log.warning("cmd_timeout cmd=%s", " ".join(cmd))
        return 124, out
    out = (p.stdout or "") + ("\n" + p.stderr if p.stderr else "")
    return p.returncode, out


def wait_until(predicate: Callable[[], bool], timeout_s: float, poll_s: float = 0.05) -> bool:
    """Poll ``predicate`` until it holds or ``timeout_s`` elapses; checked at least once."""
    deadline = time.monotonic() + max(0.0, timeout_s)
    while True:
        if predicate():
            return True
        if time.monotonic() >= deadline:
            return False
        time.sleep(poll_s)


def read_pid_file(path: Path) -> Optional[int]:
    if not path.exists():
        return None
    try:
        raw = path.read_text(errors="ignore").strip()
    except OSError:
        return None
    if not raw:
        return None
    try:
        return int(raw.split()[0])
    except ValueError:
        return None


def pid_running(pid: Optional[int]) -> bool:
    if not pid or pid <= 0:
        return False
    return Path(f"/proc/{pid}").exists()


def pid_cmdline(pid: int) -> str:
    try:
        raw = Path(f"/proc/{pid}/cmdline").read_bytes()
    except OSError:
        return ""
    return raw.decode("utf-8", "ignore").replace("\x00", " ").strip()


def pid_matches(pid: Optional[int], name: str) -> bool:
    """True when ``pid`` is alive and its command line still mentions ``name``."""
    if not pid_running(pid):
        return False
    return name in pid_cmdline(pid).lower()


def kill_pid(pid: Optional[int], timeout_s: float = KILL_TIMEOUT_S) -> bool:
    """
    SIGTERM, wait for /proc/<pid> to disappear, then SIGKILL.
    Returns True when a signal was delivered.
    """
    if not pid or pid <= 0:
        return False
    try:
        os.kill(pid, signal.SIGTERM)
    except ProcessLookupError:
        return False
    except PermissionError as e:
        log.warning("kill_denied pid=%s err=%s", pid, e)
        return False

    if wait_until(lambda: not pid_running(pid), timeout_s):
        return True

    log.warning("kill_escalate pid=%s", pid)
    try:
        os.kill(pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    return True


def pkill(args: List[str]) -> bool:
    """Best-effort ``pkill``; True when something matched."""
    rc, _ = run([tool("pkill")] + args)
    return rc == 0


def read_log_tail(path: Path, max_lines: int = 50) -> List[str]:
    if not path.exists():
        return []
    try:
        data = path.read_text(errors="ignore")
    except OSError:
        return []
    return data.splitlines()[-max_lines:]


def remove_file(path: Path) -> bool:
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    except OSError as e:
        log.warning("file_remove_failed path=%s err=%s", path, e)
        return False
    return True
