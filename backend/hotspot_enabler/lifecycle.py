import logging
import threading
import time
from typing import List, Optional

from hotspot_enabler.adapters import inventory
from hotspot_enabler.adapters.inventory import RadioInterface
from hotspot_enabler.config import HotspotConfig, MIN_PASSPHRASE_LEN, MAX_PASSPHRASE_LEN
from hotspot_enabler.engine import dnsmasq, hostapd, nat, supervisor, virtual_iface
from hotspot_enabler.errors import ConfigError, DiscoveryError, HotspotError
from hotspot_enabler.state import (
    PHASE_ERROR,
    PHASE_RUNNING,
    PHASE_STARTING,
    PHASE_STOPPED,
    PHASE_STOPPING,
    HotspotStatus,
    RuntimePaths,
    load_state,
    save_state,
)

log = logging.getLogger("hotspot_enabler.lifecycle")


def _run(cmd: List[str]):
    return supervisor.run(cmd)


class LifecycleResult:
    def __init__(self, code, status):
        self.code = code
        self.status = status


def _recover_pid(raw: object, name: str) -> Optional[int]:
    """A pid from an old snapshot, only if it is still alive and still ``name``."""
    if not isinstance(raw, int):
        return None
    return raw if supervisor.pid_matches(raw, name) else None


class Hotspot:
    """
    Owns one HotspotStatus and serializes every lifecycle operation on it.

    start/stop/refresh/repair may be called from any thread; each holds the
    lock for its whole duration and returns a LifecycleResult.
    """

    def __init__(self, config: Optional[HotspotConfig] = None, paths: Optional[RuntimePaths] = None):
        self._lock = threading.Lock()
        self.paths = paths or RuntimePaths.default()
        self.status = HotspotStatus(config=config or HotspotConfig())

    # -- persistence ------------------------------------------------------

    def _persist(self) -> None:
        try:
            save_state(self.status, self.paths.state)
        except OSError as e:
            log.warning("state_save_failed path=%s err=%s", self.paths.state, e)

    def _transition(self, phase: str) -> None:
        prev = self.status.phase
        self.status.phase = phase
        log.info("phase %s -> %s", prev, phase, extra={"phase": phase})
        self._persist()

    # -- public API -------------------------------------------------------

    def start(self) -> LifecycleResult:
        with self._lock:
            return self._start_impl()

    def stop(self) -> LifecycleResult:
        with self._lock:
            return self._stop_impl()

    def refresh(self) -> LifecycleResult:
        with self._lock:
            return self._refresh_impl()

    def repair(self) -> LifecycleResult:
        with self._lock:
            return self._repair_impl()

    def update_config(self, config: HotspotConfig) -> None:
        """New config takes effect on the next start."""
        with self._lock:
            self.status.config = config
            self._persist()

    # -- start ------------------------------------------------------------

    def _fail(self, exc: HotspotError, cleanup: bool) -> LifecycleResult:
        st = self.status
        log.error(
            "start_failed code=%s err=%s",
            exc.code,
            exc,
            extra={"op": "start", "result_code": exc.code},
        )
        st.phase = PHASE_ERROR
        st.last_error = str(exc)
        st.error_code = exc.code
        if cleanup:
            self._cleanup_impl()
        self._persist()
        return LifecycleResult("start_failed", st)

    def _assign_gateway(self, ap_iface: str) -> None:
        ip = supervisor.tool("ip")
        _run([ip, "link", "set", ap_iface, "up"])
        rc, out = _run([ip, "addr", "add", dnsmasq.GATEWAY_CIDR, "dev", ap_iface])
        if rc == 0:
            return
        # Typically "RTNETLINK answers: File exists" after a previous run.
        rc, out = _run([ip, "addr", "replace", dnsmasq.GATEWAY_CIDR, "dev", ap_iface])
        if rc != 0:
            log.warning("gateway_assign_failed iface=%s out=%s", ap_iface, " ".join(out.split()))

    def _start_impl(self) -> LifecycleResult:
        st = self.status
        if st.phase in (PHASE_STARTING, PHASE_RUNNING):
            return LifecycleResult("already_running", st)
        if st.phase == PHASE_ERROR:
            self._cleanup_impl()

        st.last_error = None
        st.error_code = None
        st.mode = None
        st.fallback_reason = None
        st.warnings = []
        self._transition(PHASE_STARTING)

        try:
            radio = inventory.detect()
            phy = (radio.phy or inventory.get_phy_name(radio.name)) if radio else None
        except Exception:
            log.exception("discovery_crashed", extra={"op": "start"})
            return self._fail(
                HotspotError("Unexpected failure while detecting the WiFi interface.", code="start_crashed"),
                cleanup=False,
            )
        if radio is None:
            return self._fail(DiscoveryError("No WiFi interface detected."), cleanup=False)
        st.radio = radio

        if not phy:
            return self._fail(
                DiscoveryError("Cannot determine physical WiFi device.", code="no_phy"),
                cleanup=False,
            )
        st.phy = phy
        if not radio.supports_ap:
            st.warnings.append(f"ap_managed_concurrency_not_reported:{phy}")

        if not st.config.passphrase_valid():
            return self._fail(
                ConfigError(
                    f"Password must be {MIN_PASSPHRASE_LEN}-{MAX_PASSPHRASE_LEN} characters.",
                    code="invalid_passphrase",
                ),
                cleanup=False,
            )

        try:
            st.ap_interface = virtual_iface.create_ap_interface(phy, radio.name)
            self._persist()

            try:
                dnsmasq.write_dnsmasq_conf(
                    self.paths.dnsmasq_conf, st.ap_interface, self.paths, st.config.max_clients
                )
            except OSError as e:
                raise HotspotError(
                    f"Failed to generate dnsmasq configuration: {e}", code="config_write_failed"
                ) from e

            try:
                result = hostapd.negotiate(st.config, radio, st.ap_interface, self.paths)
            except OSError as e:
                raise HotspotError(
                    f"Failed to generate hostapd configuration: {e}", code="config_write_failed"
                ) from e
            st.hostapd_pid = result.pid
            st.mode = result.mode
            st.fallback_reason = result.fallback_reason
            st.warnings.extend(result.warnings)
            self._persist()

            self._assign_gateway(st.ap_interface)
            st.dnsmasq_pid = dnsmasq.start(st.ap_interface, self.paths)
            st.ip_forward_was_enabled = nat.apply(radio.name, st.ap_interface)
        except HotspotError as e:
            return self._fail(e, cleanup=True)
        except Exception:
            log.exception("start_crashed", extra={"op": "start"})
            return self._fail(
                HotspotError("Unexpected failure while starting the hotspot.", code="start_crashed"),
                cleanup=True,
            )

        st.started_ts = int(time.time())
        st.clients = []
        self._transition(PHASE_RUNNING)
        log.info(
            "hotspot_started ap=%s client=%s ssid=%s",
            st.ap_interface,
            radio.name,
            st.config.ssid,
            extra={"op": "start", "iface": st.ap_interface, "result_code": "started"},
        )
        return LifecycleResult("started", st)

    # -- stop / cleanup ---------------------------------------------------

    def _cleanup_impl(self) -> List[str]:
        """
        Release everything a start may have created. Every step tolerates the
        resource being absent, so this is safe to repeat.
        """
        st = self.status
        p = self.paths

        hostapd.stop(st.hostapd_pid, p.hostapd_pid)
        supervisor.pkill(["-9", "-x", "hostapd"])
        dnsmasq.stop(st.dnsmasq_pid, p)

        client_if = st.radio.name if st.radio else None
        nat.remove(client_if, st.ap_interface, st.ip_forward_was_enabled)
        virtual_iface.remove_ap_interface(st.ap_interface)

        removed = [str(f) for f in p.temp_files() if supervisor.remove_file(f)]

        st.hostapd_pid = None
        st.dnsmasq_pid = None
        st.ip_forward_was_enabled = None
        st.ap_interface = None
        st.started_ts = None
        st.clients = []
        log.info("cleanup_done removed_files=%d", len(removed), extra={"op": "cleanup"})
        return removed

    def _stop_impl(self) -> LifecycleResult:
        st = self.status
        if st.phase == PHASE_STOPPED:
            return LifecycleResult("already_stopped", st)

        self._transition(PHASE_STOPPING)
        self._cleanup_impl()
        st.last_error = None
        st.error_code = None
        st.mode = None
        st.fallback_reason = None
        self._transition(PHASE_STOPPED)
        return LifecycleResult("stopped", st)

    # -- refresh ----------------------------------------------------------

    def _refresh_impl(self) -> LifecycleResult:
        st = self.status
        if st.phase != PHASE_RUNNING:
            return LifecycleResult("not_running", st)

        died = None
        if not supervisor.pid_running(st.hostapd_pid):
            died = "hostapd"
        elif not supervisor.pid_running(st.dnsmasq_pid):
            died = "dnsmasq"
        if died:
            # Cleanup waits for the next start/stop so the failure can be inspected.
            st.last_error = f"{died} process died unexpectedly."
            st.error_code = f"{died}_died"
            log.error("daemon_died name=%s", died, extra={"op": "refresh", "result_code": st.error_code})
            self._transition(PHASE_ERROR)
            return LifecycleResult("daemon_died", st)

        if st.radio is not None:
            st.radio = inventory.refresh(st.radio)
        st.clients = dnsmasq.enumerate_clients(self.paths.dnsmasq_leases)
        self._persist()
        return LifecycleResult("refreshed", st)

    # -- repair -----------------------------------------------------------

    def _repair_impl(self) -> LifecycleResult:
        """
        Crash recovery: adopt what the last snapshot says we created, then
        run the normal cleanup and sweep leftover AP interfaces.
        """
        st = self.status
        if st.phase == PHASE_RUNNING:
            return LifecycleResult("already_running", st)

        snap = load_state(self.paths.state)
        if snap:
            st.ap_interface = st.ap_interface or snap.get("ap_interface")
            st.hostapd_pid = st.hostapd_pid or _recover_pid(snap.get("hostapd_pid"), "hostapd")
            st.dnsmasq_pid = st.dnsmasq_pid or _recover_pid(snap.get("dnsmasq_pid"), "dnsmasq")
            if st.ip_forward_was_enabled is None and isinstance(snap.get("ip_forward_was_enabled"), bool):
                st.ip_forward_was_enabled = snap["ip_forward_was_enabled"]
            radio = snap.get("radio")
            if st.radio is None and isinstance(radio, dict) and radio.get("name"):
                st.radio = RadioInterface(name=str(radio["name"]), phy=radio.get("phy"))

        self._cleanup_impl()

        warnings: List[str] = []
        for name in virtual_iface.stale_ap_interfaces():
            virtual_iface.force_remove_iface(name)
            warnings.append(f"repair_removed_ap_iface:{name}")

        st.warnings = warnings
        st.last_error = None
        st.error_code = None
        st.mode = None
        st.fallback_reason = None
        self._transition(PHASE_STOPPED)
        log.info("repair_done warnings=%s", ",".join(warnings) or "none", extra={"op": "repair"})
        return LifecycleResult("repaired", st)
