from typing import Any, Dict, Optional

ERROR_REMEDIATIONS: Dict[str, str] = {
    "no_wifi_interface": (
        "Make sure the WiFi adapter is present and its driver is loaded (`iw dev`)."
    ),
    "no_phy": (
        "The interface is not backed by a cfg80211 radio; check /sys/class/net/<if>/phy80211."
    ),
    "invalid_passphrase": "Set a passphrase of at least 8 characters.",
    "ap_iface_names_in_use": (
        "Remove the stale ap0..ap3 interfaces (`iw dev <name> del`) or run `hotspot-enabler repair`."
    ),
    "ap_iface_unsupported": (
        "The driver may not support AP/STA concurrency; check `iw phy <phy> info` "
        "for a combination listing both managed and AP."
    ),
    "hostapd_channel_rejected": (
        "Connect the WiFi client to a 2.4 GHz network, or pick a channel the "
        "regulatory domain allows for AP mode."
    ),
    "hostapd_failed": "Check the hostapd log and verify adapter/hostapd compatibility.",
    "config_write_failed": "Check that the config directory is writable by root.",
    "dnsmasq_failed": (
        "Another DNS/DHCP server may hold port 53 (systemd-resolved, dnsmasq.service)."
    ),
    "nat_failed": "Check that iptables is installed and usable (`iptables -L`).",
    "hostapd_died": "hostapd exited while running; check the hostapd log, then start again.",
    "dnsmasq_died": "dnsmasq exited while running; check the dnsmasq log, then start again.",
    "start_crashed": "Unexpected failure during start; check the logs and run `hotspot-enabler repair`.",
    "invalid_config": "Check the value against the allowed range for that key.",
}


class HotspotError(RuntimeError):
    """Fatal lifecycle failure: ``code`` is machine-readable, ``str()`` is one line for humans."""

    code = "hotspot_error"

    def __init__(self, message: str, code: Optional[str] = None) -> None:
        super().__init__(" ".join(str(message).split()))
        if code:
            self.code = code

    def detail(self, context: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return build_error_detail(self.code, str(self), context)


class DiscoveryError(HotspotError):
    code = "no_wifi_interface"


class ConfigError(HotspotError):
    code = "invalid_config"


class ApInterfaceError(HotspotError):
    code = "ap_iface_unsupported"


class NegotiationError(HotspotError):
    code = "hostapd_failed"


class DaemonLaunchError(HotspotError):
    code = "dnsmasq_failed"


class NatError(HotspotError):
    code = "nat_failed"


def build_error_detail(
    code: str,
    message: Optional[str] = None,
    context: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    return {
        "code": code,
        "message": message,
        "remediation": ERROR_REMEDIATIONS.get(code, "Check logs for details."),
        "context": context or {},
    }
