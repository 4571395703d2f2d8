import argparse
import json
import logging
import signal
import sys
import threading
from dataclasses import asdict
from typing import List, Optional

from hotspot_enabler import preflight
from hotspot_enabler.config import CONFIG_KEYS, apply_edit, config_path, load_config, save_config
from hotspot_enabler.engine import dnsmasq
from hotspot_enabler.errors import HotspotError
from hotspot_enabler.lifecycle import Hotspot
from hotspot_enabler.logging import setup_logging
from hotspot_enabler.state import PHASE_RUNNING, RuntimePaths, format_uptime, load_state, snapshot

log = logging.getLogger("hotspot_enabler.main")

REFRESH_INTERVAL_S = 2.0


def _install_signal_handlers(stop_event: threading.Event) -> None:
    def _handler(signum, _frame):
        if stop_event.is_set():
            return
        try:
            sig_name = signal.Signals(signum).name
        except ValueError:
            sig_name = str(signum)
        log.info("shutdown_signal:%s", sig_name)
        stop_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        signal.signal(sig, _handler)


def _print_json(obj) -> None:
    print(json.dumps(obj, indent=2, sort_keys=True))


def _cmd_run(args) -> int:
    if not args.skip_preflight:
        pf = preflight.run()
        for w in pf["warnings"]:
            log.warning("preflight_warning %s", w)
        if pf["errors"]:
            for e in pf["errors"]:
                log.error("preflight_error %s", e)
            hint = pf["details"].get("install_hint")
            if hint:
                print(f"Missing dependencies. Try: {hint}", file=sys.stderr)
            return 1

    cfg, applied = load_config()
    log.info("config_loaded path=%s applied=%s", config_path(), ",".join(applied) or "defaults")
    hotspot = Hotspot(cfg)

    stop_event = threading.Event()
    _install_signal_handlers(stop_event)

    res = hotspot.start()
    if res.code != "started":
        _print_json(snapshot(res.status))
        return 1
    _print_json(snapshot(res.status))

    rc = 0
    try:
        while not stop_event.wait(REFRESH_INTERVAL_S):
            res = hotspot.refresh()
            if res.code == "daemon_died":
                print(res.status.last_error, file=sys.stderr)
                rc = 1
                break
    finally:
        hotspot.stop()
    return rc


def _cmd_status(_args) -> int:
    snap = load_state(RuntimePaths.default().state)
    if not snap:
        _print_json({"phase": "stopped", "running": False})
        return 0
    if snap.get("phase") == PHASE_RUNNING:
        snap["uptime"] = format_uptime(snap.get("started_ts"))
    _print_json(snap)
    return 0


def _cmd_clients(_args) -> int:
    clients = dnsmasq.enumerate_clients(RuntimePaths.default().dnsmasq_leases)
    _print_json([asdict(c) for c in clients])
    return 0


def _cmd_repair(_args) -> int:
    cfg, _ = load_config()
    res = Hotspot(cfg).repair()
    _print_json(snapshot(res.status))
    return 0


def _cmd_config_show(_args) -> int:
    cfg, applied = load_config()
    out = cfg.redacted()
    out["path"] = str(config_path())
    out["from_file"] = applied
    _print_json(out)
    return 0


def _cmd_config_set(args) -> int:
    cfg, _ = load_config()
    try:
        updated = apply_edit(cfg, args.key, args.value)
        path = save_config(updated)
    except HotspotError as e:
        _print_json(e.detail({"key": args.key}))
        return 2
    print(f"{args.key} saved to {path}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="hotspot-enabler",
        description="Share a WiFi client connection through a virtual access point on the same radio.",
    )
    ap.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING or ERROR")
    sub = ap.add_subparsers(dest="command", required=True)

    p_run = sub.add_parser("run", help="start the hotspot and keep it up until interrupted")
    p_run.add_argument("--skip-preflight", action="store_true")
    p_run.set_defaults(func=_cmd_run)

    sub.add_parser("status", help="print the last recorded status").set_defaults(func=_cmd_status)
    sub.add_parser("clients", help="list DHCP clients").set_defaults(func=_cmd_clients)
    sub.add_parser("repair", help="clean up after a crashed run").set_defaults(func=_cmd_repair)

    p_cfg = sub.add_parser("config", help="show or edit the persisted configuration")
    cfg_sub = p_cfg.add_subparsers(dest="config_command", required=True)
    cfg_sub.add_parser("show").set_defaults(func=_cmd_config_show)
    p_set = cfg_sub.add_parser("set")
    p_set.add_argument("key", choices=CONFIG_KEYS)
    p_set.add_argument("value")
    p_set.set_defaults(func=_cmd_config_set)
    return ap


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
