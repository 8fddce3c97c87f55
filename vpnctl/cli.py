"""Command-line entry point that starts the tunnel manager and its web server."""

import argparse
import logging
import os
import sys
import threading
from pathlib import Path
from typing import Optional, Sequence

from werkzeug.serving import make_server

from .binaries import BinaryNotFoundError, ensure_openvpn
from .cron import CronManager
from .killswitch import KillSwitch, KillSwitchError
from .monitor import Monitor
from .state import AppState
from .vpn import VPNManager
from .web import WebServer

log = logging.getLogger("vpnctl")

DEFAULT_PORT = 8080
DEFAULT_DATA_DIR = "/etc/vpnctl"


def _parse_args(argv: Optional[Sequence[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="vpnctl", description="Manage OpenVPN tunnels through a web interface."
    )
    parser.add_argument("--port", "-port", type=int, default=DEFAULT_PORT,
                        help="Web server port")
    parser.add_argument("--data", "-data", default=DEFAULT_DATA_DIR,
                        help="Data directory for configs and state")
    return parser.parse_args(argv)


def _is_root() -> bool:
    geteuid = getattr(os, "geteuid", None)
    return geteuid is None or geteuid() == 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Start all services and serve the web interface until interrupted."""
    args = _parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(message)s")

    if not _is_root():
        print(
            "Warning: vpnctl should run as root to manage OpenVPN tunnels and iptables",
            file=sys.stderr,
        )

    data_dir = Path(args.data)
    for directory in (data_dir, data_dir / "configs"):
        try:
            directory.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            print(f"mkdir {directory}: {exc}", file=sys.stderr)
            return 1

    try:
        ovpn_bin, lib_dir = ensure_openvpn(data_dir)
    except BinaryNotFoundError as exc:
        print(f"openvpn: {exc}", file=sys.stderr)
        return 1

    state = AppState(data_dir)
    state.load()

    vpn = VPNManager(data_dir, ovpn_bin, lib_dir, state)
    vpn.load_tunnels()

    monitor = Monitor(vpn, state)
    monitor.start()

    killswitch = KillSwitch(state)
    ks_cfg = state.settings.kill_switch
    if ks_cfg.enabled:
        try:
            killswitch.arm(ks_cfg.allow_lan)
        except KillSwitchError as exc:
            log.warning("Kill switch arm: %s", exc)

    cron = CronManager(vpn, state)
    cron.load()
    cron.start()

    vpn.restore_connections()
    threading.Thread(target=vpn.check_external_ip, daemon=True).start()

    app = WebServer(vpn, cron, monitor, killswitch, state, data_dir)
    try:
        server = make_server("0.0.0.0", args.port, app, threaded=True)
    except OSError as exc:
        print(f"server: {exc}", file=sys.stderr)
        cron.stop()
        monitor.stop()
        return 1

    log.info("vpnctl listening on http://0.0.0.0:%d  (data: %s)", args.port, data_dir)
    log.info("OpenVPN binary: %s", ovpn_bin)
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        pass
    finally:
        server.server_close()
        cron.stop()
        monitor.stop()
    return 0


if __name__ == "__main__":
    sys.exit(main())