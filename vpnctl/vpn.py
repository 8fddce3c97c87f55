"""OpenVPN tunnel management: configs, daemon processes, traffic and health checks."""

import copy
import logging
import os
import signal
import subprocess
import threading
import time
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional

from . import netprobe
from .state import AppState, PersistedTunnel, TunnelCfg, TunnelPerf, TunnelStatus, to_json

log = logging.getLogger(__name__)

DOWNLOAD_LIMIT = 1 << 20
DOWNLOAD_TIMEOUT = 30
RETRY_SECONDS = 5
PID_POLL_SECONDS = 2
RESTART_PAUSE_SECONDS = 1
RESTART_ALL_PAUSE_SECONDS = 0.2
UDP_FAILS_BEFORE_TCP = 3
DEFAULT_SPEED_URL = "https://speed.cloudflare.com/__down"
DEFAULT_SPEED_SIZE_MB = 5
DEFAULT_PING_COUNT = 4
DEFAULT_MTU_TARGET = "8.8.8.8"
DEFAULT_IP_CHECK_URL = "https://api.ipify.org"

_UINT64 = 1 << 64


class VPNError(RuntimeError):
    """Raised for invalid tunnels, bad configs and failed operations."""


def _now() -> datetime:
    return datetime.now().astimezone()


def _counter_delta(current: int, previous: int) -> int:
    # Interface counters are unsigned 64-bit values; a reset wraps around.
    return (current - previous) % _UINT64


def _run_quiet(argv: list) -> bool:
    try:
        result = subprocess.run(
            argv, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL, check=False
        )
    except OSError:
        return False
    return result.returncode == 0


@dataclass
class TrafficStats:
    rx_bytes: int = 0
    tx_bytes: int = 0
    rx_rate: float = 0.0
    tx_rate: float = 0.0


@dataclass(eq=False)
class Tunnel:
    """A configured tunnel with its persisted fields and runtime state."""

    index: int
    name: str
    config_file: str
    tun_dev: str
    auto_reconnect: bool = True
    connected_at: Optional[datetime] = None
    cfg: TunnelCfg = field(default_factory=TunnelCfg)
    perf: TunnelPerf = field(default_factory=TunnelPerf)
    status: TunnelStatus = TunnelStatus.DISCONNECTED
    stats: TrafficStats = field(default_factory=TrafficStats)
    prev_rx: int = 0
    prev_tx: int = 0
    prev_time: Optional[float] = None
    stop_event: threading.Event = field(default_factory=threading.Event, repr=False)
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)


@dataclass
class TunnelInfo:
    """A point-in-time view of a tunnel, as served to clients."""

    index: int
    name: str
    config_file: str
    tun_dev: str
    status: TunnelStatus
    auto_reconnect: bool
    connected_at: Optional[datetime] = field(default=None, metadata={"omitempty": True})
    cfg: TunnelCfg = field(default_factory=TunnelCfg)
    perf: TunnelPerf = field(default_factory=TunnelPerf)
    rx_rate: float = 0.0
    tx_rate: float = 0.0
    rx_bytes: int = 0
    tx_bytes: int = 0

    def to_dict(self) -> dict:
        return to_json(self)


class VPNManager:
    """Owns the tunnel list and drives openvpn for each tunnel."""

    net_dev_path = netprobe.NET_DEV_PATH

    def __init__(self, data_dir, ovpn_bin, lib_dir, state: AppState):
        self.data_dir = Path(data_dir)
        self.ovpn_bin = str(ovpn_bin)
        self.lib_dir = str(lib_dir)
        self._state = state
        self._lock = threading.RLock()
        self._tunnels: list[Tunnel] = []

    # ── Persistence ──────────────────────────────────────────────────────────

    def _config_path(self, config_file: str) -> Path:
        return self.data_dir / "configs" / config_file

    def _pid_path(self, tun_dev: str) -> Path:
        return self.data_dir / f"{tun_dev}.pid"

    def load_tunnels(self) -> None:
        """Create tunnels for every persisted entry whose config file exists."""
        snap = self._state.snapshot()
        with self._lock:
            for pt in snap.tunnels:
                if not self._config_path(pt.config_file).exists():
                    continue
                tunnel = Tunnel(
                    index=pt.index,
                    name=pt.name,
                    config_file=pt.config_file,
                    tun_dev=f"tun{pt.index}",
                    auto_reconnect=pt.auto_reconnect,
                    connected_at=pt.connected_at,
                    cfg=pt.cfg,
                    perf=pt.perf,
                )
                if not tunnel.cfg.protocol:
                    tunnel.cfg.protocol = snap.settings.defaults.protocol or "udp"
                self._tunnels.append(tunnel)

    def _save_tunnels(self) -> None:
        with self._lock:
            persisted = []
            for t in self._tunnels:
                with t.lock:
                    persisted.append(
                        PersistedTunnel(
                            index=t.index,
                            name=t.name,
                            config_file=t.config_file,
                            auto_reconnect=t.auto_reconnect,
                            connected_at=t.connected_at,
                            cfg=copy.deepcopy(t.cfg),
                            perf=copy.deepcopy(t.perf),
                        )
                    )
        self._state.set_tunnels(persisted)

    def _get(self, index: int) -> Tunnel:
        with self._lock:
            if not 0 <= index < len(self._tunnels):
                raise VPNError("invalid index")
            return self._tunnels[index]

    # ── Config management ────────────────────────────────────────────────────

    def add_config(self, filename: str, data: bytes) -> TunnelInfo:
        """Store an .ovpn file and register a new tunnel for it."""
        if not filename.endswith(".ovpn"):
            raise VPNError("file must have .ovpn extension")
        safe = Path(filename).name
        path = self._config_path(safe)
        try:
            path.write_bytes(data)
            path.chmod(0o600)
        except OSError as exc:
            raise VPNError(f"write config: {exc}") from exc

        defaults = self._state.settings.defaults
        with self._lock:
            index = len(self._tunnels)
            tunnel = Tunnel(
                index=index,
                name=safe.removesuffix(".ovpn"),
                config_file=safe,
                tun_dev=f"tun{index}",
                auto_reconnect=True,
                cfg=TunnelCfg(
                    protocol=defaults.protocol or "udp",
                    compression=defaults.compression,
                    bandwidth_mb=defaults.bandwidth_mb,
                ),
            )
            self._tunnels.append(tunnel)

        self._save_tunnels()
        self._state.add_log("ok", f"[{tunnel.tun_dev}] config uploaded: {safe}")
        return self._info(tunnel)

    def import_from_url(self, url: str) -> TunnelInfo:
        """Download an .ovpn file (at most 1 MiB) and add it as a tunnel."""
        try:
            with urllib.request.urlopen(url, timeout=DOWNLOAD_TIMEOUT) as response:
                data = response.read(DOWNLOAD_LIMIT)
        except urllib.error.HTTPError as exc:
            try:
                data = exc.read(DOWNLOAD_LIMIT)
            except OSError as read_exc:
                raise VPNError(f"read: {read_exc}") from read_exc
        except (OSError, ValueError) as exc:
            raise VPNError(f"download: {exc}") from exc
        filename = url.rstrip("/").split("/")[-1]
        if not filename.endswith(".ovpn"):
            filename += ".ovpn"
        return self.add_config(filename, data)

    def delete_config(self, index: int) -> None:
        """Stop a tunnel, delete its config and renumber the remaining tunnels."""
        tunnel = self._get(index)
        self.stop_tunnel(index)
        try:
            self._config_path(tunnel.config_file).unlink()
        except OSError:
            pass
        with self._lock:
            if tunnel in self._tunnels:
                self._tunnels.remove(tunnel)
            for position, other in enumerate(self._tunnels):
                other.index = position
                other.tun_dev = f"tun{position}"
        self._save_tunnels()
        self._state.add_log("warn", f"[{tunnel.tun_dev}] config deleted")

    def read_config(self, index: int) -> str:
        """The raw .ovpn text of a tunnel."""
        tunnel = self._get(index)
        return self._config_path(tunnel.config_file).read_text(
            encoding="utf-8", errors="replace"
        )

    def write_config(self, index: int, content: str) -> None:
        """Replace the .ovpn text of a tunnel."""
        tunnel = self._get(index)
        path = self._config_path(tunnel.config_file)
        path.write_text(content, encoding="utf-8")
        path.chmod(0o600)
        self._state.add_log("ok", f"[{tunnel.tun_dev}] config edited and saved")

    def update_tunnel_settings(self, index: int, cfg: TunnelCfg) -> None:
        """Replace the per-tunnel settings."""
        tunnel = self._get(index)
        with tunnel.lock:
            old_proto = tunnel.cfg.protocol
            tunnel.cfg = copy.deepcopy(cfg)
        if old_proto != cfg.protocol:
            self._state.add_log(
                "ok", f"[{tunnel.tun_dev}] protocol changed {old_proto}→{cfg.protocol}"
            )
        self._save_tunnels()

    def set_auto_reconnect(self, index: int, enabled: bool) -> None:
        tunnel = self._get(index)
        tunnel.auto_reconnect = enabled
        self._save_tunnels()

    # ── Tunnel control ───────────────────────────────────────────────────────

    def start_tunnel(self, index: int) -> threading.Thread:
        """Start the tunnel in a background thread, which is returned."""
        tunnel = self._get(index)
        thread = threading.Thread(
            target=self._run_tunnel, args=(tunnel,), name=f"tunnel-{tunnel.tun_dev}", daemon=True
        )
        thread.start()
        return thread

    def stop_tunnel(self, index: int) -> None:
        """Signal the tunnel loop to stop and kill the openvpn daemon."""
        tunnel = self._get(index)
        with tunnel.lock:
            tunnel.stop_event.set()

        pid_path = self._pid_path(tunnel.tun_dev)
        try:
            pid = pid_path.read_text().strip()
        except OSError:
            pid = None
        if pid is not None:
            if pid:
                try:
                    os.kill(int(pid), signal.SIGTERM)
                except (ValueError, OSError):
                    pass
            try:
                pid_path.unlink()
            except OSError:
                pass

        with tunnel.lock:
            tunnel.status = TunnelStatus.DISCONNECTED
            tunnel.connected_at = None
        self._state.add_log("warn", f"[{tunnel.tun_dev}] stopped by user")
        self._save_tunnels()

    def restart_tunnel(self, index: int) -> threading.Thread:
        self.stop_tunnel(index)
        time.sleep(RESTART_PAUSE_SECONDS)
        return self.start_tunnel(index)

    def restart_all(self) -> None:
        with self._lock:
            indexes = [t.index for t in self._tunnels]
        for index in indexes:
            try:
                self.restart_tunnel(index)
            except VPNError as exc:
                log.warning("restart tunnel %d: %s", index, exc)
            time.sleep(RESTART_ALL_PAUSE_SECONDS)

    def restore_connections(self) -> None:
        """Start every tunnel that has auto-reconnect enabled."""
        with self._lock:
            tunnels = list(self._tunnels)
        for tunnel in tunnels:
            if tunnel.auto_reconnect:
                self._state.add_log("warn", f"[{tunnel.tun_dev}] restoring after restart")
                threading.Thread(target=self._run_tunnel, args=(tunnel,), daemon=True).start()

    def _launch(self, argv: list) -> Optional[str]:
        env = dict(os.environ)
        env["LD_LIBRARY_PATH"] = f"{self.lib_dir}:{os.environ.get('LD_LIBRARY_PATH', '')}"
        try:
            result = subprocess.run(
                argv,
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                check=False,
            )
        except OSError as exc:
            return str(exc)
        if result.returncode != 0:
            return f"exit status {result.returncode}"
        return None

    def _mark_stopped(self, tunnel: Tunnel, clear_connected: bool = False) -> None:
        with tunnel.lock:
            tunnel.status = TunnelStatus.DISCONNECTED
            if clear_connected:
                tunnel.connected_at = None

    def _run_tunnel(self, tunnel: Tunnel) -> None:
        with tunnel.lock:
            if tunnel.status in (TunnelStatus.CONNECTED, TunnelStatus.CONNECTING):
                return
            tunnel.status = TunnelStatus.CONNECTING
            tunnel.stop_event = threading.Event()

        self._state.add_log("warn", f"[{tunnel.tun_dev}] connecting — {tunnel.config_file}")

        while True:
            with tunnel.lock:
                proto = tunnel.cfg.protocol
                compression = tunnel.cfg.compression
                udp_fails = tunnel.perf.udp_fails

            settings = self._state.settings
            if (
                settings.auto_restart.auto_switch_tcp
                and proto == "udp"
                and udp_fails >= UDP_FAILS_BEFORE_TCP
            ):
                proto = "tcp"
                self._state.add_log(
                    "warn", f"[{tunnel.tun_dev}] UDP failed {udp_fails}x — switching to TCP"
                )

            args = netprobe.build_openvpn_args(
                self.data_dir, tunnel.tun_dev, self._config_path(tunnel.config_file),
                proto, compression,
            )
            error = self._launch([self.ovpn_bin, *args])

            if error is not None:
                if tunnel.stop_event.is_set():
                    self._mark_stopped(tunnel)
                    self._state.add_log("warn", f"[{tunnel.tun_dev}] stopped")
                    return
                with tunnel.lock:
                    if proto == "udp":
                        tunnel.perf.udp_fails += 1
                self._state.add_log(
                    "err", f"[{tunnel.tun_dev}] openvpn exited: {error} — retry in 5s"
                )
            elif self._serve_connection(tunnel, proto, settings):
                return

            if not tunnel.auto_reconnect:
                self._mark_stopped(tunnel)
                return
            if tunnel.stop_event.wait(RETRY_SECONDS):
                self._mark_stopped(tunnel)
                return

    def _serve_connection(self, tunnel: Tunnel, proto: str, settings) -> bool:
        """Handle a launched daemon until it dies; True when stopped by the user."""
        with tunnel.lock:
            tunnel.status = TunnelStatus.CONNECTED
            tunnel.connected_at = _now()
            if proto == "tcp":
                tunnel.perf.udp_fails = 0
            mtu = tunnel.perf.mtu
            bandwidth = tunnel.cfg.bandwidth_mb

        self._state.add_log(
            "ok", f"[{tunnel.tun_dev}] connected — {tunnel.name} ({proto.upper()})"
        )
        self._save_tunnels()

        if settings.mtu.enabled and settings.mtu.detect_on_connect:
            threading.Thread(target=self.detect_mtu, args=(tunnel.index,), daemon=True).start()
        if settings.dns.enabled and settings.dns.check_on_connect:
            threading.Thread(target=self.check_external_ip, daemon=True).start()
        if settings.mtu.apply and mtu > 0:
            _run_quiet(["ip", "link", "set", tunnel.tun_dev, "mtu", str(mtu)])
        if bandwidth > 0:
            _run_quiet([
                "tc", "qdisc", "add", "dev", tunnel.tun_dev, "root", "tbf",
                "rate", f"{bandwidth * 8}mbit", "burst", "32kbit", "latency", "400ms",
            ])

        self._monitor_pid(tunnel)

        if tunnel.stop_event.is_set():
            self._mark_stopped(tunnel, clear_connected=True)
            self._state.add_log("warn", f"[{tunnel.tun_dev}] stopped")
            self._save_tunnels()
            return True

        with tunnel.lock:
            tunnel.status = TunnelStatus.RECONNECTING
            tunnel.connected_at = None
        self._state.add_log("err", f"[{tunnel.tun_dev}] connection lost — reconnecting in 5s")
        self._save_tunnels()
        return False

    def _monitor_pid(self, tunnel: Tunnel) -> None:
        """Block while the daemon named in the pid file is alive."""
        pid_path = self._pid_path(tunnel.tun_dev)
        while not tunnel.stop_event.wait(PID_POLL_SECONDS):
            try:
                pid = pid_path.read_text().strip()
            except OSError:
                return
            if not pid or not Path("/proc", pid).exists():
                return

    # ── Traffic ──────────────────────────────────────────────────────────────

    def update_traffic(self) -> None:
        """Refresh byte counters and rates, and record daily traffic."""
        with self._lock:
            tunnels = list(self._tunnels)
        for tunnel in tunnels:
            rx, tx = netprobe.read_net_stat(tunnel.tun_dev, self.net_dev_path)
            now = time.monotonic()
            delta = None
            with tunnel.lock:
                if tunnel.prev_time is not None:
                    elapsed = now - tunnel.prev_time
                    if elapsed > 0:
                        delta_rx = _counter_delta(rx, tunnel.prev_rx)
                        delta_tx = _counter_delta(tx, tunnel.prev_tx)
                        tunnel.stats.rx_rate = delta_rx / elapsed
                        tunnel.stats.tx_rate = delta_tx / elapsed
                        if delta_rx or delta_tx:
                            delta = (delta_rx, delta_tx)
                tunnel.stats.rx_bytes = rx
                tunnel.stats.tx_bytes = tx
                tunnel.prev_rx = rx
                tunnel.prev_tx = tx
                tunnel.prev_time = now
                tun_dev = tunnel.tun_dev
            if delta is not None:
                self._state.add_traffic(tun_dev, *delta)

    # ── Views ────────────────────────────────────────────────────────────────

    @staticmethod
    def _info(tunnel: Tunnel) -> TunnelInfo:
        with tunnel.lock:
            return TunnelInfo(
                index=tunnel.index,
                name=tunnel.name,
                config_file=tunnel.config_file,
                tun_dev=tunnel.tun_dev,
                status=tunnel.status,
                auto_reconnect=tunnel.auto_reconnect,
                connected_at=tunnel.connected_at,
                cfg=copy.deepcopy(tunnel.cfg),
                perf=copy.deepcopy(tunnel.perf),
                rx_rate=tunnel.stats.rx_rate,
                tx_rate=tunnel.stats.tx_rate,
                rx_bytes=tunnel.stats.rx_bytes,
                tx_bytes=tunnel.stats.tx_bytes,
            )

    @property
    def tunnels(self) -> list[TunnelInfo]:
        with self._lock:
            return [self._info(t) for t in self._tunnels]

    def count_active(self) -> int:
        return sum(1 for info in self.tunnels if info.status == TunnelStatus.CONNECTED)

    # ── Health checks ────────────────────────────────────────────────────────

    def detect_mtu(self, index: int) -> None:
        """Find the largest working MTU for a tunnel, store it and maybe apply it."""
        try:
            tunnel = self._get(index)
        except VPNError:
            return
        settings = self._state.settings
        if not settings.mtu.enabled:
            return
        target = settings.mtu.ping_target or DEFAULT_MTU_TARGET

        self._state.add_log("info", f"[{tunnel.tun_dev}] detecting MTU…")
        mtu = netprobe.binary_search_mtu(tunnel.tun_dev, target)
        if mtu <= 0:
            self._state.add_log("warn", f"[{tunnel.tun_dev}] MTU detection failed")
            return

        with tunnel.lock:
            tunnel.perf.mtu = mtu
        self._save_tunnels()
        self._state.add_log("ok", f"[{tunnel.tun_dev}] MTU detected: {mtu}")

        if settings.mtu.apply:
            _run_quiet(["ip", "link", "set", tunnel.tun_dev, "mtu", str(mtu)])
            self._state.add_log("ok", f"[{tunnel.tun_dev}] MTU {mtu} applied")

    def run_speed_test(self, index: int) -> float:
        """Measure download speed in Mbps through a connected tunnel."""
        tunnel = self._get(index)
        with tunnel.lock:
            status = tunnel.status
            tun_dev = tunnel.tun_dev
        if status != TunnelStatus.CONNECTED:
            raise VPNError("tunnel not connected")

        settings = self._state.settings
        url = settings.speed_test.url or DEFAULT_SPEED_URL
        size_mb = settings.speed_test.size_mb
        if size_mb <= 0:
            size_mb = DEFAULT_SPEED_SIZE_MB

        self._state.add_log("info", f"[{tun_dev}] speed test started…")
        try:
            speed = netprobe.measure_download_speed(url, size_mb, tun_dev)
        except (subprocess.CalledProcessError, OSError) as exc:
            self._state.add_log("warn", f"[{tun_dev}] speed test failed: {exc}")
            raise VPNError(f"speed test failed: {exc}") from exc

        with tunnel.lock:
            tunnel.perf.speed_mbps = speed
            tunnel.perf.speed_at = _now()
        self._save_tunnels()
        self._state.add_log("ok", f"[{tun_dev}] speed test: {speed:.1f} Mbps")
        return speed

    def run_ping_check(self, index: int) -> None:
        """Measure ping time and packet loss of a connected tunnel."""
        try:
            tunnel = self._get(index)
        except VPNError:
            return
        with tunnel.lock:
            status = tunnel.status
            tun_dev = tunnel.tun_dev
        if status != TunnelStatus.CONNECTED:
            return

        count = self._state.settings.ping.count
        if count <= 0:
            count = DEFAULT_PING_COUNT
        ping_ms, loss = netprobe.parse_ping_output(netprobe.run_ping(tun_dev, count))

        with tunnel.lock:
            tunnel.perf.ping_ms = ping_ms
            tunnel.perf.packet_loss = loss
        self._save_tunnels()

    def check_external_ip(self) -> None:
        """Look up the external address and record it."""
        url = self._state.settings.dns.ip_check_url or DEFAULT_IP_CHECK_URL
        ip = netprobe.fetch_external_ip(url)
        if ip:
            self._state.external_ip = ip
            self._state.add_log("info", f"[system] external IP: {ip}")