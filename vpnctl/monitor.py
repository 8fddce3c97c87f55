"""Background monitoring: traffic, ping, speed tests, auto-restart and webhooks."""

import json
import logging
import threading
import urllib.error
import urllib.request
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from .state import AppState, AutoRestartCfg, TunnelStatus
from .vpn import TunnelInfo, VPNError

log = logging.getLogger(__name__)

TRAFFIC_SECONDS = 2
AUTO_RESTART_SECONDS = 60
IDLE_SECONDS = 60
DEFAULT_PING_INTERVAL = 30
SPEED_RESULT_MAX_AGE = timedelta(minutes=10)
WEBHOOK_TIMEOUT = 10


def _now() -> datetime:
    return datetime.now().astimezone()


def _safely(fn: Callable, *args) -> None:
    try:
        fn(*args)
    except Exception as exc:  # background work must not kill its loop
        log.warning("%s failed: %s", getattr(fn, "__name__", fn), exc)


def _spawn(fn: Callable, *args) -> threading.Thread:
    thread = threading.Thread(target=_safely, args=(fn, *args), daemon=True)
    thread.start()
    return thread


@dataclass
class WebhookPayload:
    event: str
    tun_dev: str
    tun_name: str
    message: str
    timestamp: str

    def to_dict(self) -> dict:
        return {
            "event": self.event,
            "tun_dev": self.tun_dev,
            "tun_name": self.tun_name,
            "message": self.message,
            "timestamp": self.timestamp,
        }


class Monitor:
    """Runs the periodic health checks for all tunnels."""

    def __init__(self, vpn, state: AppState):
        self._vpn = vpn
        self._state = state
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

    def start(self) -> None:
        """Start the traffic, ping, auto-restart and speed-test loops."""
        if self._threads:
            return
        self._stop.clear()
        loops = (
            ("ping", self._ping_loop),
            ("auto-restart", self._auto_restart_loop),
            ("traffic", self._traffic_loop),
            ("speed-test", self._speed_interval_loop),
        )
        for name, target in loops:
            thread = threading.Thread(target=target, name=f"monitor-{name}", daemon=True)
            thread.start()
            self._threads.append(thread)

    def stop(self) -> None:
        self._stop.set()
        for thread in self._threads:
            thread.join()
        self._threads = []

    def _connected(self) -> list[TunnelInfo]:
        return [t for t in self._vpn.tunnels if t.status == TunnelStatus.CONNECTED]

    def _traffic_loop(self) -> None:
        while not self._stop.wait(TRAFFIC_SECONDS):
            _safely(self._vpn.update_traffic)

    def _ping_loop(self) -> None:
        while True:
            settings = self._state.settings
            interval = settings.ping.interval
            if interval <= 0:
                interval = DEFAULT_PING_INTERVAL
            if self._stop.wait(interval):
                return
            if not settings.ping.enabled:
                continue
            for tunnel in self._connected():
                _spawn(self._vpn.run_ping_check, tunnel.index)

    def _auto_restart_loop(self) -> None:
        while not self._stop.wait(AUTO_RESTART_SECONDS):
            _safely(self.check_auto_restart)

    def _speed_interval_loop(self) -> None:
        while True:
            settings = self._state.settings
            interval = settings.speed_test.interval
            if not settings.speed_test.enabled or interval <= 0:
                if self._stop.wait(IDLE_SECONDS):
                    return
                continue
            if self._stop.wait(interval * 60):
                return
            self.run_speed_test_all()

    def check_auto_restart(self, now: Optional[datetime] = None) -> list[int]:
        """Restart connected tunnels whose recent speed is below the threshold.

        Returns the indexes of the tunnels that were restarted.
        """
        now = now or _now()
        cfg = self._state.settings.auto_restart
        if not cfg.enabled:
            return []
        restarted = []
        for tunnel in self._vpn.tunnels:
            if tunnel.status != TunnelStatus.CONNECTED:
                continue
            speed_at = tunnel.perf.speed_at
            if speed_at is None or now - speed_at > SPEED_RESULT_MAX_AGE:
                continue
            speed = tunnel.perf.speed_mbps
            if 0 < speed < cfg.threshold_mbps and self.handle_slow_tunnel(tunnel, cfg):
                restarted.append(tunnel.index)
        return restarted

    def handle_slow_tunnel(self, tunnel: TunnelInfo, cfg: AutoRestartCfg) -> bool:
        """Restart a slow tunnel unless its hourly limit is used up."""
        if not self._state.record_restart(tunnel.index, _now().hour, cfg.max_per_hour):
            return False

        speed = tunnel.perf.speed_mbps
        self._state.add_log(
            "warn",
            f"[{tunnel.tun_dev}] speed {speed:.1f} Mbps < {cfg.threshold_mbps} Mbps threshold"
            f" — auto-restarting ({tunnel.perf.restart_count}/{cfg.max_per_hour})",
        )
        try:
            self._vpn.restart_tunnel(tunnel.index)
        except VPNError as exc:
            log.warning("restart %s: %s", tunnel.tun_dev, exc)
        self.send_webhook(
            "slow_tunnel",
            tunnel.tun_dev,
            tunnel.name,
            f"{tunnel.tun_dev} speed {speed:.1f} Mbps is below threshold"
            f" {cfg.threshold_mbps} Mbps — restarted",
        )
        return True

    def run_speed_test_all(self) -> list[threading.Thread]:
        """Start a speed test on every connected tunnel."""
        return [_spawn(self._vpn.run_speed_test, t.index) for t in self._connected()]

    def run_mtu_all(self) -> list[threading.Thread]:
        """Start MTU detection on every connected tunnel."""
        return [_spawn(self._vpn.detect_mtu, t.index) for t in self._connected()]

    def send_webhook(
        self, event: str, tun_dev: str, tun_name: str, message: str
    ) -> Optional[threading.Thread]:
        """POST an event to the configured webhook in the background."""
        webhook = self._state.settings.webhook
        if not webhook.enabled or not webhook.url:
            return None
        payload = WebhookPayload(
            event=event,
            tun_dev=tun_dev,
            tun_name=tun_name,
            message=message,
            timestamp=datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
        )
        body = json.dumps(payload.to_dict(), ensure_ascii=False).encode("utf-8")
        thread = threading.Thread(target=self._post, args=(webhook.url, body), daemon=True)
        thread.start()
        return thread

    def _post(self, url: str, body: bytes) -> None:
        request = urllib.request.Request(
            url, data=body, headers={"Content-Type": "application/json"}, method="POST"
        )
        try:
            with urllib.request.urlopen(request, timeout=WEBHOOK_TIMEOUT) as response:
                status = response.status
        except urllib.error.HTTPError as exc:
            status = exc.code
            exc.close()
        except (OSError, ValueError) as exc:
            self._state.add_log("warn", f"[webhook] POST failed: {exc}")
            return
        self._state.add_log("info", f"[webhook] POST {status}")

    def test_webhook(self) -> Optional[threading.Thread]:
        return self.send_webhook("test", "—", "—", "vpnctl webhook test")