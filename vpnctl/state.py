"""Persistent application state: settings, tunnels, cron jobs, traffic and logs."""

import copy
import dataclasses
import functools
import json
import logging
import re
import threading
import types
import typing
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional

log = logging.getLogger(__name__)

ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)
MAX_LOGS = 300
MAX_TRAFFIC_ENTRIES = 30 * 30
DEFAULT_GROUPS = ("EU", "US", "Asia")

_OMIT_EMPTY = {"omitempty": True}
_TIME_RE = re.compile(
    r"(\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2})(\.\d+)?(Z|z|[+-]\d{2}:\d{2})"
)


def _now() -> datetime:
    return datetime.now().astimezone()


def format_time(value: datetime) -> str:
    """Format a datetime as an RFC 3339 timestamp."""
    if value.tzinfo is None:
        value = value.astimezone()
    text = value.isoformat()
    if value.utcoffset() == timedelta(0) and text.endswith("+00:00"):
        text = text[: -len("+00:00")] + "Z"
    return text


def parse_time(text: str) -> datetime:
    """Parse an RFC 3339 timestamp, keeping at most microsecond precision."""
    match = _TIME_RE.fullmatch(text.strip())
    if not match:
        raise ValueError(f"invalid timestamp: {text!r}")
    base, fraction, zone = match.groups()
    fraction = (fraction or "")[:7]
    if fraction:
        fraction = fraction.ljust(7, "0")
    if zone in ("Z", "z"):
        zone = "+00:00"
    return datetime.fromisoformat(base + fraction + zone)


class TunnelStatus(str, Enum):
    CONNECTED = "connected"
    CONNECTING = "connecting"
    DISCONNECTED = "disconnected"
    RECONNECTING = "reconnecting"


class _Model:
    """Mixin giving dataclasses JSON decoding and encoding."""

    @classmethod
    def from_dict(cls, data):
        """Build an instance from decoded JSON, starting from zero values."""
        return _merge(cls(), data)

    def to_dict(self) -> dict:
        return to_json(self)


@dataclass
class TunnelCfg(_Model):
    protocol: str = ""
    compression: str = ""
    bandwidth_mb: int = 0
    group: str = ""
    note: str = ""

    @classmethod
    def from_dict(cls, data):
        """Build a tunnel configuration from decoded JSON."""
        return _merge(cls(), data)


@dataclass
class TunnelPerf(_Model):
    speed_mbps: float = 0.0
    speed_at: Optional[datetime] = field(default=None, metadata=_OMIT_EMPTY)
    ping_ms: float = 0.0
    packet_loss: float = 0.0
    mtu: int = 0
    external_ip: str = ""
    restart_hour: int = 0
    restart_count: int = 0
    udp_fails: int = 0


@dataclass
class PersistedTunnel(_Model):
    index: int = 0
    name: str = ""
    config_file: str = ""
    auto_reconnect: bool = False
    connected_at: Optional[datetime] = field(default=None, metadata=_OMIT_EMPTY)
    cfg: TunnelCfg = field(default_factory=TunnelCfg)
    perf: TunnelPerf = field(default_factory=TunnelPerf)


@dataclass
class SpeedTestCfg(_Model):
    enabled: bool = False
    url: str = ""
    size_mb: int = 0
    interval: int = 0


@dataclass
class AutoRestartCfg(_Model):
    enabled: bool = False
    threshold_mbps: int = 0
    max_per_hour: int = 0
    auto_switch_tcp: bool = False


@dataclass
class MTUCfg(_Model):
    enabled: bool = False
    ping_target: str = ""
    detect_on_connect: bool = False
    apply: bool = False


@dataclass
class PingCfg(_Model):
    enabled: bool = False
    interval: int = 0
    count: int = 0


@dataclass
class DNSCfg(_Model):
    enabled: bool = False
    ip_check_url: str = ""
    check_on_connect: bool = False


@dataclass
class KillSwitchCfg(_Model):
    enabled: bool = False
    allow_lan: bool = False


@dataclass
class WebhookCfg(_Model):
    enabled: bool = False
    url: str = ""
    alert_after: int = 0


@dataclass
class TunnelDefaults(_Model):
    protocol: str = ""
    compression: str = ""
    bandwidth_mb: int = 0


@dataclass
class Settings(_Model):
    speed_test: SpeedTestCfg = field(default_factory=SpeedTestCfg)
    auto_restart: AutoRestartCfg = field(default_factory=AutoRestartCfg)
    mtu: MTUCfg = field(default_factory=MTUCfg)
    ping: PingCfg = field(default_factory=PingCfg)
    dns: DNSCfg = field(default_factory=DNSCfg)
    kill_switch: KillSwitchCfg = field(default_factory=KillSwitchCfg)
    webhook: WebhookCfg = field(default_factory=WebhookCfg)
    defaults: TunnelDefaults = field(default_factory=TunnelDefaults)

    @classmethod
    def from_dict(cls, data):
        """Build settings from decoded JSON, starting from zero values."""
        return _merge(cls(), data)


def default_settings() -> Settings:
    """Settings used when nothing has been configured yet."""
    return Settings(
        speed_test=SpeedTestCfg(
            enabled=True, url="https://speed.cloudflare.com/__down", size_mb=5
        ),
        auto_restart=AutoRestartCfg(
            enabled=True, threshold_mbps=10, max_per_hour=3, auto_switch_tcp=True
        ),
        mtu=MTUCfg(enabled=True, ping_target="8.8.8.8", detect_on_connect=True, apply=True),
        ping=PingCfg(enabled=True, interval=30, count=4),
        dns=DNSCfg(enabled=True, ip_check_url="https://api.ipify.org", check_on_connect=True),
        kill_switch=KillSwitchCfg(enabled=False, allow_lan=True),
        webhook=WebhookCfg(enabled=False, alert_after=5),
        defaults=TunnelDefaults(protocol="udp", compression="none"),
    )


@dataclass
class TrafficDay(_Model):
    date: str = ""
    tun_dev: str = ""
    rx_bytes: int = 0
    tx_bytes: int = 0


@dataclass
class CronJob(_Model):
    id: int = 0
    expression: str = ""
    target: str = ""
    action: str = ""
    enabled: bool = False
    next_run: datetime = ZERO_TIME
    last_run: Optional[datetime] = field(default=None, metadata=_OMIT_EMPTY)

    @classmethod
    def from_dict(cls, data):
        """Build a cron job from decoded JSON."""
        return _merge(cls(), data)


@dataclass
class PersistedCron(_Model):
    jobs: list[CronJob] = field(default_factory=list)
    next_id: int = 0


@dataclass
class LogEntry(_Model):
    time: datetime = ZERO_TIME
    level: str = ""
    message: str = ""


@dataclass
class StateFile(_Model):
    started_at: datetime = ZERO_TIME
    tunnels: list[PersistedTunnel] = field(default_factory=list)
    settings: Settings = field(default_factory=Settings)
    cron: PersistedCron = field(default_factory=PersistedCron)
    traffic_history: list[TrafficDay] = field(default_factory=list)
    external_ip: str = ""
    logs: list[LogEntry] = field(default_factory=list)
    groups: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data):
        """Build a whole state file from decoded JSON."""
        return _merge(cls(), data)


# ── JSON encoding and decoding ────────────────────────────────────────────────


def to_json(obj: Any) -> Any:
    """Convert models, enums and datetimes into JSON-ready Python values."""
    if isinstance(obj, Enum):
        return obj.value
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        out = {}
        for f in dataclasses.fields(obj):
            value = getattr(obj, f.name)
            if value is None and f.metadata.get("omitempty"):
                continue
            out[f.name] = to_json(value)
        return out
    if isinstance(obj, datetime):
        return format_time(obj)
    if isinstance(obj, (list, tuple)):
        return [to_json(item) for item in obj]
    if isinstance(obj, dict):
        return {str(key): to_json(value) for key, value in obj.items()}
    return obj


@functools.lru_cache(maxsize=None)
def _hints(cls: type) -> dict:
    return {f.name: f.type for f in dataclasses.fields(cls)}


def _zero(hint: Any) -> Any:
    if dataclasses.is_dataclass(hint):
        return hint()
    return {str: "", int: 0, float: 0.0, bool: False, datetime: ZERO_TIME}.get(hint)


def _merge(obj: Any, data: Any) -> Any:
    if not isinstance(data, dict):
        raise ValueError(f"expected an object for {type(obj).__name__}")
    hints = _hints(type(obj))
    changes = {
        f.name: _decode(hints[f.name], data[f.name], getattr(obj, f.name))
        for f in dataclasses.fields(obj)
        if f.name in data
    }
    return dataclasses.replace(obj, **changes)


def _decode(hint: Any, value: Any, current: Any) -> Any:
    origin = typing.get_origin(hint)
    if origin in (typing.Union, types.UnionType):
        if value is None:
            return None
        inner = next(arg for arg in typing.get_args(hint) if arg is not type(None))
        return _decode(inner, value, current)
    if origin is list:
        if value is None:
            return []
        if not isinstance(value, list):
            raise ValueError(f"expected an array, got {value!r}")
        (item,) = typing.get_args(hint)
        return [_decode(item, element, _zero(item)) for element in value]
    if value is None:
        return current
    if dataclasses.is_dataclass(hint):
        return _merge(current if current is not None else hint(), value)
    if hint is datetime:
        if not isinstance(value, str):
            raise ValueError(f"expected a timestamp, got {value!r}")
        return parse_time(value)
    if isinstance(hint, type) and issubclass(hint, Enum):
        return hint(value)
    if hint is bool:
        if not isinstance(value, bool):
            raise ValueError(f"expected a boolean, got {value!r}")
        return value
    if hint in (int, float):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError(f"expected a number, got {value!r}")
        if hint is int:
            if isinstance(value, float) and not value.is_integer():
                raise ValueError(f"expected an integer, got {value!r}")
            return int(value)
        return float(value)
    if hint is str:
        if not isinstance(value, str):
            raise ValueError(f"expected a string, got {value!r}")
        return value
    raise TypeError(f"unsupported field type {hint!r}")


# ── AppState — central store ──────────────────────────────────────────────────


class AppState:
    """Thread-safe store for everything persisted in state.json."""

    def __init__(self, data_dir):
        self.path = Path(data_dir) / "state.json"
        self._lock = threading.RLock()
        self._write_lock = threading.Lock()
        self._sf = StateFile(
            started_at=_now(),
            settings=default_settings(),
            groups=list(DEFAULT_GROUPS),
        )

    def load(self) -> None:
        """Merge state.json into the current state; problems are logged."""
        try:
            raw = self.path.read_bytes()
        except FileNotFoundError:
            return
        except OSError as exc:
            log.warning("state load: %s", exc)
            return
        with self._lock:
            try:
                data = json.loads(raw)
                merged = self._sf if data is None else _merge(copy.deepcopy(self._sf), data)
            except (ValueError, TypeError) as exc:
                log.warning("state unmarshal: %s", exc)
                return
            if merged.started_at == ZERO_TIME:
                merged.started_at = _now()
            defaults = default_settings()
            current = merged.settings
            if not current.speed_test.url:
                current.speed_test.url = defaults.speed_test.url
            if not current.mtu.ping_target:
                current.mtu.ping_target = defaults.mtu.ping_target
            if not current.dns.ip_check_url:
                current.dns.ip_check_url = defaults.dns.ip_check_url
            if not current.defaults.protocol:
                current.defaults.protocol = defaults.defaults.protocol
            self._sf = merged

    def save(self) -> None:
        """Write the state to state.json; write errors are logged."""
        with self._lock:
            text = json.dumps(to_json(self._sf), indent=2, ensure_ascii=False)
        with self._write_lock:
            try:
                self.path.write_text(text, encoding="utf-8")
            except OSError as exc:
                log.warning("state write: %s", exc)

    def snapshot(self) -> StateFile:
        with self._lock:
            return copy.deepcopy(self._sf)

    @property
    def settings(self) -> Settings:
        with self._lock:
            return copy.deepcopy(self._sf.settings)

    @settings.setter
    def settings(self, value: Settings) -> None:
        with self._lock:
            self._sf.settings = copy.deepcopy(value)
        self.save()

    @property
    def started_at(self) -> datetime:
        with self._lock:
            return self._sf.started_at

    @property
    def external_ip(self) -> str:
        with self._lock:
            return self._sf.external_ip

    @external_ip.setter
    def external_ip(self, value: str) -> None:
        with self._lock:
            self._sf.external_ip = value
        self.save()

    @property
    def groups(self) -> list[str]:
        with self._lock:
            return list(self._sf.groups)

    @groups.setter
    def groups(self, value) -> None:
        with self._lock:
            self._sf.groups = list(value)
        self.save()

    def set_tunnels(self, tunnels) -> None:
        with self._lock:
            self._sf.tunnels = copy.deepcopy(list(tunnels))
        self.save()

    def set_cron(self, cron: PersistedCron) -> None:
        with self._lock:
            self._sf.cron = copy.deepcopy(cron)
        self.save()

    def add_traffic(self, tun_dev: str, rx: int, tx: int) -> None:
        """Add traffic to today's entry for a tunnel device."""
        today = _now().strftime("%Y-%m-%d")
        with self._lock:
            history = self._sf.traffic_history
            for day in history:
                if day.date == today and day.tun_dev == tun_dev:
                    day.rx_bytes += rx
                    day.tx_bytes += tx
                    return
            history.append(TrafficDay(date=today, tun_dev=tun_dev, rx_bytes=rx, tx_bytes=tx))
            if len(history) > MAX_TRAFFIC_ENTRIES:
                del history[:-MAX_TRAFFIC_ENTRIES]

    @property
    def traffic_history(self) -> list[TrafficDay]:
        with self._lock:
            return copy.deepcopy(self._sf.traffic_history)

    def add_log(self, level: str, message: str) -> None:
        """Prepend a log entry, keeping the newest entries only."""
        with self._lock:
            self._sf.logs.insert(0, LogEntry(time=_now(), level=level, message=message))
            del self._sf.logs[MAX_LOGS:]

    @property
    def logs(self) -> list[LogEntry]:
        with self._lock:
            return copy.deepcopy(self._sf.logs)

    def clear_logs(self) -> None:
        with self._lock:
            self._sf.logs = []
        self.save()

    def update_tunnel_perf(self, index: int, fn: Callable[[TunnelPerf], None]) -> None:
        """Apply fn to the performance data of the tunnel with this index."""
        with self._lock:
            tunnel = self._find_tunnel(index)
            if tunnel is not None:
                fn(tunnel.perf)
        self.save()

    def update_tunnel_cfg(self, index: int, fn: Callable[[TunnelCfg], None]) -> None:
        """Apply fn to the configuration of the tunnel with this index."""
        with self._lock:
            tunnel = self._find_tunnel(index)
            if tunnel is not None:
                fn(tunnel.cfg)
        self.save()

    def persisted_tunnel(self, index: int) -> Optional[PersistedTunnel]:
        """A copy of the persisted tunnel with this index, or None."""
        with self._lock:
            tunnel = self._find_tunnel(index)
            return copy.deepcopy(tunnel) if tunnel is not None else None

    def record_restart(self, index: int, hour: int, max_per_hour: int) -> bool:
        """Count an automatic restart; False when the hourly limit is reached."""
        allowed = False
        with self._lock:
            tunnel = self._find_tunnel(index)
            if tunnel is not None:
                perf = tunnel.perf
                if perf.restart_hour != hour:
                    perf.restart_hour = hour
                    perf.restart_count = 0
                if max_per_hour == 0 or perf.restart_count < max_per_hour:
                    perf.restart_count += 1
                    allowed = True
        if allowed:
            self.save()
        return allowed

    def _find_tunnel(self, index: int) -> Optional[PersistedTunnel]:
        return next((t for t in self._sf.tunnels if t.index == index), None)