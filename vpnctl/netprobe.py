"""Network probes: interface counters, ping, MTU search, speed tests and IP lookup."""

import re
import subprocess
import urllib.error
import urllib.request
from pathlib import Path
from typing import Callable, Optional

NET_DEV_PATH = "/proc/net/dev"
PING_TARGET = "8.8.8.8"
MTU_LOW = 576
MTU_HIGH = 1500
IP_ICMP_HEADERS = 28
IP_LOOKUP_LIMIT = 64

Probe = Callable[[list], bool]

_UINT_RE = re.compile(r"\+?\d+")


def _parse_uint(text: str) -> int:
    return int(text) if _UINT_RE.fullmatch(text) else 0


def _parse_float(text: str) -> float:
    if "_" in text:
        return 0.0
    try:
        return float(text)
    except ValueError:
        return 0.0


def read_net_stat(iface: str, path=NET_DEV_PATH) -> tuple[int, int]:
    """Received and transmitted byte counters of an interface, or zeros."""
    try:
        text = Path(path).read_text(encoding="utf-8", errors="replace")
    except OSError:
        return 0, 0
    prefix = iface + ":"
    for raw in text.splitlines():
        line = raw.strip()
        if not line.startswith(prefix):
            continue
        fields = line[len(prefix):].split()
        if len(fields) >= 9:
            return _parse_uint(fields[0]), _parse_uint(fields[8])
        return 0, 0
    return 0, 0


def parse_ping_output(output: str) -> tuple[float, float]:
    """Average round trip in milliseconds and packet loss percentage."""
    ping_ms = 0.0
    loss = 0.0
    for line in output.split("\n"):
        if "packet loss" in line:
            parts = line.split()
            for i, part in enumerate(parts):
                if part in ("loss,", "loss") and i > 0:
                    loss = _parse_float(parts[i - 1].removesuffix("%"))
        if "rtt min/avg" in line:
            sides = line.split("=")
            if len(sides) == 2:
                values = sides[1].strip().split("/")
                if len(values) >= 2:
                    ping_ms = _parse_float(values[1])
    return ping_ms, loss


def _ping_probe(argv: list) -> bool:
    try:
        result = subprocess.run(
            argv, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL, check=False
        )
    except OSError:
        return False
    return result.returncode == 0


def binary_search_mtu(iface: str, target: str, probe: Optional[Probe] = None) -> int:
    """Largest MTU whose don't-fragment ping gets through, or 0."""
    probe = probe or _ping_probe
    low, high = MTU_LOW, MTU_HIGH
    best = 0
    while low <= high:
        mid = (low + high) // 2
        payload = max(mid - IP_ICMP_HEADERS, 1)
        argv = ["ping", "-c", "1", "-W", "2", "-M", "do", "-s", str(payload)]
        if iface:
            argv += ["-I", iface]
        argv.append(target)
        if probe(argv):
            best = mid
            low = mid + 1
        else:
            high = mid - 1
    return best


def build_openvpn_args(data_dir, tun_dev: str, config_path, proto: str, compression: str) -> list[str]:
    """Command-line arguments that start openvpn as a daemon for one tunnel."""
    base = Path(data_dir)
    args = [
        "--config", str(config_path),
        "--dev", tun_dev,
        "--dev-type", "tun",
        "--proto", proto,
        "--daemon",
        "--log", str(base / f"{tun_dev}.log"),
        "--writepid", str(base / f"{tun_dev}.pid"),
        "--script-security", "2",
    ]
    if compression in ("lz4-v2", "stub"):
        args += ["--compress", compression]
    return args


def speed_test_url(url: str, size_mb: int) -> str:
    """Download URL asking for size_mb megabytes."""
    return f"{url}?bytes={size_mb * 1024 * 1024}"


def _curl(argv: list) -> str:
    result = subprocess.run(argv, capture_output=True, check=True)
    return result.stdout.decode(errors="replace")


def measure_download_speed(url: str, size_mb: int, interface: Optional[str] = None) -> float:
    """Download speed in Mbps, measured with curl.

    Bound to the interface first, then unbound; raises when both attempts fail.
    """
    target = speed_test_url(url, size_mb)
    output = None
    if interface:
        try:
            output = _curl([
                "curl", "--interface", interface, "-s", "-o", "/dev/null",
                "--max-time", "60", "-w", "%{speed_download}", target,
            ])
        except (subprocess.CalledProcessError, OSError):
            output = None
    if output is None:
        output = _curl([
            "curl", "-s", "-o", "/dev/null", "--max-time", "30",
            "-w", "%{speed_download}", target,
        ])
    bytes_per_second = _parse_float(output.strip())
    return bytes_per_second * 8 / 1e6


def _ping(argv: list) -> tuple[bool, str]:
    try:
        result = subprocess.run(
            argv, stdout=subprocess.PIPE, stderr=subprocess.STDOUT, check=False
        )
    except OSError:
        return False, ""
    return result.returncode == 0, result.stdout.decode(errors="replace")


def run_ping(tun_dev: str, count: int) -> str:
    """Output of a quiet ping through the device, falling back to any route."""
    ok, output = _ping(
        ["ping", "-I", tun_dev, "-c", str(count), "-W", "3", "-q", PING_TARGET]
    )
    if ok:
        return output
    _, output = _ping(["ping", "-c", str(count), "-W", "3", "-q", PING_TARGET])
    return output


def fetch_external_ip(url: str) -> str:
    """The address reported by an IP lookup service, or an empty string."""
    try:
        with urllib.request.urlopen(url, timeout=10) as response:
            body = response.read(IP_LOOKUP_LIMIT)
    except urllib.error.HTTPError as exc:
        try:
            body = exc.read(IP_LOOKUP_LIMIT)
        except OSError:
            return ""
    except (OSError, ValueError):
        return ""
    return body.decode(errors="replace").strip()