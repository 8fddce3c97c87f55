import subprocess
import threading
from http.server import BaseHTTPRequestHandler, HTTPServer
from unittest import mock

import pytest

from vpnctl.netprobe import (
    binary_search_mtu,
    build_openvpn_args,
    fetch_external_ip,
    measure_download_speed,
    parse_ping_output,
    read_net_stat,
    run_ping,
    speed_test_url,
)

NET_DEV = """Inter-|   Receive                                                |  Transmit
 face |bytes    packets errs drop fifo frame compressed multicast|bytes    packets errs drop fifo colls carrier compressed
    lo:    1000      10    0    0    0     0          0         0     1000      10    0    0    0     0       0          0
  tun0:    4321      40    0    0    0     0          0         0     8765      50    0    0    0     0       0          0
"""


def test_read_net_stat_finds_interface(tmp_path):
    path = tmp_path / "dev"
    path.write_text(NET_DEV)
    assert read_net_stat("tun0", path) == (4321, 8765)


def test_read_net_stat_missing_interface(tmp_path):
    path = tmp_path / "dev"
    path.write_text(NET_DEV)
    assert read_net_stat("tun9", path) == (0, 0)


def test_read_net_stat_missing_file(tmp_path):
    assert read_net_stat("tun0", tmp_path / "absent") == (0, 0)


def test_parse_ping_output_sample():
    output = (
        "PING 8.8.8.8 (8.8.8.8) 56(84) bytes of data.\n"
        "\n"
        "4 packets transmitted, 4 received, 0% packet loss\n"
        "rtt min/avg/max/mdev = 12.3/14.5/16.7/1.2 ms\n"
    )
    assert parse_ping_output(output) == (14.5, 0.0)


def test_parse_ping_output_loss_with_time():
    output = "4 packets transmitted, 3 received, 25% packet loss, time 3004ms\n"
    assert parse_ping_output(output) == (0.0, 25.0)


def test_parse_ping_output_empty():
    assert parse_ping_output("") == (0.0, 0.0)


def test_binary_search_mtu_finds_limit():
    seen = []

    def probe(argv):
        seen.append(argv)
        payload = int(argv[argv.index("-s") + 1])
        return payload + 28 <= 1400

    assert binary_search_mtu("tun0", "1.1.1.1", probe) == 1400
    assert all(argv[0] == "ping" and argv[-1] == "1.1.1.1" for argv in seen)
    assert all(argv[argv.index("-I") + 1] == "tun0" for argv in seen)


def test_binary_search_mtu_all_fail():
    assert binary_search_mtu("tun0", "1.1.1.1", lambda argv: False) == 0


def test_binary_search_mtu_all_pass_without_interface():
    seen = []

    def probe(argv):
        seen.append(argv)
        return True

    assert binary_search_mtu("", "1.1.1.1", probe) == 1500
    assert all("-I" not in argv for argv in seen)


def test_build_openvpn_args_plain(tmp_path):
    args = build_openvpn_args(tmp_path, "tun2", tmp_path / "a.ovpn", "udp", "none")
    assert args[args.index("--config") + 1] == str(tmp_path / "a.ovpn")
    assert args[args.index("--dev") + 1] == "tun2"
    assert args[args.index("--proto") + 1] == "udp"
    assert args[args.index("--writepid") + 1] == str(tmp_path / "tun2.pid")
    assert args[args.index("--log") + 1] == str(tmp_path / "tun2.log")
    assert "--daemon" in args
    assert "--compress" not in args


@pytest.mark.parametrize("compression", ["lz4-v2", "stub"])
def test_build_openvpn_args_compression(tmp_path, compression):
    args = build_openvpn_args(tmp_path, "tun0", "c.ovpn", "tcp", compression)
    assert args[-2:] == ["--compress", compression]


def test_speed_test_url():
    assert speed_test_url("https://speed.example.com/__down", 5) == (
        "https://speed.example.com/__down?bytes=5242880"
    )


def _completed(argv, stdout):
    return subprocess.CompletedProcess(argv, 0, stdout=stdout, stderr=b"")


def test_measure_download_speed_with_interface():
    with mock.patch("vpnctl.netprobe.subprocess.run") as run:
        run.return_value = _completed([], b"125000")
        speed = measure_download_speed("https://speed.example.com/__down", 1, "tun0")
    assert speed == pytest.approx(1.0)
    argv = run.call_args_list[0].args[0]
    assert argv[argv.index("--interface") + 1] == "tun0"


def test_measure_download_speed_falls_back():
    failure = subprocess.CalledProcessError(7, ["curl"])
    with mock.patch("vpnctl.netprobe.subprocess.run") as run:
        run.side_effect = [failure, _completed([], b"0")]
        speed = measure_download_speed("https://speed.example.com/__down", 1, "tun0")
    assert speed == 0.0
    assert run.call_count == 2
    assert "--interface" not in run.call_args_list[1].args[0]


def test_measure_download_speed_raises_when_both_fail():
    failure = subprocess.CalledProcessError(7, ["curl"])
    with mock.patch("vpnctl.netprobe.subprocess.run") as run:
        run.side_effect = [failure, failure]
        with pytest.raises(subprocess.CalledProcessError):
            measure_download_speed("https://speed.example.com/__down", 1, "tun0")


def test_run_ping_falls_back_without_interface():
    first = subprocess.CompletedProcess([], 1, stdout=b"bind failed")
    second = subprocess.CompletedProcess([], 0, stdout=b"ok output")
    with mock.patch("vpnctl.netprobe.subprocess.run") as run:
        run.side_effect = [first, second]
        output = run_ping("tun3", 2)
    assert output == "ok output"
    assert "-I" in run.call_args_list[0].args[0]
    assert "-I" not in run.call_args_list[1].args[0]


@pytest.fixture
def ip_server():
    class Handler(BaseHTTPRequestHandler):
        def do_GET(self):
            body = b" 203.0.113.5\n"
            self.send_response(200)
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)

        def log_message(self, *args):
            pass

    server = HTTPServer(("127.0.0.1", 0), Handler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield f"http://127.0.0.1:{server.server_address[1]}/"
    server.shutdown()
    server.server_close()


def test_fetch_external_ip(ip_server):
    assert fetch_external_ip(ip_server) == "203.0.113.5"


def test_fetch_external_ip_unreachable():
    assert fetch_external_ip("http://127.0.0.1:1/") == ""