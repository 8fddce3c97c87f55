import stat

import pytest

from vpnctl.state import AppState, PersistedTunnel, TunnelCfg, TunnelStatus
from vpnctl.vpn import VPNError, VPNManager


@pytest.fixture
def state(tmp_path):
    (tmp_path / "configs").mkdir()
    app_state = AppState(tmp_path)
    settings = app_state.settings
    settings.mtu.enabled = False
    settings.dns.enabled = False
    app_state.settings = settings
    return app_state


@pytest.fixture
def manager(tmp_path, state):
    return VPNManager(tmp_path, tmp_path / "missing-openvpn", tmp_path / "lib", state)


def _messages(state):
    return [entry.message for entry in state.logs]


def test_add_config_rejects_other_extensions(manager):
    with pytest.raises(VPNError, match=".ovpn extension"):
        manager.add_config("server.conf", b"remote vpn.example.com")


def test_add_config_registers_tunnel(tmp_path, manager):
    info = manager.add_config("sub/alpha.ovpn", b"remote vpn.example.com")
    assert info.name == "alpha"
    assert info.config_file == "alpha.ovpn"
    assert info.tun_dev == "tun0"
    assert info.status == TunnelStatus.DISCONNECTED
    assert info.auto_reconnect is True
    assert info.cfg.protocol == "udp"
    assert info.cfg.compression == "none"
    path = tmp_path / "configs" / "alpha.ovpn"
    assert path.read_bytes() == b"remote vpn.example.com"
    assert stat.S_IMODE(path.stat().st_mode) == 0o600


def test_add_config_persists_and_numbers_devices(manager, state):
    manager.add_config("a.ovpn", b"a")
    second = manager.add_config("b.ovpn", b"b")
    assert second.tun_dev == "tun1"
    assert [t.config_file for t in state.snapshot().tunnels] == ["a.ovpn", "b.ovpn"]
    assert "[tun1] config uploaded: b.ovpn" in _messages(state)


def test_delete_config_renumbers(tmp_path, manager, state):
    for name in ("a", "b", "c"):
        manager.add_config(f"{name}.ovpn", name.encode())
    manager.delete_config(0)
    tunnels = manager.tunnels
    assert [t.name for t in tunnels] == ["b", "c"]
    assert [t.tun_dev for t in tunnels] == ["tun0", "tun1"]
    assert [t.index for t in tunnels] == [0, 1]
    assert not (tmp_path / "configs" / "a.ovpn").exists()
    assert [t.index for t in state.snapshot().tunnels] == [0, 1]
    assert "[tun0] config deleted" in _messages(state)


@pytest.mark.parametrize(
    "call",
    [
        lambda m: m.delete_config(3),
        lambda m: m.read_config(-1),
        lambda m: m.write_config(5, "x"),
        lambda m: m.start_tunnel(1),
        lambda m: m.stop_tunnel(1),
        lambda m: m.set_auto_reconnect(2, False),
        lambda m: m.update_tunnel_settings(9, TunnelCfg()),
        lambda m: m.run_speed_test(4),
    ],
)
def test_invalid_index(manager, call):
    manager.add_config("a.ovpn", b"a")
    with pytest.raises(VPNError, match="invalid index"):
        call(manager)


def test_config_round_trip(manager, state):
    manager.add_config("a.ovpn", b"old")
    manager.write_config(0, "client\nremote vpn.example.com 1194\n")
    assert manager.read_config(0) == "client\nremote vpn.example.com 1194\n"
    assert "[tun0] config edited and saved" in _messages(state)


def test_update_tunnel_settings(manager, state):
    manager.add_config("a.ovpn", b"a")
    cfg = TunnelCfg(protocol="tcp", compression="lz4-v2", bandwidth_mb=2, group="EU", note="n")
    manager.update_tunnel_settings(0, cfg)
    assert manager.tunnels[0].cfg == cfg
    assert state.persisted_tunnel(0).cfg == cfg
    assert "[tun0] protocol changed udp→tcp" in _messages(state)


def test_set_auto_reconnect_persists(manager, state):
    manager.add_config("a.ovpn", b"a")
    manager.set_auto_reconnect(0, False)
    assert manager.tunnels[0].auto_reconnect is False
    assert state.persisted_tunnel(0).auto_reconnect is False


def test_load_tunnels_skips_missing_configs(tmp_path, state):
    (tmp_path / "configs" / "a.ovpn").write_text("a")
    state.set_tunnels([
        PersistedTunnel(index=0, name="a", config_file="a.ovpn", auto_reconnect=True),
        PersistedTunnel(index=1, name="gone", config_file="gone.ovpn"),
    ])
    manager = VPNManager(tmp_path, "openvpn", tmp_path / "lib", state)
    manager.load_tunnels()
    tunnels = manager.tunnels
    assert [t.name for t in tunnels] == ["a"]
    assert tunnels[0].tun_dev == "tun0"
    assert tunnels[0].cfg.protocol == "udp"
    assert tunnels[0].status == TunnelStatus.DISCONNECTED


def _net_dev(rx, tx):
    header = "Inter-|   Receive\n face |bytes packets\n"
    return header + f"  tun0: {rx} 1 0 0 0 0 0 0 {tx} 1 0 0 0 0 0 0\n"


def test_update_traffic_records_deltas(tmp_path, manager, state):
    import time

    manager.add_config("a.ovpn", b"a")
    net_dev = tmp_path / "net_dev"
    manager.net_dev_path = net_dev
    net_dev.write_text(_net_dev(100, 200))
    manager.update_traffic()
    first = manager.tunnels[0]
    assert (first.rx_bytes, first.tx_bytes) == (100, 200)
    assert first.rx_rate == 0
    assert state.traffic_history == []

    time.sleep(0.01)
    net_dev.write_text(_net_dev(300, 500))
    manager.update_traffic()
    second = manager.tunnels[0]
    assert (second.rx_bytes, second.tx_bytes) == (300, 500)
    assert second.rx_rate > 0 and second.tx_rate > 0
    (day,) = state.traffic_history
    assert day.tun_dev == "tun0"
    assert (day.rx_bytes, day.tx_bytes) == (300 - 100, 500 - 200)


def test_failed_launch_counts_udp_failure(manager, state):
    manager.add_config("a.ovpn", b"a")
    manager.set_auto_reconnect(0, False)
    thread = manager.start_tunnel(0)
    thread.join(10)
    assert not thread.is_alive()
    info = manager.tunnels[0]
    assert info.status == TunnelStatus.DISCONNECTED
    assert info.perf.udp_fails == 1
    assert any("[tun0] openvpn exited:" in m for m in _messages(state))


def test_successful_launch_then_lost(tmp_path, state):
    script = tmp_path / "fake-openvpn"
    script.write_text(
        "#!/bin/sh\n"
        'echo "$@" > "$(dirname "$0")/args.txt"\n'
        "printf '%s\\n' \"$LD_LIBRARY_PATH\" > \"$(dirname \"$0\")/env.txt\"\n"
        "exit 0\n"
    )
    script.chmod(0o755)
    manager = VPNManager(tmp_path, script, tmp_path / "lib", state)
    manager.add_config("a.ovpn", b"a")
    manager.set_auto_reconnect(0, False)
    thread = manager.start_tunnel(0)
    thread.join(10)
    assert not thread.is_alive()

    args = (tmp_path / "args.txt").read_text()
    assert "--dev tun0" in args
    assert "--proto udp" in args
    assert "--daemon" in args
    assert (tmp_path / "env.txt").read_text().startswith(f"{tmp_path / 'lib'}:")

    messages = _messages(state)
    assert "[tun0] connected — a (UDP)" in messages
    assert "[tun0] connection lost — reconnecting in 5s" in messages
    info = manager.tunnels[0]
    assert info.status == TunnelStatus.DISCONNECTED
    assert info.connected_at is None


def test_stop_tunnel_removes_pid_file(tmp_path, manager, state):
    manager.add_config("a.ovpn", b"a")
    pid_file = tmp_path / "tun0.pid"
    pid_file.write_text("")
    manager.stop_tunnel(0)
    assert not pid_file.exists()
    assert manager.tunnels[0].status == TunnelStatus.DISCONNECTED
    assert "[tun0] stopped by user" in _messages(state)


def test_count_active_without_connections(manager):
    manager.add_config("a.ovpn", b"a")
    manager.add_config("b.ovpn", b"b")
    assert manager.count_active() == 0


def test_speed_test_requires_connection(manager):
    manager.add_config("a.ovpn", b"a")
    with pytest.raises(VPNError, match="not connected"):
        manager.run_speed_test(0)


def test_tunnel_info_to_dict(manager):
    info = manager.add_config("a.ovpn", b"a")
    data = info.to_dict()
    assert "connected_at" not in data
    assert data["status"] == "disconnected"
    assert data["tun_dev"] == "tun0"
    assert data["cfg"]["protocol"] == "udp"
    assert data["rx_bytes"] == 0