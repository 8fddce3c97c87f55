import subprocess

import pytest

from vpnctl.killswitch import KS_CHAIN, KillSwitch, KillSwitchError, build_rules
from vpnctl.state import AppState


class FakeRunner:
    def __init__(self, fail_when=None, code=1):
        self.calls = []
        self.fail_when = fail_when
        self.code = code

    def __call__(self, argv):
        self.calls.append(list(argv))
        if self.fail_when is not None and self.fail_when(argv):
            return subprocess.CompletedProcess(argv, self.code, stdout=b"boom")
        return subprocess.CompletedProcess(argv, 0, stdout=b"")


@pytest.fixture
def state(tmp_path):
    return AppState(tmp_path)


def test_build_rules_without_lan():
    rules = build_rules(False)
    assert rules[0] == ["-A", KS_CHAIN, "-o", "lo", "-j", "ACCEPT"]
    assert rules[-1] == ["-A", KS_CHAIN, "-j", "DROP"]
    assert ["-A", KS_CHAIN, "-d", "10.0.0.0/8", "-j", "ACCEPT"] not in rules


def test_build_rules_with_lan():
    rules = build_rules(True)
    for network in ("192.168.0.0/16", "10.0.0.0/8", "172.16.0.0/12"):
        assert ["-A", KS_CHAIN, "-d", network, "-j", "ACCEPT"] in rules
        assert ["-A", KS_CHAIN, "-s", network, "-j", "ACCEPT"] in rules
    assert rules[-1] == ["-A", KS_CHAIN, "-j", "DROP"]
    assert build_rules(False)[:-1] == rules[: len(build_rules(False)) - 1]


def test_arm_runs_commands_and_logs(state):
    runner = FakeRunner()
    ks = KillSwitch(state, run=runner)
    ks.arm(True)
    assert ks.armed is True
    assert runner.calls[0] == ["iptables", "-N", KS_CHAIN]
    assert runner.calls[1] == ["iptables", "-F", KS_CHAIN]
    rule_calls = [c[1:] for c in runner.calls[2 : 2 + len(build_rules(True))]]
    assert rule_calls == build_rules(True)
    assert ["iptables", "-I", "FORWARD", "-j", KS_CHAIN] == runner.calls[-1]
    assert ["iptables", "-D", "INPUT", "-j", KS_CHAIN] in runner.calls
    assert state.logs[0].level == "warn"
    assert "ARMED" in state.logs[0].message


def test_arm_failure_raises_and_stays_disarmed(state):
    runner = FakeRunner(fail_when=lambda argv: argv[-1] == "DROP")
    ks = KillSwitch(state, run=runner)
    with pytest.raises(KillSwitchError, match="boom"):
        ks.arm(False)
    assert ks.armed is False
    assert not any(c[1] == "-I" for c in runner.calls)


def test_arm_ignores_chain_creation_failure(state):
    runner = FakeRunner(fail_when=lambda argv: argv[1] in ("-N", "-D"))
    ks = KillSwitch(state, run=runner)
    ks.arm(False)
    assert ks.armed is True


def test_disarm(state):
    runner = FakeRunner()
    ks = KillSwitch(state, run=runner)
    ks.arm(False)
    runner.calls.clear()
    ks.disarm()
    assert ks.armed is False
    assert runner.calls == [
        ["iptables", "-D", "INPUT", "-j", KS_CHAIN],
        ["iptables", "-D", "OUTPUT", "-j", KS_CHAIN],
        ["iptables", "-D", "FORWARD", "-j", KS_CHAIN],
        ["iptables", "-F", KS_CHAIN],
        ["iptables", "-X", KS_CHAIN],
    ]
    assert state.logs[0].message == "[killswitch] disarmed"
    assert state.logs[0].level == "ok"