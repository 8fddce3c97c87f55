"""Firewall kill switch that drops traffic outside the VPN tunnels."""

import subprocess
from typing import Callable, Optional

from .state import AppState

KS_CHAIN = "VPNCTL_KS"
HOOKS = ("INPUT", "OUTPUT", "FORWARD")
LAN_NETWORKS = ("192.168.0.0/16", "10.0.0.0/8", "172.16.0.0/12")

Runner = Callable[[list], subprocess.CompletedProcess]


class KillSwitchError(RuntimeError):
    """Raised when a firewall rule cannot be installed."""


def build_rules(allow_lan: bool) -> list[list[str]]:
    """The iptables arguments that fill the kill-switch chain."""
    rules = [
        ["-A", KS_CHAIN, "-o", "lo", "-j", "ACCEPT"],
        ["-A", KS_CHAIN, "-i", "lo", "-j", "ACCEPT"],
        ["-A", KS_CHAIN, "-o", "tun+", "-j", "ACCEPT"],
        ["-A", KS_CHAIN, "-i", "tun+", "-j", "ACCEPT"],
        ["-A", KS_CHAIN, "-m", "state", "--state", "ESTABLISHED,RELATED", "-j", "ACCEPT"],
    ]
    if allow_lan:
        for direction in ("-d", "-s"):
            rules.extend(
                ["-A", KS_CHAIN, direction, network, "-j", "ACCEPT"] for network in LAN_NETWORKS
            )
    rules.append(["-A", KS_CHAIN, "-j", "DROP"])
    return rules


def _run_command(argv: list) -> subprocess.CompletedProcess:
    try:
        return subprocess.run(
            argv, stdout=subprocess.PIPE, stderr=subprocess.STDOUT, check=False
        )
    except OSError as exc:
        return subprocess.CompletedProcess(argv, 127, stdout=str(exc).encode())


def _output_text(result: subprocess.CompletedProcess) -> str:
    output = result.stdout or b""
    if isinstance(output, bytes):
        output = output.decode(errors="replace")
    return output.strip()


class KillSwitch:
    """Installs and removes the iptables chain that blocks non-tunnel traffic."""

    def __init__(self, state: AppState, run: Optional[Runner] = None):
        self._state = state
        self._run = run or _run_command
        self._armed = False

    @property
    def armed(self) -> bool:
        return self._armed

    def _iptables(self, *args: str) -> subprocess.CompletedProcess:
        return self._run(["iptables", *args])

    def arm(self, allow_lan: bool) -> None:
        """Build the chain and hook it into INPUT, OUTPUT and FORWARD."""
        self._iptables("-N", KS_CHAIN)
        self._iptables("-F", KS_CHAIN)

        for rule in build_rules(allow_lan):
            result = self._iptables(*rule)
            if result.returncode != 0:
                raise KillSwitchError(
                    f"iptables [{' '.join(rule)}]: exit status {result.returncode}"
                    f" — {_output_text(result)}"
                )

        for hook in HOOKS:
            # Drop an existing reference first so the jump is never duplicated.
            self._iptables("-D", hook, "-j", KS_CHAIN)
            self._iptables("-I", hook, "-j", KS_CHAIN)

        self._armed = True
        self._state.add_log("warn", "[killswitch] ARMED — traffic blocked if all tunnels down")

    def disarm(self) -> None:
        """Unhook and delete the chain."""
        for hook in HOOKS:
            self._iptables("-D", hook, "-j", KS_CHAIN)
        self._iptables("-F", KS_CHAIN)
        self._iptables("-X", KS_CHAIN)

        self._armed = False
        self._state.add_log("ok", "[killswitch] disarmed")