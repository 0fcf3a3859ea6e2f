"""Shared test fixtures."""

from unittest.mock import MagicMock

import pytest

from splitroute.utils.process import CommandResult


class FakeRunner:
    """Scripted stand-in for CommandRunner.

    Responses are matched on the exact argument tuple first, then on the
    longest registered prefix; anything unmatched fails with rc=1.
    """

    def __init__(self):
        self.calls: list[tuple[str, ...]] = []
        self.sudo_calls: list[tuple[str, ...]] = []
        self._responses: dict[tuple[str, ...], list[CommandResult]] = {}

    def set(self, args, stdout: str = "", returncode: int = 0, stderr: str = "") -> None:
        """Always answer ``args`` (or any command starting with it) this way."""
        key = tuple(args)
        self._responses[key] = [CommandResult(key, returncode, stdout, stderr)]

    def queue(self, args, *results: tuple[int, str]) -> None:
        """Answer successive calls in order; the last answer repeats."""
        key = tuple(args)
        self._responses[key] = [CommandResult(key, rc, out if rc == 0 else "", out if rc else "") for rc, out in results]

    def run(self, args, timeout=None, sudo=False) -> CommandResult:
        key = tuple(args)
        self.calls.append(key)
        if sudo:
            self.sudo_calls.append(key)

        match = None
        for prefix in sorted(self._responses, key=len, reverse=True):
            if key[: len(prefix)] == prefix:
                match = prefix
                break
        if match is None:
            return CommandResult(key, 1, "", "unscripted command")

        answers = self._responses[match]
        result = answers.pop(0) if len(answers) > 1 else answers[0]
        return CommandResult(key, result.returncode, result.stdout, result.stderr)

    def count(self, *prefix: str) -> int:
        return sum(1 for call in self.calls if call[: len(prefix)] == prefix)


@pytest.fixture
def fake_runner():
    return FakeRunner()


def _make_family(name: str):
    """Create a mock socket address family with a proper .name attribute."""
    family = MagicMock()
    family.name = name
    return family


@pytest.fixture
def mock_en0_addrs():
    """psutil.net_if_addrs() data for a laptop on Wi-Fi."""
    return {
        "en0": [
            MagicMock(family=_make_family("AF_LINK"), address="a4:83:e7:12:34:56"),
            MagicMock(family=_make_family("AF_INET"), address="192.168.7.23"),
        ],
        "lo0": [
            MagicMock(family=_make_family("AF_INET"), address="127.0.0.1"),
        ],
    }


@pytest.fixture
def netstat_disconnected():
    """netstat -rn with no VPN (system utun0 only carries IPv6)."""
    return """Routing tables

Internet:
Destination        Gateway            Flags               Netif Expire
default            192.168.1.1        UGScg                 en0
127                127.0.0.1          UCS                   lo0
127.0.0.1          127.0.0.1          UH                    lo0
169.254            link#6             UCS                   en0      !
192.168.1          link#6             UCS                   en0      !
192.168.1.1/32     link#6             UCS                   en0      !

Internet6:
Destination                             Gateway                                 Flags               Netif Expire
default                                 fe80::%utun0                            UGcIg               utun0
::1                                     ::1                                     UHL                   lo0
fe80::%lo0/64                           fe80::1%lo0                             UcI                   lo0
"""


@pytest.fixture
def netstat_full_tunnel():
    """netstat -rn while a full-tunnel VPN owns the default route."""
    return """Routing tables

Internet:
Destination        Gateway            Flags               Netif Expire
default            10.101.0.1         UGScg               utun4
default            192.168.1.1        UGScIg                en0
10.101.0.1/32      link#22            UCS                 utun4
127                127.0.0.1          UCS                   lo0
192.168.1          link#6             UCS                   en0      !

Internet6:
Destination                             Gateway                                 Flags               Netif Expire
default                                 fe80::%utun0                            UGcIg               utun0
"""


@pytest.fixture
def netstat_split_horizon():
    """netstat -rn for a VPN that only routes corporate 10/8 through the tunnel."""
    return """Routing tables

Internet:
Destination        Gateway            Flags               Netif Expire
default            192.168.1.1        UGScg                 en0
10                 link#22            UCS                 utun4
10.101.0.1/32      link#22            UCS                 utun4
127                127.0.0.1          UCS                   lo0
192.168.1          link#6             UCS                   en0      !
"""


@pytest.fixture
def netstat_with_bypass_routes():
    """netstat -rn while connected, with bypass routes installed via en0."""
    return """Routing tables

Internet:
Destination        Gateway            Flags               Netif Expire
default            10.101.0.1         UGScg               utun4
default            192.168.1.1        UGScIg                en0
10/8               10.101.0.1         UGSc                utun4
91.108.4/22        192.168.1.1        UGSc                  en0
172.217            192.168.1.1        UGSc                  en0
185.76.151/24      192.168.1.1        UGSc                  en0
192.168.1          link#6             UCS                   en0      !
"""


@pytest.fixture
def route_get_default_tunnel():
    return """   route to: default
destination: default
       mask: default
    gateway: 10.101.0.1
  interface: utun4
      flags: <UP,GATEWAY,DONE,STATIC,PRCLONING>
 recvpipe  sendpipe  ssthresh  rtt,msec    rttvar  hopcount      mtu     expire
       0         0         0         0         0         0      1400         0
"""


@pytest.fixture
def route_get_private_en0():
    return """   route to: 192.168.0.0
destination: 192.168.0.0
       mask: 255.255.0.0
    gateway: 192.168.1.1
  interface: en0
      flags: <UP,GATEWAY,DONE,STATIC,PRCLONING>
"""


@pytest.fixture
def networksetup_wifi():
    return """DHCP Configuration
IP address: 192.168.1.23
Subnet mask: 255.255.255.0
Router: 192.168.1.1
Client ID:
IPv6: Automatic
IPv6 IP address: none
IPv6 Router: none
Wi-Fi ID: a4:83:e7:12:34:56
"""
