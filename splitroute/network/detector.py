"""VPN connectivity detection for macOS.

Decides whether a VPN tunnel currently owns traffic by reading the IPv4
routing table. Detection is a small ordered set of independent signal
evaluators combined with logical OR; each evaluator is a pure function
of the parsed ``netstat -rn`` rows.
"""

import ipaddress
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

from ..exceptions import DetectionUncertain
from ..utils.logging import get_logger
from ..utils.process import CommandRunner
from .parsers import NetstatRoute, expand_destination, parse_netstat_routes, parse_route_get

logger = get_logger("network.detector")

# Private blocks whose presence behind a tunnel marks a split-horizon VPN
CORPORATE_PRIVATE_BLOCKS = [
    ipaddress.IPv4Network("10.0.0.0/8"),
    ipaddress.IPv4Network("172.16.0.0/12"),
]


@dataclass(frozen=True)
class InterfaceClassifier:
    """Tells tunnel interfaces from physical ones by name."""
    primary_interface: str = "en0"
    tunnel_prefixes: tuple[str, ...] = ("utun", "ppp", "ipsec", "tun")
    physical_prefixes: tuple[str, ...] = ("en",)

    def is_tunnel(self, interface: str) -> bool:
        return interface.startswith(self.tunnel_prefixes)

    def is_physical(self, interface: str) -> bool:
        return interface == self.primary_interface or interface.startswith(self.physical_prefixes)


SignalEvaluator = Callable[[list[NetstatRoute], InterfaceClassifier], bool]


def default_route_is_tunnel(routes: list[NetstatRoute], classifier: InterfaceClassifier) -> bool:
    """The first IPv4 default route egresses through a tunnel.

    A physical first default route means the VPN is not primary. Default
    routes through other interfaces (bridges, loopback) are skipped.
    """
    for route in routes:
        if not (route.is_default and route.is_ipv4):
            continue
        if classifier.is_tunnel(route.interface):
            return True
        if classifier.is_physical(route.interface):
            return False
    return False


def private_route_via_tunnel(routes: list[NetstatRoute], classifier: InterfaceClassifier) -> bool:
    """A route into 10/8 or 172.16/12 egresses through a tunnel.

    Covers corporate VPNs that never take over the default route.
    """
    for route in routes:
        if route.is_default or not route.is_ipv4 or not classifier.is_tunnel(route.interface):
            continue
        network = expand_destination(route.destination)
        if network is None:
            continue
        if any(network.subnet_of(block) for block in CORPORATE_PRIVATE_BLOCKS):
            return True
    return False


SIGNAL_EVALUATORS: tuple[tuple[str, SignalEvaluator], ...] = (
    ("default_route_is_tunnel", default_route_is_tunnel),
    ("private_route_via_tunnel", private_route_via_tunnel),
)


@dataclass(frozen=True)
class ConnectivityObservation:
    """Result of one poll of the routing table."""
    connected: bool
    observed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    signals: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "connected": self.connected,
            "observed_at": self.observed_at.isoformat(),
            "signals": dict(self.signals),
        }


class ConnectivityDetector:
    """Reads the live routing table and classifies VPN connectivity.

    Holds no cached verdict: every call reflects the table as it is now.
    """

    def __init__(
        self,
        runner: CommandRunner,
        classifier: InterfaceClassifier | None = None,
        evaluators: tuple[tuple[str, SignalEvaluator], ...] = SIGNAL_EVALUATORS,
    ):
        self._runner = runner
        self._classifier = classifier or InterfaceClassifier()
        self._evaluators = evaluators

    @property
    def classifier(self) -> InterfaceClassifier:
        return self._classifier

    def read_routes(self) -> list[NetstatRoute]:
        """Parse ``netstat -rn``; raises DetectionUncertain if it cannot run."""
        result = self._runner.run(["netstat", "-rn"])
        if not result.ok:
            raise DetectionUncertain(f"netstat failed: {result.output.strip()}")
        return parse_netstat_routes(result.stdout)

    def observe(self) -> ConnectivityObservation:
        """Evaluate every signal against a fresh routing table read."""
        routes = self.read_routes()
        signals = {name: evaluator(routes, self._classifier) for name, evaluator in self._evaluators}
        observation = ConnectivityObservation(connected=any(signals.values()), signals=signals)

        logger.debug("connectivity_observed", connected=observation.connected, **signals)
        return observation

    def is_connected(self) -> bool:
        return self.observe().connected

    def _default_route_fields(self) -> dict[str, str]:
        result = self._runner.run(["route", "-n", "get", "default"])
        if not result.ok:
            return {}
        return parse_route_get(result.stdout)

    def tunnel_interface(self) -> Optional[str]:
        """Name of the tunnel interface holding the default route, if any."""
        iface = self._default_route_fields().get("interface", "")
        return iface if iface and self._classifier.is_tunnel(iface) else None

    def tunnel_gateway(self) -> Optional[str]:
        """Gateway of the default route when a tunnel holds it."""
        fields = self._default_route_fields()
        if not self._classifier.is_tunnel(fields.get("interface", "")):
            return None
        return fields.get("gateway")
