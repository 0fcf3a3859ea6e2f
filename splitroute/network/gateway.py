"""Physical (non-tunnel) gateway resolution.

Tries an ordered chain of independent strategies and returns the first
usable address. Results are cached for a few minutes so the reconciliation
loop does not shell out on every poll.
"""

import math
import sys
from typing import Callable, Optional

import psutil

from ..exceptions import GatewayDetectionError
from ..utils.cache import TTLCache
from ..utils.logging import get_logger
from ..utils.process import CommandRunner
from .detector import InterfaceClassifier
from .parsers import (
    is_ipv4,
    is_private_ipv4,
    parse_netstat_routes,
    parse_networksetup_router,
    parse_route_get,
)

logger = get_logger("network.gateway")

_CACHE_KEY = "gateway"

# Queried in this order by the route-get strategy
PRIVATE_RANGES = ["192.168.0.0/16", "10.0.0.0/8", "172.16.0.0/12"]

# Address prefixes handed out by common corporate VPN concentrators
# (GlobalProtect, AnyConnect); never accepted as the physical gateway
DEFAULT_VPN_GATEWAY_BLOCKLIST = ["10.10", "172.29.", "172.30.", "172.31."]

DEFAULT_COMMON_GATEWAYS = [
    "192.168.1.1",
    "192.168.0.1",
    "10.0.0.1",
    "192.168.2.1",
    "10.1.1.1",
    "172.16.0.1",
]


class GatewayResolver:
    """Resolves the gateway of the primary physical interface."""

    def __init__(
        self,
        runner: CommandRunner,
        classifier: InterfaceClassifier | None = None,
        fallback: str = "192.168.1.1",
        static_gateway: Optional[str] = None,
        blocklist: list[str] | None = None,
        common_gateways: list[str] | None = None,
        network_services: list[str] | None = None,
        probe_timeout_ms: int = 1000,
        cache_ttl: float = 300.0,
    ):
        self._runner = runner
        self._classifier = classifier or InterfaceClassifier()
        self._fallback = fallback
        self._static_gateway = static_gateway
        self._blocklist = blocklist if blocklist is not None else DEFAULT_VPN_GATEWAY_BLOCKLIST
        self._common_gateways = common_gateways if common_gateways is not None else DEFAULT_COMMON_GATEWAYS
        self._network_services = network_services or ["Wi-Fi", "Ethernet"]
        self._probe_timeout_ms = probe_timeout_ms
        self._cache = TTLCache(default_ttl=cache_ttl)

    @property
    def strategies(self) -> list[tuple[str, Callable[[], Optional[str]]]]:
        return [
            ("netstat_default", self._from_netstat_default),
            ("route_get", self._from_route_get),
            ("networksetup", self._from_networksetup),
            ("interface_address", self._from_interface_address),
            ("common_gateways", self._from_common_gateways),
        ]

    def resolve(self) -> str:
        """Return the physical gateway IP.

        Raises GatewayDetectionError (carrying the fallback address) when
        no strategy yields an acceptable candidate.
        """
        if self._static_gateway:
            return self._static_gateway
        return self._cache.get_or_compute(_CACHE_KEY, self._detect)

    def _detect(self) -> str:
        for name, strategy in self.strategies:
            candidate = strategy()
            if not candidate:
                continue
            if not self.is_acceptable(candidate):
                logger.info("gateway_candidate_rejected", strategy=name, gateway=candidate)
                continue

            logger.info("gateway_detected", strategy=name, gateway=candidate)
            return candidate

        logger.warning("gateway_detection_failed", fallback=self._fallback)
        raise GatewayDetectionError("could not detect gateway reliably", fallback=self._fallback)

    def invalidate(self) -> None:
        """Drop the cached gateway so the next resolve() re-detects."""
        self._cache.invalidate(_CACHE_KEY)

    def is_acceptable(self, candidate: str) -> bool:
        return is_ipv4(candidate) and not self.is_vpn_gateway(candidate)

    def is_vpn_gateway(self, gateway: str) -> bool:
        return any(gateway.startswith(prefix) for prefix in self._blocklist)

    def _ping_wait(self) -> str:
        # macOS ping takes -W in milliseconds, Linux in whole seconds
        if sys.platform == "darwin":
            return str(self._probe_timeout_ms)
        return str(max(1, math.ceil(self._probe_timeout_ms / 1000)))

    def probe(self, address: str) -> bool:
        """One-packet ping with a short timeout."""
        result = self._runner.run(
            ["ping", "-c", "1", "-W", self._ping_wait(), address],
            timeout=self._probe_timeout_ms / 1000 + 1,
        )
        return result.ok

    # -- strategies ---------------------------------------------------------

    def _from_netstat_default(self) -> Optional[str]:
        result = self._runner.run(["netstat", "-rn"])
        if not result.ok:
            return None
        for route in parse_netstat_routes(result.stdout):
            if (
                route.is_default
                and route.is_ipv4
                and route.interface == self._classifier.primary_interface
                and is_ipv4(route.gateway)
            ):
                return route.gateway
        return None

    def _from_route_get(self) -> Optional[str]:
        for network in PRIVATE_RANGES:
            result = self._runner.run(["route", "-n", "get", network])
            if not result.ok:
                continue
            fields = parse_route_get(result.stdout)
            if self._classifier.is_tunnel(fields.get("interface", "")):
                continue
            gateway = fields.get("gateway", "")
            if is_private_ipv4(gateway):
                return gateway
        return None

    def _from_networksetup(self) -> Optional[str]:
        for service in self._network_services:
            result = self._runner.run(["networksetup", "-getinfo", service])
            if not result.ok:
                continue
            router = parse_networksetup_router(result.stdout)
            if router:
                return router
        return None

    def _interface_ipv4(self) -> Optional[str]:
        addrs = psutil.net_if_addrs().get(self._classifier.primary_interface, [])
        for addr in addrs:
            if addr.family.name == "AF_INET":
                return addr.address
        return None

    def _from_interface_address(self) -> Optional[str]:
        """Guess x.y.z.1 / x.y.z.254 from the primary interface address."""
        own_ip = self._interface_ipv4()
        if not own_ip or not is_ipv4(own_ip):
            return None
        prefix = own_ip.rsplit(".", 1)[0]
        for last in ("1", "254"):
            candidate = f"{prefix}.{last}"
            if candidate != own_ip and self.probe(candidate):
                return candidate
        return None

    def _from_common_gateways(self) -> Optional[str]:
        for candidate in self._common_gateways:
            if self.probe(candidate):
                return candidate
        return None
