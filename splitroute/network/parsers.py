"""Parsers for the text output of macOS network utilities.

Each function takes captured output and returns plain values; none of
them run a command, so they are tested directly against fixture text.
"""

import ipaddress
from dataclasses import dataclass
from typing import Optional

from ..config import parse_ipv4_cidr

PRIVATE_NETWORKS = [
    ipaddress.IPv4Network("10.0.0.0/8"),
    ipaddress.IPv4Network("172.16.0.0/12"),
    ipaddress.IPv4Network("192.168.0.0/16"),
]


@dataclass(frozen=True)
class NetstatRoute:
    """A single row of ``netstat -rn``."""
    destination: str
    gateway: str
    flags: str
    interface: str
    family: str = "inet"  # inet / inet6

    @property
    def is_default(self) -> bool:
        return self.destination == "default"

    @property
    def is_ipv4(self) -> bool:
        return self.family == "inet" and "fe80::" not in self.gateway and ":" not in self.destination


def parse_netstat_routes(output: str) -> list[NetstatRoute]:
    """Parse ``netstat -rn`` output into rows.

    Tracks the ``Internet:``/``Internet6:`` sections and reads the
    interface from the ``Netif`` column of the header (older releases
    print ``Refs``/``Use`` columns before it).
    """
    routes = []
    family = "inet"
    netif_col = 3

    for line in output.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("Routing tables"):
            continue
        if stripped == "Internet:":
            family = "inet"
            continue
        if stripped == "Internet6:":
            family = "inet6"
            continue

        parts = stripped.split()
        if parts[0] == "Destination":
            netif_col = parts.index("Netif") if "Netif" in parts else 3
            continue
        if len(parts) <= netif_col:
            continue

        row_family = family
        if "fe80::" in stripped or ":" in parts[0]:
            row_family = "inet6"

        routes.append(NetstatRoute(
            destination=parts[0],
            gateway=parts[1],
            flags=parts[2],
            interface=parts[netif_col],
            family=row_family,
        ))

    return routes


def parse_route_get(output: str) -> dict[str, str]:
    """Parse ``route -n get <dest>`` key/value output.

    Returns e.g. ``{"destination": "default", "gateway": "192.168.1.1",
    "interface": "en0", ...}``.
    """
    fields = {}
    for line in output.splitlines():
        key, sep, value = line.partition(":")
        if not sep:
            continue
        key = key.strip()
        value = value.strip()
        if key and value and " " not in key:
            fields.setdefault(key, value)
    return fields


def parse_networksetup_router(output: str) -> Optional[str]:
    """Extract the ``Router:`` address from ``networksetup -getinfo``."""
    for line in output.splitlines():
        if line.startswith("Router:"):
            parts = line.split()
            if len(parts) >= 2 and is_ipv4(parts[1]):
                return parts[1]
    return None


def is_ipv4(value: str) -> bool:
    try:
        ipaddress.IPv4Address(value)
    except ValueError:
        return False
    return True


def is_private_ipv4(value: str) -> bool:
    try:
        addr = ipaddress.IPv4Address(value)
    except ValueError:
        return False
    return any(addr in net for net in PRIVATE_NETWORKS)


def canonical_destination(network: str) -> str:
    """Render a CIDR the way ``netstat -rn`` prints it.

    netstat drops trailing zero octets:

        172.217.0.0/16  -> 172.217
        10.0.0.0/8      -> 10/8
        91.108.4.0/22   -> 91.108.4/22
        185.76.151.0/24 -> 185.76.151/24
    """
    iface = parse_ipv4_cidr(network)
    a, b, c, d = iface.ip.packed
    prefix = iface.network.prefixlen

    if prefix == 16 and c == 0 and d == 0:
        return f"{a}.{b}"
    if b == 0 and c == 0 and d == 0:
        return f"{a}/{prefix}"
    if c == 0 and d == 0:
        return f"{a}.{b}/{prefix}"
    if d == 0:
        return f"{a}.{b}.{c}/{prefix}"
    return f"{a}.{b}.{c}.{d}/{prefix}"


def expand_destination(destination: str) -> Optional[ipaddress.IPv4Network]:
    """Inverse of :func:`canonical_destination` for a netstat row.

    Without an explicit prefix the length follows the number of octets
    shown (``10`` -> /8, ``172.217`` -> /16, ``10.8.0.1`` -> /32).
    Returns None for rows that are not IPv4 networks (link#, IPv6, ...).
    """
    if destination == "default":
        return ipaddress.IPv4Network("0.0.0.0/0")

    addr, sep, prefix = destination.partition("/")
    octets = addr.split(".")
    if not 1 <= len(octets) <= 4 or not all(o.isdigit() for o in octets):
        return None
    if not sep:
        prefix = str(8 * len(octets))
    octets += ["0"] * (4 - len(octets))
    try:
        return ipaddress.IPv4Network(f"{'.'.join(octets)}/{prefix}", strict=False)
    except ValueError:
        return None
