"""Tests for the command output parsers."""

import ipaddress

import pytest

from splitroute.network.parsers import (
    canonical_destination,
    expand_destination,
    is_private_ipv4,
    parse_netstat_routes,
    parse_networksetup_router,
    parse_route_get,
)


class TestCanonicalDestination:
    @pytest.mark.parametrize(
        "network,expected",
        [
            ("172.217.0.0/16", "172.217"),
            ("74.125.0.0/16", "74.125"),
            ("91.108.4.0/22", "91.108.4/22"),
            ("185.76.151.0/24", "185.76.151/24"),
            ("10.0.0.0/8", "10/8"),
            ("17.0.0.0/8", "17/8"),
            ("142.250.0.0/15", "142.250/15"),
            ("34.64.0.0/10", "34.64/10"),
            ("203.0.113.7/32", "203.0.113.7/32"),
        ],
    )
    def test_netstat_shorthand(self, network, expected):
        """Trailing zero octets are dropped the way netstat prints them."""
        assert canonical_destination(network) == expected

    def test_invalid_network_raises(self):
        with pytest.raises(ValueError):
            canonical_destination("not-a-network")
        with pytest.raises(ValueError):
            canonical_destination("10.0.0.1")


class TestExpandDestination:
    def test_classful_shorthand(self):
        assert expand_destination("10") == ipaddress.IPv4Network("10.0.0.0/8")
        assert expand_destination("172.217") == ipaddress.IPv4Network("172.217.0.0/16")
        assert expand_destination("192.168.1") == ipaddress.IPv4Network("192.168.1.0/24")
        assert expand_destination("10.8.0.1") == ipaddress.IPv4Network("10.8.0.1/32")

    def test_explicit_prefix(self):
        assert expand_destination("91.108.4/22") == ipaddress.IPv4Network("91.108.4.0/22")
        assert expand_destination("10/8") == ipaddress.IPv4Network("10.0.0.0/8")

    def test_default_and_garbage(self):
        assert expand_destination("default") == ipaddress.IPv4Network("0.0.0.0/0")
        assert expand_destination("link#6") is None
        assert expand_destination("fe80::%lo0/64") is None

    def test_inverse_of_canonical(self):
        for network in ("172.217.0.0/16", "91.108.4.0/22", "185.76.151.0/24", "10.0.0.0/8"):
            assert expand_destination(canonical_destination(network)) == ipaddress.IPv4Network(network)


class TestParseNetstat:
    def test_parses_ipv4_and_ipv6_sections(self, netstat_disconnected):
        routes = parse_netstat_routes(netstat_disconnected)
        ipv4 = [r for r in routes if r.is_ipv4]
        ipv6 = [r for r in routes if not r.is_ipv4]

        assert ipv4[0].destination == "default"
        assert ipv4[0].gateway == "192.168.1.1"
        assert ipv4[0].flags == "UGScg"
        assert ipv4[0].interface == "en0"
        assert all(r.family == "inet6" for r in ipv6)
        assert any(r.interface == "utun0" and r.is_default for r in ipv6)

    def test_legacy_columns_use_netif_header(self):
        """Older releases print Refs/Use before Netif."""
        output = """Routing tables

Internet:
Destination        Gateway            Flags        Refs      Use   Netif Expire
default            192.168.1.1        UGSc           37        0     en0
10                 10.8.0.1           UGSc            1        0   utun2
"""
        routes = parse_netstat_routes(output)
        assert [r.interface for r in routes] == ["en0", "utun2"]

    def test_empty_output(self):
        assert parse_netstat_routes("") == []


class TestParseRouteGet:
    def test_key_values(self, route_get_default_tunnel):
        fields = parse_route_get(route_get_default_tunnel)
        assert fields["gateway"] == "10.101.0.1"
        assert fields["interface"] == "utun4"
        assert fields["destination"] == "default"
        assert "route to" not in fields


class TestParseNetworksetup:
    def test_router_line(self, networksetup_wifi):
        assert parse_networksetup_router(networksetup_wifi) == "192.168.1.1"

    def test_no_router(self):
        assert parse_networksetup_router("DHCP Configuration\nRouter: none\n") is None
        assert parse_networksetup_router("You are not connected to Wi-Fi.") is None


def test_is_private_ipv4():
    assert is_private_ipv4("10.1.2.3")
    assert is_private_ipv4("172.20.0.1")
    assert is_private_ipv4("192.168.1.1")
    assert not is_private_ipv4("8.8.8.8")
    assert not is_private_ipv4("link#6")
