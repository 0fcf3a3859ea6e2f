"""splitroute configuration system using Pydantic Settings."""

from __future__ import annotations

import ipaddress
from pathlib import Path

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_BASE_DIR = Path.home() / ".vpn-route-manager"


def parse_ipv4_cidr(network: str) -> ipaddress.IPv4Interface:
    """Parse ``a.b.c.d/n`` into an interface (address keeps its host bits).

    Raises ValueError for anything that is not an IPv4 CIDR, including a
    bare address without a prefix length.
    """
    if not isinstance(network, str) or "/" not in network:
        raise ValueError(f"invalid network format {network!r}: missing prefix length")
    try:
        iface = ipaddress.ip_interface(network.strip())
    except ValueError as e:
        raise ValueError(f"invalid network format {network!r}: {e}") from e
    if not isinstance(iface, ipaddress.IPv4Interface):
        raise ValueError(f"invalid network format {network!r}: not IPv4")
    return iface


class ServiceDefinition(BaseModel):
    """A service whose networks bypass the VPN while it is connected."""

    name: str
    enabled: bool = False
    networks: list[str]
    priority: int = Field(default=0, ge=0, le=1000)
    domains: list[str] = []
    description: str = ""

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("service name cannot be empty")
        return v

    @field_validator("networks")
    @classmethod
    def validate_networks(cls, v: list[str]) -> list[str]:
        if not v:
            raise ValueError("service must have at least one network")
        seen: list[str] = []
        for network in v:
            parse_ipv4_cidr(network)
            network = network.strip()
            if network not in seen:
                seen.append(network)
        return seen


class SplitRouteConfig(BaseSettings):
    """Main configuration class. Loads from .env file and SPLITROUTE_* variables."""

    model_config = SettingsConfigDict(
        env_prefix="SPLITROUTE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Daemon
    debug: bool = False
    check_interval: int = Field(default=5, ge=1, le=300)  # seconds between polls
    shutdown_grace_period: float = 30.0
    log_dir: str = str(_BASE_DIR / "logs")
    state_dir: str = str(_BASE_DIR / "state")
    log_max_bytes: int = 10_000_000
    log_backup_count: int = 5

    # Gateway
    gateway: str = "auto"  # "auto" or a fixed IPv4 address
    fallback_gateway: str = "192.168.1.1"
    gateway_cache_ttl: float = 300.0
    probe_timeout_ms: int = 1000
    vpn_gateway_blocklist: list[str] = ["10.10", "172.29.", "172.30.", "172.31."]
    common_gateways: list[str] = [
        "192.168.1.1",
        "192.168.0.1",
        "10.0.0.1",
        "192.168.2.1",
        "10.1.1.1",
        "172.16.0.1",
    ]

    # Interfaces
    primary_interface: str = "en0"
    physical_interface_prefixes: list[str] = ["en"]
    tunnel_interface_prefixes: list[str] = ["utun", "ppp", "ipsec", "tun"]
    network_services: list[str] = ["Wi-Fi", "Ethernet"]  # networksetup names

    # Routes
    use_sudo: bool = True
    verify_routes: bool = False

    services: dict[str, ServiceDefinition] = Field(default_factory=lambda: default_services())

    @field_validator("gateway")
    @classmethod
    def validate_gateway(cls, v: str) -> str:
        if v in ("", "auto"):
            return "auto"
        try:
            ipaddress.IPv4Address(v)
        except ValueError as e:
            raise ValueError(f"invalid gateway IP: {v}") from e
        return v

    @property
    def state_file(self) -> Path:
        return Path(self.state_dir) / "state.json"

    @property
    def pid_file(self) -> Path:
        return Path(self.state_dir) / "splitroute.pid"


def default_services() -> dict[str, ServiceDefinition]:
    """Built-in service catalogue."""
    return {
        "telegram": ServiceDefinition(
            name="Telegram",
            description="Telegram messaging service",
            enabled=True,
            priority=100,
            networks=[
                "149.154.160.0/20",
                "149.154.164.0/22",
                "149.154.168.0/22",
                "149.154.172.0/22",
                "91.108.4.0/22",
                "91.108.8.0/22",
                "91.108.12.0/22",
                "91.108.16.0/22",
                "91.108.56.0/22",
                "185.76.151.0/24",
                "95.161.64.0/20",
            ],
            domains=["telegram.org", "web.telegram.org", "api.telegram.org"],
        ),
        "youtube": ServiceDefinition(
            name="YouTube",
            description="YouTube and Google services",
            enabled=True,
            priority=90,
            networks=[
                "172.217.0.0/16",
                "142.250.0.0/15",
                "216.58.192.0/19",
                "74.125.0.0/16",
                "64.233.160.0/19",
                "66.249.80.0/20",
                "72.14.192.0/18",
                "209.85.128.0/17",
            ],
            domains=["youtube.com", "googlevideo.com", "google.com"],
        ),
        "whatsapp": ServiceDefinition(
            name="WhatsApp",
            description="WhatsApp messaging service",
            priority=80,
            networks=[
                "31.13.64.0/18",
                "31.13.24.0/21",
                "31.13.96.0/19",
                "157.240.0.0/16",
                "173.252.64.0/18",
                "179.60.192.0/22",
            ],
            domains=["whatsapp.com", "whatsapp.net", "wa.me"],
        ),
        "spotify": ServiceDefinition(
            name="Spotify",
            description="Spotify music streaming service",
            priority=70,
            networks=[
                "78.31.8.0/21",
                "193.182.8.0/21",
                "194.68.28.0/22",
                "35.186.224.0/20",
            ],
            domains=["spotify.com", "spclient.wg.spotify.com"],
        ),
        "apple-music": ServiceDefinition(
            name="Apple Music",
            description="Apple Music streaming service",
            priority=70,
            networks=[
                "17.0.0.0/8",
                "139.178.128.0/17",
                "144.178.0.0/18",
                "192.35.50.0/24",
                "204.79.190.0/24",
            ],
            domains=["music.apple.com", "itunes.apple.com"],
        ),
    }


def get_config() -> SplitRouteConfig:
    """Factory function to create config instance."""
    return SplitRouteConfig()
