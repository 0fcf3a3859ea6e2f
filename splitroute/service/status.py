"""Point-in-time status report of the route manager."""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from ..network.route_table import Route


@dataclass
class ServiceStatus:
    running: bool
    vpn_connected: bool
    routes_active: bool
    active_routes: list[Route] = field(default_factory=list)
    enabled_services: dict[str, bool] = field(default_factory=dict)  # name -> active
    routes_by_service: dict[str, int] = field(default_factory=dict)
    gateway: Optional[str] = None
    vpn_interface: Optional[str] = None
    vpn_gateway: Optional[str] = None
    last_check: Optional[datetime] = None
    uptime: timedelta = timedelta(0)
    failed_routes: list[str] = field(default_factory=list)

    def summary(self) -> str:
        """One-line human readable status."""
        if not self.running:
            return "Service not running"
        if not self.vpn_connected:
            return "VPN disconnected"
        if not self.routes_active:
            return "VPN connected, routes pending"

        active = sum(1 for is_active in self.enabled_services.values() if is_active)
        text = f"VPN connected, {active} services active, {len(self.active_routes)} routes"
        if self.failed_routes:
            text += f", {len(self.failed_routes)} failed"
        return text

    def to_dict(self) -> dict:
        return {
            "running": self.running,
            "vpn_connected": self.vpn_connected,
            "routes_active": self.routes_active,
            "active_routes": [route.to_dict() for route in self.active_routes],
            "enabled_services": dict(self.enabled_services),
            "routes_by_service": dict(self.routes_by_service),
            "gateway": self.gateway,
            "vpn_interface": self.vpn_interface,
            "vpn_gateway": self.vpn_gateway,
            "last_check": self.last_check.isoformat() if self.last_check else None,
            "uptime_seconds": int(self.uptime.total_seconds()),
            "failed_routes": list(self.failed_routes),
            "summary": self.summary(),
        }
