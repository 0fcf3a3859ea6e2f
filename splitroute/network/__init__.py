"""Network layer: gateway resolution, VPN detection and bypass routes."""

from .detector import ConnectivityDetector, ConnectivityObservation
from .gateway import GatewayResolver
from .route_table import Route, RouteTable

__all__ = [
    "ConnectivityDetector",
    "ConnectivityObservation",
    "GatewayResolver",
    "Route",
    "RouteTable",
]
