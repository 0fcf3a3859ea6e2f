"""Error taxonomy for the route manager.

Nothing here is fatal to the reconciliation loop: every class below is
caught at the loop boundary, logged, and the loop carries on.
"""

from typing import Optional


class SplitRouteError(Exception):
    """Base class for all route manager errors."""


class DetectionUncertain(SplitRouteError):
    """VPN state or gateway could not be determined; treat as no change."""


class GatewayDetectionError(DetectionUncertain):
    """Every gateway strategy failed.

    ``fallback`` is the conventional default address, offered so callers
    can decide whether proceeding with it is acceptable.
    """

    def __init__(self, message: str, fallback: str):
        super().__init__(message)
        self.fallback = fallback


class InvalidNetworkError(SplitRouteError, ValueError):
    """A network string is not a valid IPv4 CIDR."""


class RouteMutationFailed(SplitRouteError):
    """An OS route add/delete command failed."""

    def __init__(self, network: str, action: str, output: str = ""):
        self.network = network
        self.action = action
        self.output = output.strip()
        detail = f": {self.output}" if self.output else ""
        super().__init__(f"failed to {action} route {network}{detail}")


class RouteBatchError(SplitRouteError):
    """Some routes of a bulk add/remove/restore failed; the rest went through."""

    def __init__(self, action: str, failures: list[RouteMutationFailed], succeeded: int = 0):
        self.action = action
        self.failures = failures
        self.succeeded = succeeded
        joined = "; ".join(str(f) for f in failures)
        super().__init__(
            f"failed to {action} {len(failures)} route(s) ({succeeded} succeeded): {joined}"
        )

    @property
    def networks(self) -> list[str]:
        return [f.network for f in self.failures]


class VerificationMismatch(SplitRouteError):
    """Tracked routes are absent from (or altered in) the live routing table."""

    def __init__(self, networks: list[str]):
        self.networks = networks
        super().__init__(f"{len(networks)} route(s) failed verification: {', '.join(networks)}")


class PersistenceFailed(SplitRouteError):
    """The state file could not be read, parsed, or written."""

    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message)
        self.path = path


class ServiceNotFoundError(SplitRouteError, KeyError):
    """A service name is not present in the configuration."""

    def __str__(self) -> str:
        return f"service '{self.args[0]}' not found"
