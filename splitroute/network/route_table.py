"""Bypass route table.

Owns the set of bypass routes installed in the macOS routing table and
keeps an in-memory index of them keyed by network. This is the only
place that issues route add/delete commands; a single lock serializes
every mutation together with its OS command.
"""

import threading
from collections import Counter
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Optional

from ..config import parse_ipv4_cidr
from ..exceptions import InvalidNetworkError, RouteBatchError, RouteMutationFailed
from ..utils.logging import get_logger
from ..utils.process import CommandResult, CommandRunner
from .parsers import NetstatRoute, canonical_destination, parse_netstat_routes

logger = get_logger("network.route_table")

# Markers in `route` output
NOT_IN_TABLE = "not in table"
ALREADY_EXISTS = "File exists"


@dataclass
class Route:
    """A bypass route installed by this process."""
    network: str
    gateway: str
    service: str
    installed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            "network": self.network,
            "gateway": self.gateway,
            "service": self.service,
            "installed_at": self.installed_at.isoformat(),
        }


class RouteTable:
    """Authoritative index of installed bypass routes."""

    def __init__(self, runner: CommandRunner, use_sudo: bool = True):
        self._runner = runner
        self._use_sudo = use_sudo
        self._lock = threading.Lock()
        self._routes: dict[str, Route] = {}

    # -- OS commands (caller holds the lock) --------------------------------

    def _add_command(self, network: str, gateway: str) -> CommandResult:
        return self._runner.run(["route", "-n", "add", "-net", network, gateway], sudo=self._use_sudo)

    def _delete_command(self, network: str) -> None:
        """Delete the OS route; an absent route counts as deleted."""
        result = self._runner.run(["route", "-n", "delete", "-net", network], sudo=self._use_sudo)
        if result.ok or NOT_IN_TABLE in result.output:
            return
        raise RouteMutationFailed(network, "delete", result.output)

    def _install(self, network: str, gateway: str) -> None:
        """Add the OS route, replacing a stale one left by someone else."""
        result = self._add_command(network, gateway)
        if result.ok:
            return
        if ALREADY_EXISTS in result.output:
            logger.info("route_replacing_stale", network=network, gateway=gateway)
            self._delete_command(network)
            result = self._add_command(network, gateway)
            if result.ok:
                return
        raise RouteMutationFailed(network, "add", result.output)

    # -- mutations ----------------------------------------------------------

    def add(self, network: str, gateway: str, service: str) -> Route:
        """Install a bypass route for ``network`` via ``gateway``.

        Re-adding an identical (network, gateway) pair is a no-op. A
        tracked route with a different gateway is deleted first.

        Raises InvalidNetworkError or RouteMutationFailed.
        """
        try:
            parse_ipv4_cidr(network)
        except ValueError as e:
            raise InvalidNetworkError(str(e)) from e

        with self._lock:
            existing = self._routes.get(network)
            if existing is not None:
                if existing.gateway == gateway:
                    logger.debug("route_exists", network=network, gateway=gateway)
                    return replace(existing)
                try:
                    self._delete_command(network)
                except RouteMutationFailed as e:
                    logger.error("route_stale_remove_failed", network=network, error=str(e))
                else:
                    del self._routes[network]

            self._install(network, gateway)
            route = Route(network=network, gateway=gateway, service=service)
            self._routes[network] = route

        logger.info("route_added", network=network, gateway=gateway, service=service)
        return replace(route)

    def remove(self, network: str) -> None:
        """Delete the OS route for ``network`` and forget it.

        A route already absent from the OS table is treated as removed.
        Raises RouteMutationFailed and keeps the entry otherwise.
        """
        with self._lock:
            self._delete_command(network)
            route = self._routes.pop(network, None)

        logger.info(
            "route_removed",
            network=network,
            service=route.service if route else None,
            tracked=route is not None,
        )

    def remove_all(self) -> int:
        """Delete every tracked route; returns how many were tracked.

        The table is emptied even when some deletes fail; the failures
        are raised together as a RouteBatchError afterwards.
        """
        with self._lock:
            routes = list(self._routes.values())
            failures = []
            for route in routes:
                try:
                    self._delete_command(route.network)
                except RouteMutationFailed as e:
                    logger.error("route_remove_failed", network=route.network, error=str(e))
                    failures.append(e)
            self._routes.clear()

        logger.info("routes_removed_all", count=len(routes), failed=len(failures))
        if failures:
            raise RouteBatchError("remove", failures, succeeded=len(routes) - len(failures))
        return len(routes)

    def remove_service(self, service: str, keep: set[str] | None = None) -> int:
        """Delete the routes owned by ``service`` except networks in ``keep``."""
        keep = keep or set()
        removed = 0
        failures = []
        with self._lock:
            for route in [r for r in self._routes.values() if r.service == service]:
                if route.network in keep:
                    continue
                try:
                    self._delete_command(route.network)
                except RouteMutationFailed as e:
                    failures.append(e)
                    continue
                del self._routes[route.network]
                removed += 1

        logger.info("service_routes_removed", service=service, count=removed, failed=len(failures))
        if failures:
            raise RouteBatchError("remove", failures, succeeded=removed)
        return removed

    def reassign(self, network: str, service: str) -> bool:
        """Hand a tracked route to another service; no OS command is issued.

        Returns False if ``network`` is not tracked.
        """
        with self._lock:
            route = self._routes.get(network)
            if route is None:
                return False
            previous = route.service
            route.service = service

        logger.info("route_reassigned", network=network, service=service, previous=previous)
        return True

    def restore(self, gateway: str, networks: list[str] | None = None) -> int:
        """Re-install tracked routes (all, or just ``networks``) via ``gateway``."""
        restored = 0
        failures = []
        with self._lock:
            for route in list(self._routes.values()):
                if networks is not None and route.network not in networks:
                    continue
                try:
                    self._install(route.network, gateway)
                except RouteMutationFailed as e:
                    logger.error("route_restore_failed", network=route.network, error=str(e))
                    failures.append(e)
                    continue
                route.gateway = gateway
                route.installed_at = datetime.now(timezone.utc)
                restored += 1
                logger.info("route_restored", network=route.network, gateway=gateway)

        if failures:
            raise RouteBatchError("restore", failures, succeeded=restored)
        return restored

    # -- verification -------------------------------------------------------

    def _live_routes(self) -> Optional[list[NetstatRoute]]:
        result = self._runner.run(["netstat", "-rn"])
        if not result.ok:
            logger.warning("route_verify_netstat_failed", output=result.output.strip())
            return None
        return [r for r in parse_netstat_routes(result.stdout) if r.is_ipv4]

    @staticmethod
    def _present(route: Route, live: list[NetstatRoute]) -> bool:
        destination = canonical_destination(route.network)
        return any(r.destination == destination and r.gateway == route.gateway for r in live)

    def verify(self, network: str) -> bool:
        """True if the tracked route for ``network`` is in the live table with its gateway."""
        with self._lock:
            route = self._routes.get(network)
            route = replace(route) if route else None
        if route is None:
            return False

        live = self._live_routes()
        if live is None:
            return False
        if self._present(route, live):
            return True

        logger.debug(
            "route_verify_mismatch",
            network=network,
            netstat_format=canonical_destination(network),
            gateway=route.gateway,
        )
        return False

    def verify_all(self) -> dict[str, bool]:
        """Verify every tracked route against a single routing table read."""
        routes = self.active_routes()
        if not routes:
            return {}
        live = self._live_routes()
        if live is None:
            return {route.network: False for route in routes}
        return {route.network: self._present(route, live) for route in routes}

    # -- queries ------------------------------------------------------------

    def active_routes(self) -> list[Route]:
        """Snapshot of the tracked routes (copies, safe to keep)."""
        with self._lock:
            return [replace(route) for route in self._routes.values()]

    def get(self, network: str) -> Optional[Route]:
        with self._lock:
            route = self._routes.get(network)
            return replace(route) if route else None

    def route_count(self) -> int:
        with self._lock:
            return len(self._routes)

    def service_route_count(self, service: str) -> int:
        with self._lock:
            return sum(1 for route in self._routes.values() if route.service == service)

    def routes_by_service(self) -> dict[str, int]:
        with self._lock:
            return dict(Counter(route.service for route in self._routes.values()))
