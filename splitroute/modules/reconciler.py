"""Reconciliation loop — keeps bypass routes in step with VPN connectivity.

Polls the connectivity detector on a fixed interval. When the VPN comes
up it resolves the physical gateway and installs the bypass routes of
every enabled service; when the VPN goes down it removes them all. The
resulting state is persisted after every transition.
"""

import asyncio
import enum
import os
import threading
from typing import Optional

from ..config import ServiceDefinition, SplitRouteConfig
from ..exceptions import (
    DetectionUncertain,
    GatewayDetectionError,
    InvalidNetworkError,
    PersistenceFailed,
    RouteBatchError,
    RouteMutationFailed,
    ServiceNotFoundError,
    SplitRouteError,
    VerificationMismatch,
)
from ..network.detector import ConnectivityDetector, ConnectivityObservation
from ..network.gateway import GatewayResolver
from ..network.route_table import RouteTable
from ..service.state import PersistedState, PidFile, StateStore
from ..service.status import ServiceStatus
from ..utils.logging import get_logger
from .base_module import BaseModule

logger = get_logger("module.reconciler")


class LinkState(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"


class ReconciliationLoop(BaseModule):
    """Orchestrates detector, resolver, route table and state store.

    The loop is the only writer of connectivity-derived state. One step
    of reconciliation runs in a worker thread under ``_mutex``; explicit
    service enable/disable calls take the same mutex.
    """

    def __init__(
        self,
        config: SplitRouteConfig,
        detector: ConnectivityDetector,
        resolver: GatewayResolver,
        route_table: RouteTable,
        state_store: StateStore,
        pid_file: Optional[PidFile] = None,
    ):
        super().__init__(name="reconciler")
        self._config = config
        self._detector = detector
        self._resolver = resolver
        self._routes = route_table
        self._store = state_store
        self._pid_file = pid_file

        self._services: dict[str, ServiceDefinition] = {
            key: svc.model_copy(deep=True) for key, svc in config.services.items()
        }
        self._interval = float(config.check_interval)
        self._grace_period = float(config.shutdown_grace_period)

        self._mutex = threading.RLock()
        self._link_state = LinkState.DISCONNECTED
        self._persisted = PersistedState()
        self._failed_routes: dict[str, str] = {}  # network -> last error
        self._restore_attempted = False
        self._sweep_pending = False

        self._stop_event: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def link_state(self) -> LinkState:
        return self._link_state

    @property
    def persisted(self) -> PersistedState:
        return self._persisted

    @property
    def route_table(self) -> RouteTable:
        return self._routes

    # -- lifecycle ----------------------------------------------------------

    async def start(self) -> None:
        """Load the last snapshot and launch the polling task."""
        if self.running:
            raise RuntimeError("reconciliation loop is already running")
        self._claim_pid_file()

        self.running = True
        self.health_status = "starting"
        self.load_state()

        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self.run(), name="splitroute-reconciler")
        self._mark_started()
        logger.info("reconciler_started", interval=self._interval, services=len(self.enabled_services()))

    async def stop(self) -> None:
        """Stop polling, then remove every bypass route and save a final snapshot.

        The in-flight step gets ``shutdown_grace_period`` seconds to finish
        before the task is cancelled.
        """
        if not self.running:
            return
        self.running = False
        self.health_status = "stopping"
        logger.info("reconciler_stopping")

        if self._stop_event is not None:
            self._stop_event.set()
        if self._task is not None:
            try:
                await asyncio.wait_for(asyncio.shield(self._task), timeout=self._grace_period)
            except asyncio.TimeoutError:
                logger.warning("reconciler_stop_timeout", grace_period=self._grace_period)
                self._task.cancel()
                try:
                    await self._task
                except asyncio.CancelledError:
                    pass
            self._task = None

        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self.teardown)
        self._release_pid_file()
        self._mark_stopped()
        logger.info("reconciler_stopped")

    def _claim_pid_file(self) -> None:
        if self._pid_file is None:
            return
        holder = self._pid_file.read()
        if holder is not None and holder != os.getpid() and self._pid_file.is_process_running():
            raise RuntimeError(f"another splitroute daemon is running (pid {holder})")
        try:
            self._pid_file.write()
        except PersistenceFailed as e:
            logger.warning("pid_file_write_failed", error=str(e))

    def _release_pid_file(self) -> None:
        if self._pid_file is None:
            return
        try:
            self._pid_file.remove()
        except PersistenceFailed as e:
            logger.warning("pid_file_remove_failed", error=str(e))

    async def health_check(self) -> dict:
        return {
            "status": self.health_status,
            "details": {
                "link_state": self._link_state.value,
                "active_routes": self._routes.route_count(),
                "failed_routes": len(self._failed_routes),
                "heartbeat_age": self.heartbeat_age(),
                "last_check": self._persisted.last_check.isoformat() if self._persisted.last_check else None,
            },
        }

    async def run(self) -> None:
        """Forced first poll, then one reconciliation step per interval until stopped."""
        if self._stop_event is None:
            self._stop_event = asyncio.Event()

        await self._step()
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                await self._step()

        logger.info("reconciler_loop_exited")

    async def _step(self) -> None:
        try:
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, self.reconcile)
        except Exception as e:
            # Keep polling; only a stop request ends the loop
            logger.error("reconcile_step_failed", error=str(e), error_type=type(e).__name__)

    # -- state --------------------------------------------------------------

    def load_state(self) -> PersistedState:
        """Load the persisted snapshot for status reporting.

        The route table is not rebuilt from it. If the previous process
        left routes active, stale OS routes are swept on the first poll
        that finds the VPN down.
        """
        with self._mutex:
            try:
                loaded = self._store.load()
            except PersistenceFailed as e:
                logger.warning("state_load_failed", error=str(e))
                return self._persisted

            self._persisted.vpn_connected = loaded.vpn_connected
            self._persisted.routes_active = loaded.routes_active
            self._persisted.active_services = dict(loaded.active_services)
            self._persisted.last_gateway = loaded.last_gateway
            self._persisted.last_check = loaded.last_check
            self._sweep_pending = loaded.routes_active
            logger.info(
                "state_loaded",
                vpn_connected=loaded.vpn_connected,
                routes_active=loaded.routes_active,
            )
            return self._persisted

    def _persist(self) -> None:
        self._persisted.vpn_connected = self._link_state is LinkState.CONNECTED
        self._persisted.routes_active = self._routes.route_count() > 0
        try:
            self._store.save(self._persisted)
        except PersistenceFailed as e:
            logger.error("state_save_failed", error=str(e))

    # -- reconciliation -----------------------------------------------------

    def reconcile(self) -> Optional[ConnectivityObservation]:
        """Run one poll-and-reconcile step; returns the observation, or None if uncertain."""
        with self._mutex:
            try:
                observation = self._detector.observe()
            except DetectionUncertain as e:
                logger.warning("connectivity_detection_uncertain", error=str(e))
                return None

            self._persisted.last_check = observation.observed_at
            self.heartbeat()
            was_connected = self._link_state is LinkState.CONNECTED

            if observation.connected != was_connected:
                logger.info("vpn_state_changed", connected=observation.connected)
                if observation.connected:
                    changed = self._on_connected()
                else:
                    self._on_disconnected()
                    changed = True
                if changed:
                    self._persist()
            elif not observation.connected and self._sweep_pending:
                self._sweep_stale_routes()
                self._persist()
            elif observation.connected and self._config.verify_routes:
                try:
                    self.verify_and_restore()
                except SplitRouteError as e:
                    logger.error("route_restore_incomplete", error=str(e))

            logger.debug(
                "reconcile_checked",
                connected=observation.connected,
                routes=self._routes.route_count(),
            )
            return observation

    def enabled_services(self) -> dict[str, ServiceDefinition]:
        """Enabled services, highest priority first."""
        enabled = [(key, svc) for key, svc in self._services.items() if svc.enabled]
        enabled.sort(key=lambda item: (-item[1].priority, item[0]))
        return dict(enabled)

    def _install_service(self, key: str, service: ServiceDefinition, gateway: str) -> list[RouteMutationFailed]:
        failures = []
        for network in service.networks:
            try:
                self._routes.add(network, gateway, key)
            except InvalidNetworkError as e:
                failures.append(RouteMutationFailed(network, "add", str(e)))
            except RouteMutationFailed as e:
                failures.append(e)
            else:
                self._failed_routes.pop(network, None)
                continue
            logger.error("route_add_failed", service=key, network=network, error=str(failures[-1]))
            self._failed_routes[network] = str(failures[-1])
        return failures

    def _on_connected(self) -> bool:
        """Install bypass routes; False if the gateway is unknown (retried next tick)."""
        try:
            gateway = self._resolver.resolve()
        except GatewayDetectionError as e:
            logger.error("gateway_unavailable", error=str(e), fallback=e.fallback)
            return False

        services = self.enabled_services()
        if not services:
            logger.warning("no_services_enabled")

        installed = 0
        failed = 0
        for key, service in services.items():
            failures = self._install_service(key, service, gateway)
            self._persisted.active_services[key] = not failures
            installed += len(service.networks) - len(failures)
            failed += len(failures)
            logger.info(
                "service_routes_added",
                service=key,
                added=len(service.networks) - len(failures),
                failed=len(failures),
            )

        self._persisted.last_gateway = gateway
        self._link_state = LinkState.CONNECTED
        self._restore_attempted = False
        logger.info("bypass_routes_installed", gateway=gateway, routes=installed, failed=failed)
        return True

    def _on_disconnected(self) -> None:
        """Remove every bypass route; failures are logged, never retried."""
        try:
            removed = self._routes.remove_all()
        except RouteBatchError as e:
            logger.error("route_removal_incomplete", error=str(e), failed=e.networks)
        else:
            logger.info("bypass_routes_removed", routes=removed)

        for key in set(self._services) | set(self._persisted.active_services):
            self._persisted.active_services[key] = False
        self._failed_routes.clear()
        self._link_state = LinkState.DISCONNECTED
        self._restore_attempted = False
        self._sweep_pending = False

    def _sweep_stale_routes(self) -> None:
        """Delete OS routes a previous process may have left behind."""
        self._sweep_pending = False
        networks = {network for svc in self.enabled_services().values() for network in svc.networks}
        failed = 0
        for network in sorted(networks):
            try:
                self._routes.remove(network)
            except RouteMutationFailed as e:
                failed += 1
                logger.warning("stale_route_sweep_failed", network=network, error=str(e))
        for key in self._persisted.active_services:
            self._persisted.active_services[key] = False
        logger.info("stale_routes_swept", networks=len(networks), failed=failed)

    def verify_and_restore(self) -> dict[str, bool]:
        """Verify tracked routes and make one restore attempt for any that drifted.

        A further restore waits for the next connectivity transition.
        Raises VerificationMismatch if routes are still missing after the
        attempt, or GatewayDetectionError if no gateway can be resolved.
        """
        with self._mutex:
            results = self._routes.verify_all()
            missing = sorted(network for network, ok in results.items() if not ok)
            if not missing:
                return results

            logger.warning("route_verification_failed", count=len(missing), networks=missing)
            if self._restore_attempted:
                logger.debug("route_restore_skipped", reason="already attempted")
                return results
            self._restore_attempted = True

            self._resolver.invalidate()
            gateway = self._resolver.resolve()

            try:
                self._routes.restore(gateway, missing)
            except RouteBatchError as e:
                logger.error("route_restore_failed", error=str(e), failed=e.networks)
            self._persisted.last_gateway = gateway
            self._persist()

            results = self._routes.verify_all()
            still_missing = sorted(network for network, ok in results.items() if not ok)
            if still_missing:
                raise VerificationMismatch(still_missing)
            logger.info("routes_restored", count=len(missing), gateway=gateway)
            return results

    # -- explicit service control -------------------------------------------

    def enable_service(self, name: str) -> int:
        """Enable a service; installs its routes right away when connected.

        Returns the number of routes installed. Raises ServiceNotFoundError,
        GatewayDetectionError, or RouteBatchError for partial installs.
        """
        with self._mutex:
            service = self._services.get(name)
            if service is None:
                raise ServiceNotFoundError(name)
            service.enabled = True

            if self._link_state is not LinkState.CONNECTED:
                logger.info("service_enabled", service=name, routes="pending vpn connection")
                return 0

            gateway = self._resolver.resolve()
            failures = self._install_service(name, service, gateway)
            self._persisted.active_services[name] = not failures
            self._persist()

            added = len(service.networks) - len(failures)
            logger.info("service_enabled", service=name, added=added, failed=len(failures))
            if failures:
                raise RouteBatchError("add", failures, succeeded=added)
            return added

    def disable_service(self, name: str) -> int:
        """Disable a service and remove its routes.

        Networks another enabled service also lists stay installed and pass
        to the highest-priority such service. Returns the number of routes
        removed.
        """
        with self._mutex:
            service = self._services.get(name)
            if service is None:
                raise ServiceNotFoundError(name)
            service.enabled = False

            heirs: dict[str, str] = {}
            for key, other in self.enabled_services().items():
                for network in other.networks:
                    heirs.setdefault(network, key)
            shared = set(heirs)

            for network in service.networks:
                route = self._routes.get(network)
                if route is not None and route.service == name and network in heirs:
                    self._routes.reassign(network, heirs[network])

            try:
                removed = self._routes.remove_service(name, keep=shared)
            finally:
                self._persisted.active_services[name] = False
                for network in service.networks:
                    self._failed_routes.pop(network, None)
                self._persist()

            logger.info("service_disabled", service=name, removed=removed)
            return removed

    def teardown(self) -> None:
        """Best-effort removal of every route plus a final snapshot."""
        with self._mutex:
            try:
                removed = self._routes.remove_all()
            except RouteBatchError as e:
                logger.error("shutdown_route_removal_incomplete", error=str(e), failed=e.networks)
            else:
                logger.info("shutdown_routes_removed", routes=removed)

            for key in list(self._persisted.active_services):
                self._persisted.active_services[key] = False
            self._failed_routes.clear()
            self._persist()

    # -- reporting ----------------------------------------------------------

    def status(self) -> ServiceStatus:
        """Current status; tunnel details are read live while connected.

        ``running`` is also true when the PID file names another live
        daemon process.
        """
        with self._mutex:
            connected = self._link_state is LinkState.CONNECTED
            running = self.running or (
                self._pid_file is not None and self._pid_file.is_process_running()
            )
            return ServiceStatus(
                running=running,
                vpn_connected=connected,
                routes_active=self._routes.route_count() > 0,
                active_routes=self._routes.active_routes(),
                enabled_services={
                    key: self._persisted.active_services.get(key, False)
                    for key in self.enabled_services()
                },
                routes_by_service=self._routes.routes_by_service(),
                gateway=self._persisted.last_gateway or None,
                vpn_interface=self._detector.tunnel_interface() if connected else None,
                vpn_gateway=self._detector.tunnel_gateway() if connected else None,
                last_check=self._persisted.last_check,
                uptime=self.uptime(),
                failed_routes=sorted(self._failed_routes),
            )
