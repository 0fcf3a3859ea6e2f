"""splitroute daemon entry point.

Wires configuration, logging and the network components into a
ReconciliationLoop and runs it until SIGINT/SIGTERM.
"""

import asyncio
import signal
from typing import Optional

from .config import SplitRouteConfig, get_config
from .modules.reconciler import ReconciliationLoop
from .network.detector import ConnectivityDetector, InterfaceClassifier
from .network.gateway import GatewayResolver
from .network.route_table import RouteTable
from .service.state import PidFile, StateStore
from .utils.logging import get_logger, setup_logging
from .utils.process import CommandRunner

logger = get_logger("main")


def build_reconciler(config: SplitRouteConfig, runner: Optional[CommandRunner] = None) -> ReconciliationLoop:
    """Construct every component once and hand them to the loop."""
    runner = runner or CommandRunner()
    classifier = InterfaceClassifier(
        primary_interface=config.primary_interface,
        tunnel_prefixes=tuple(config.tunnel_interface_prefixes),
        physical_prefixes=tuple(config.physical_interface_prefixes),
    )
    detector = ConnectivityDetector(runner, classifier)
    resolver = GatewayResolver(
        runner,
        classifier,
        fallback=config.fallback_gateway,
        static_gateway=None if config.gateway == "auto" else config.gateway,
        blocklist=config.vpn_gateway_blocklist,
        common_gateways=config.common_gateways,
        network_services=config.network_services,
        probe_timeout_ms=config.probe_timeout_ms,
        cache_ttl=config.gateway_cache_ttl,
    )
    route_table = RouteTable(runner, use_sudo=config.use_sudo)
    store = StateStore(config.state_file)
    return ReconciliationLoop(config, detector, resolver, route_table, store, PidFile(config.pid_file))


async def run(config: Optional[SplitRouteConfig] = None) -> None:
    """Run the daemon until a termination signal arrives."""
    config = config or get_config()
    setup_logging(
        debug=config.debug,
        log_dir=config.log_dir,
        log_max_bytes=config.log_max_bytes,
        log_backup_count=config.log_backup_count,
    )

    reconciler = build_reconciler(config)
    shutdown = asyncio.Event()
    loop = asyncio.get_running_loop()

    def _on_signal(sig: signal.Signals) -> None:
        logger.info("signal_received", signal=sig.name)
        shutdown.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _on_signal, sig)

    logger.info("splitroute_starting", interval=config.check_interval, gateway=config.gateway)
    await reconciler.start()
    try:
        await shutdown.wait()
    finally:
        await reconciler.stop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
        logger.info("splitroute_stopped", summary=reconciler.status().summary())


def main() -> None:
    asyncio.run(run())


if __name__ == "__main__":
    main()
