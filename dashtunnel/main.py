from __future__ import annotations

import asyncio
import logging
import signal

from dashtunnel.access.controller import AccessController
from dashtunnel.analytics.usage_tracker import UsageTracker
from dashtunnel.config import TunnelSettings
from dashtunnel.core.errors import AllProvidersFailedError
from dashtunnel.core.events import EventBus
from dashtunnel.core.manager import TunnelManager
from dashtunnel.web.server import ControlServer, build_app

logger = logging.getLogger("dashtunnel")

# Granularity of the scheduler loop; TTL expiry is checked on every tick.
_TICK = 5.0


def _setup_logging(log_file: str) -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler(log_file),
        ],
    )


async def run_scheduler(
    manager: TunnelManager,
    access: AccessController,
    tracker: UsageTracker,
    settings: TunnelSettings,
    stop_event: asyncio.Event,
) -> None:
    """Periodic maintenance until *stop_event* is set.

    Health checks every ``health_interval`` seconds, TTL expiry on every
    tick, visitor and rate-limit cleanup every ``cleanup_interval``.
    """
    loop = asyncio.get_running_loop()
    tick = min(_TICK, settings.health_interval, settings.cleanup_interval)
    next_health = loop.time() + settings.health_interval
    next_cleanup = loop.time() + settings.cleanup_interval

    while not stop_event.is_set():
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=tick)
            break
        except asyncio.TimeoutError:
            pass

        now = loop.time()
        await manager.stop_if_expired()

        if now >= next_health:
            next_health = now + settings.health_interval
            health = await manager.check_tunnel_health()
            if health is not None and not health.healthy:
                logger.warning("Tunnel health check failed: %s", health.error)

        if now >= next_cleanup:
            next_cleanup = now + settings.cleanup_interval
            removed = tracker.cleanup_inactive_visitors(settings.visitor_max_age)
            expired = access.cleanup_rate_limits()
            logger.debug("Cleanup: %d visitor(s), %d rate-limit window(s)", removed, expired)


async def main() -> None:
    settings = TunnelSettings.from_env()
    _setup_logging(settings.log_file)
    logger.info("dashtunnel starting...")

    # -- Core components --
    event_bus = EventBus()
    tracker = UsageTracker(event_bus, active_timeout=settings.active_timeout)
    access = AccessController(
        max_attempts=settings.rate_limit_attempts,
        window=settings.rate_limit_window,
    )
    manager = TunnelManager(
        settings.port,
        event_bus=event_bus,
        access_controller=access,
        usage_tracker=tracker,
        startup_timeout=settings.startup_timeout,
    )
    for provider in settings.build_providers():
        manager.register_provider(provider)
    logger.info("Tunnel providers: %s", ", ".join(manager.providers))

    server = ControlServer(
        build_app(manager, access, tracker, event_bus),
        host=settings.host,
        port=settings.port,
    )

    # Handle shutdown signals
    stop_event = asyncio.Event()

    def handle_signal() -> None:
        logger.info("Shutdown signal received")
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, handle_signal)

    await server.start()

    if settings.autostart:
        try:
            info = await manager.start_tunnel(settings.default_options())
            logger.info("Dashboard shared at %s", info.url)
        except AllProvidersFailedError as e:
            logger.error("%s", e.user_message())

    logger.info("dashtunnel is running. Press Ctrl+C to stop.")
    await run_scheduler(manager, access, tracker, settings, stop_event)

    logger.info("Shutting down...")
    await manager.stop_tunnel()
    await server.stop()
    logger.info("dashtunnel stopped.")


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
