"""Tunnel manager — provider registry, failover and health-driven restarts.

State machine: IDLE -> STARTING -> ACTIVE -> CLOSING -> IDLE, plus
ACTIVE -> RESTARTING -> ACTIVE|IDLE when a health check finds the tunnel
unhealthy. At most one tunnel exists per manager; every public operation
is serialized on a single asyncio lock.
"""
from __future__ import annotations

import asyncio
import logging
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Callable

from dashtunnel.core.errors import AllProvidersFailedError, ProviderError, TunnelError
from dashtunnel.core.events import (
    EventBus,
    TunnelHealthEvent,
    TunnelStartedEvent,
    TunnelStoppedEvent,
)
from dashtunnel.core.models import (
    HealthStatus,
    ProviderOptions,
    TunnelInfo,
    TunnelOptions,
    TunnelState,
    TunnelStatus,
)

if TYPE_CHECKING:
    from dashtunnel.access.controller import AccessController
    from dashtunnel.analytics.usage_tracker import UsageTracker
    from dashtunnel.providers.base import TunnelInstance, TunnelProvider

logger = logging.getLogger(__name__)

DEFAULT_METADATA = {"projectName": "dashtunnel", "readOnly": "true"}


class TunnelManager:
    """Owns one optional active tunnel and the providers that can create it."""

    def __init__(
        self,
        local_port: int,
        *,
        event_bus: EventBus | None = None,
        access_controller: AccessController | None = None,
        usage_tracker: UsageTracker | None = None,
        metadata: dict[str, str] | None = None,
        startup_timeout: float = 30.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._local_port = local_port
        self._event_bus = event_bus
        self._access = access_controller
        self._tracker = usage_tracker
        self._metadata = dict(DEFAULT_METADATA if metadata is None else metadata)
        self._startup_timeout = startup_timeout
        self._clock = clock

        self._providers: dict[str, TunnelProvider] = {}
        self._lock = asyncio.Lock()
        self._state = TunnelState.IDLE
        self._instance: TunnelInstance | None = None
        self._info: TunnelInfo | None = None
        self._last_options: TunnelOptions | None = None

    # -- Registry ------------------------------------------------------------

    def register_provider(self, provider: TunnelProvider) -> None:
        """Add *provider*; re-registering a name keeps its original position."""
        key = provider.name.lower()
        if key in self._providers:
            logger.debug("Provider %s already registered, replacing", key)
        else:
            logger.debug("Registering tunnel provider: %s", key)
        self._providers[key] = provider

    @property
    def providers(self) -> list[str]:
        return list(self._providers)

    # -- Read-only accessors -------------------------------------------------

    @property
    def state(self) -> TunnelState:
        return self._state

    @property
    def tunnel_id(self) -> str | None:
        return self._info.tunnel_id if self._info else None

    @property
    def last_options(self) -> TunnelOptions | None:
        return self._last_options

    def get_status(self) -> TunnelStatus:
        if self._instance is None or self._info is None:
            return TunnelStatus(active=False)
        return TunnelStatus(active=True, info=self._info, viewers=self._viewer_count())

    def _viewer_count(self) -> int:
        if self._tracker is None or not (self._last_options and self._last_options.analytics):
            return 0
        return self._tracker.get_active_visitor_count()

    # -- Lifecycle -----------------------------------------------------------

    async def start_tunnel(self, options: TunnelOptions | None = None) -> TunnelInfo:
        """Stop any current tunnel, then try candidates until one starts.

        Raises AllProvidersFailedError when every candidate is unavailable
        or fails; the manager is then idle.
        """
        async with self._lock:
            return await self._start(options or TunnelOptions())

    async def stop_tunnel(self) -> None:
        async with self._lock:
            await self._stop()

    async def check_tunnel_health(self) -> HealthStatus | None:
        """Probe the active tunnel; restart it once if it is unhealthy.

        Returns None when idle. Never raises.
        """
        async with self._lock:
            if self._instance is None:
                return None

            health = await self._probe(self._instance)
            if health.healthy:
                self._publish(TunnelHealthEvent(health=health))
                return health

            logger.warning("Tunnel unhealthy (%s), restarting", health.error)
            options = self._last_options or TunnelOptions()
            self._state = TunnelState.RESTARTING
            await self._stop()
            try:
                await self._start(options)
            except AllProvidersFailedError as e:
                result = HealthStatus(healthy=False, error=str(e))
                self._publish(TunnelHealthEvent(health=result, restarted=False))
                return result

            result = await self._probe(self._instance)
            self._publish(TunnelHealthEvent(health=result, restarted=True))
            return result

    async def stop_if_expired(self) -> bool:
        """Stop the tunnel once its TTL has passed. Returns True if stopped."""
        async with self._lock:
            if self._info is None or self._info.expires_at is None:
                return False
            now = datetime.fromtimestamp(self._clock(), timezone.utc)
            if now < self._info.expires_at:
                return False
            logger.info("Tunnel %s expired, stopping", self._info.tunnel_id)
            await self._stop()
            return True

    # -- Internals (lock held) -----------------------------------------------

    def _candidates(self, requested: str) -> list[TunnelProvider]:
        if requested and requested.lower() != "auto":
            provider = self._providers.get(requested.lower())
            return [provider] if provider else []
        return list(self._providers.values())

    @staticmethod
    def _is_available(provider: TunnelProvider) -> bool:
        try:
            return bool(provider.is_available())
        except Exception as e:
            logger.warning("Availability check for %s failed: %s", provider.name, e)
            return False

    async def _start(self, options: TunnelOptions) -> TunnelInfo:
        if self._instance is not None:
            await self._stop()

        if self._state is not TunnelState.RESTARTING:
            self._state = TunnelState.STARTING
        expires_at = self._expiry(options)
        failures: list[tuple[str, str]] = []
        candidates = self._candidates(options.provider)
        if not candidates and options.provider.lower() != "auto":
            failures.append((options.provider, "provider is not registered"))

        provider_options = ProviderOptions(
            ttl=options.ttl, metadata=self._metadata, timeout=self._startup_timeout,
        )
        for provider in candidates:
            if not self._is_available(provider):
                logger.info("Skipping unavailable provider %s", provider.name)
                failures.append((provider.name, "not available"))
                continue
            try:
                logger.info("Creating tunnel with provider %s", provider.name)
                await provider.validate_config()
                instance = await provider.create_tunnel(self._local_port, provider_options)
            except TunnelError as e:
                logger.warning("Provider %s failed: %s", provider.name, e)
                failures.append((provider.name, str(e)))
                continue
            except Exception as e:
                wrapped = ProviderError(provider.name, "UNEXPECTED", str(e) or type(e).__name__)
                logger.warning("Provider %s failed unexpectedly: %s", provider.name, wrapped)
                failures.append((provider.name, str(wrapped)))
                continue

            try:
                return self._activate(provider, instance, options, expires_at)
            except Exception as e:
                logger.warning("Activating %s tunnel failed: %s", provider.name, e)
                failures.append((provider.name, str(e) or type(e).__name__))
                self._instance = None
                self._info = None
                await self._discard(provider, instance)

        self._state = TunnelState.IDLE
        raise AllProvidersFailedError(failures, requested=options.provider)

    def _expiry(self, options: TunnelOptions) -> datetime | None:
        if not options.ttl:
            return None
        created = datetime.fromtimestamp(self._clock(), timezone.utc)
        return created + timedelta(minutes=options.ttl)

    def _activate(
        self,
        provider: TunnelProvider,
        instance: TunnelInstance,
        options: TunnelOptions,
        expires_at: datetime | None,
    ) -> TunnelInfo:
        info = TunnelInfo(
            url=instance.url,
            provider=provider.name,
            tunnel_id=f"tunnel-{uuid.uuid4().hex[:12]}",
            expires_at=expires_at,
            password_protected=bool(options.password),
        )
        if options.password and self._access is not None:
            self._access.set_password(info.tunnel_id, options.password)

        self._instance = instance
        self._info = info
        self._last_options = options
        self._state = TunnelState.ACTIVE
        logger.info("Tunnel active via %s: %s", info.provider, info.url)
        self._publish(TunnelStartedEvent(info=info))
        return info

    async def _stop(self) -> None:
        instance, info = self._instance, self._info
        if instance is None or info is None:
            return

        if self._state is not TunnelState.RESTARTING:
            self._state = TunnelState.CLOSING
        try:
            await instance.close()
        except Exception as e:
            logger.warning("Error closing %s tunnel: %s", info.provider, e)

        self._instance = None
        self._info = None
        if self._access is not None:
            self._access.clear_password(info.tunnel_id)
        if self._state is TunnelState.CLOSING:
            self._state = TunnelState.IDLE

        metrics = None
        if self._tracker is not None and self._last_options and self._last_options.analytics:
            metrics = self._tracker.get_metrics().summary()
        logger.info("Tunnel %s stopped", info.tunnel_id)
        self._publish(TunnelStoppedEvent(info=info, metrics=metrics))

    @staticmethod
    async def _discard(provider: TunnelProvider, instance: TunnelInstance) -> None:
        try:
            await instance.close()
        except Exception as e:
            logger.warning("Error closing %s tunnel: %s", provider.name, e)

    @staticmethod
    async def _probe(instance: TunnelInstance) -> HealthStatus:
        try:
            return await instance.get_health()
        except Exception as e:
            return HealthStatus(healthy=False, error=str(e) or type(e).__name__)

    def _publish(self, event: object) -> None:
        if self._event_bus is not None:
            self._event_bus.publish(event)
