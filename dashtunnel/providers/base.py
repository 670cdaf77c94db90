"""Shared interface for tunnel provider adapters."""
from __future__ import annotations

from datetime import datetime
from typing import Protocol, runtime_checkable

from dashtunnel.core.models import HealthStatus, InstanceStatus, ProviderOptions


@runtime_checkable
class TunnelInstance(Protocol):
    """A running tunnel returned by ``TunnelProvider.create_tunnel``."""

    @property
    def url(self) -> str: ...

    @property
    def status(self) -> InstanceStatus: ...

    @property
    def provider(self) -> str: ...

    @property
    def created_at(self) -> datetime: ...

    async def close(self) -> None: ...

    async def get_health(self) -> HealthStatus: ...


@runtime_checkable
class TunnelProvider(Protocol):
    """Uniform wrapper over one external tunneling backend."""

    @property
    def name(self) -> str: ...

    def is_available(self) -> bool: ...

    async def validate_config(self) -> None: ...

    async def create_tunnel(self, port: int, options: ProviderOptions) -> TunnelInstance: ...
