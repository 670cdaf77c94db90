from __future__ import annotations

from datetime import datetime, timezone

import pytest

from dashtunnel.core.models import HealthStatus, InstanceStatus, ProviderOptions


class FakeClock:
    """Manually advanced clock, callable like time.time()."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeInstance:
    def __init__(self, provider: str, url: str) -> None:
        self.url = url
        self.provider = provider
        self.status = InstanceStatus.ACTIVE
        self.created_at = datetime.now(timezone.utc)
        self.health = HealthStatus(healthy=True, latency=0.01)
        self.close_calls = 0
        self.close_error: Exception | None = None

    async def close(self) -> None:
        self.close_calls += 1
        self.status = InstanceStatus.CLOSING
        if self.close_error is not None:
            raise self.close_error

    async def get_health(self) -> HealthStatus:
        return self.health


class FakeProvider:
    """In-memory provider; ``error`` is raised from create_tunnel when set."""

    def __init__(
        self,
        name: str,
        *,
        available: bool = True,
        error: Exception | None = None,
        config_error: Exception | None = None,
    ) -> None:
        self.name = name
        self.available = available
        self.error = error
        self.config_error = config_error
        self.calls: list[tuple[int, ProviderOptions]] = []
        self.instances: list[FakeInstance] = []

    def is_available(self) -> bool:
        return self.available

    async def validate_config(self) -> None:
        if self.config_error is not None:
            raise self.config_error

    async def create_tunnel(self, port: int, options: ProviderOptions) -> FakeInstance:
        self.calls.append((port, options))
        if self.error is not None:
            raise self.error
        instance = FakeInstance(self.name, f"https://{self.name}-{len(self.calls)}.example.com")
        self.instances.append(instance)
        return instance


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
