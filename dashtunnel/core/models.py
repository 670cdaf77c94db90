"""Tunnel data model — options, snapshots and health results."""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

# One week, in minutes.
MAX_TTL = 7 * 24 * 60.0


class TunnelState(Enum):
    """Lifecycle state of a TunnelManager."""

    IDLE = "idle"
    STARTING = "starting"
    ACTIVE = "active"
    CLOSING = "closing"
    RESTARTING = "restarting"


class InstanceStatus(Enum):
    """Status of a single running tunnel instance."""

    STARTING = "starting"
    ACTIVE = "active"
    CLOSING = "closing"
    ERROR = "error"


@dataclass(frozen=True)
class TunnelOptions:
    """Caller-supplied tunnel configuration.

    ``provider`` is an adapter name or ``"auto"``; ``ttl`` is in minutes.
    The password is held in memory only and never serialized.
    """

    provider: str = "auto"
    password: str | None = field(default=None, repr=False)
    max_viewers: int | None = None
    ttl: float | None = None
    analytics: bool = True

    def __post_init__(self) -> None:
        if self.ttl is not None and not (math.isfinite(self.ttl) and 0 <= self.ttl <= MAX_TTL):
            raise ValueError(f"ttl must be between 0 and {MAX_TTL:g} minutes, got {self.ttl!r}")

    @classmethod
    def from_dict(cls, data: dict) -> TunnelOptions:
        ttl = data.get("ttl")
        max_viewers = data.get("max_viewers")
        return cls(
            provider=data.get("provider") or "auto",
            password=data.get("password") or None,
            max_viewers=int(max_viewers) if max_viewers is not None else None,
            ttl=float(ttl) if ttl is not None else None,
            analytics=bool(data.get("analytics", True)),
        )


@dataclass(frozen=True)
class ProviderOptions:
    """What a provider adapter receives on ``create_tunnel``."""

    ttl: float | None = None
    metadata: dict[str, str] = field(default_factory=dict)
    timeout: float = 30.0


@dataclass(frozen=True)
class TunnelInfo:
    """Immutable snapshot of a successfully started tunnel."""

    url: str
    provider: str
    tunnel_id: str
    expires_at: datetime | None = None
    password_protected: bool = False

    def to_dict(self) -> dict:
        return {
            "url": self.url,
            "provider": self.provider,
            "tunnel_id": self.tunnel_id,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "password_protected": self.password_protected,
        }


@dataclass(frozen=True)
class TunnelStatus:
    active: bool
    info: TunnelInfo | None = None
    viewers: int = 0

    def to_dict(self) -> dict:
        if not self.active or self.info is None:
            return {"active": False}
        return {"active": True, "info": self.info.to_dict(), "viewers": self.viewers}


@dataclass(frozen=True)
class HealthStatus:
    """Result of a liveness probe. ``latency`` is in seconds."""

    healthy: bool
    latency: float | None = None
    error: str | None = None

    def to_dict(self) -> dict:
        data: dict = {"healthy": self.healthy}
        if self.latency is not None:
            data["latency"] = self.latency
        if self.error:
            data["error"] = self.error
        return data
