"""Event Bus and typed tunnel/visitor events.

Components publish lifecycle and metrics events here; the control
surface subscribes and relays them to remote viewers.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import AsyncIterator, ClassVar, TypeVar

from dashtunnel.core.models import HealthStatus, TunnelInfo

logger = logging.getLogger(__name__)

T = TypeVar("T")


class EventBus:
    """Simple in-process asyncio pub/sub event bus.

    Each event type is its own channel. Subscribers receive events via
    subscribe() which returns an asyncio.Queue, or iter_events() for
    convenient async iteration.
    """

    def __init__(self, maxsize: int = 0) -> None:
        self._subscribers: dict[type, list[asyncio.Queue]] = {}
        self._maxsize = maxsize

    def subscribe(self, event_type: type[T]) -> asyncio.Queue[T]:
        """Subscribe to events of a specific type. Returns a Queue."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._maxsize)
        self._subscribers.setdefault(event_type, []).append(queue)
        return queue

    def unsubscribe(self, event_type: type[T], queue: asyncio.Queue) -> None:
        """Remove a subscription."""
        queues = self._subscribers.get(event_type, [])
        if queue in queues:
            queues.remove(queue)

    def publish(self, event: object) -> None:
        """Publish an event to all subscribers of its type."""
        for queue in self._subscribers.get(type(event), []):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning("Event queue full, dropping %s", type(event).__name__)

    async def iter_events(self, event_type: type[T]) -> AsyncIterator[T]:
        """Async iterator for events of a specific type."""
        queue = self.subscribe(event_type)
        try:
            while True:
                yield await queue.get()
        finally:
            self.unsubscribe(event_type, queue)


# ---------------------------------------------------------------------------
# Event types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TunnelStartedEvent:
    """A tunnel became active."""
    kind: ClassVar[str] = "tunnel:started"
    info: TunnelInfo

    def to_dict(self) -> dict:
        return {"type": self.kind, "data": self.info.to_dict()}


@dataclass(frozen=True)
class TunnelStoppedEvent:
    """A tunnel was closed. ``metrics`` is the final summary, if tracked."""
    kind: ClassVar[str] = "tunnel:stopped"
    info: TunnelInfo
    metrics: dict | None = None

    def to_dict(self) -> dict:
        data: dict = {"info": self.info.to_dict()}
        if self.metrics is not None:
            data["metrics"] = self.metrics
        return {"type": self.kind, "data": data}


@dataclass(frozen=True)
class TunnelHealthEvent:
    kind: ClassVar[str] = "tunnel:health"
    health: HealthStatus
    restarted: bool = False

    def to_dict(self) -> dict:
        return {
            "type": self.kind,
            "data": {**self.health.to_dict(), "restarted": self.restarted},
        }


@dataclass(frozen=True)
class VisitorNewEvent:
    """First access from a previously unseen address."""
    kind: ClassVar[str] = "visitor:new"
    visitor_id: str
    user_agent_class: str

    def to_dict(self) -> dict:
        return {
            "type": self.kind,
            "data": {"id": self.visitor_id, "user_agent_class": self.user_agent_class},
        }


@dataclass(frozen=True)
class MetricsUpdatedEvent:
    kind: ClassVar[str] = "metrics:updated"
    total_visitors: int
    active_visitors: int
    total_accesses: int

    def to_dict(self) -> dict:
        return {
            "type": self.kind,
            "data": {
                "total_visitors": self.total_visitors,
                "active_visitors": self.active_visitors,
                "total_accesses": self.total_accesses,
            },
        }


RELAYED_EVENT_TYPES: list[type] = [
    TunnelStartedEvent,
    TunnelStoppedEvent,
    TunnelHealthEvent,
    VisitorNewEvent,
    MetricsUpdatedEvent,
]

RELAYED_EVENT_KINDS = frozenset(t.kind for t in RELAYED_EVENT_TYPES)
