"""Privacy-preserving visitor analytics for shared tunnels.

Addresses are only ever stored as salted one-way hashes. Activity is
computed on read from ``last_seen``; records disappear only through
``cleanup_inactive_visitors`` or ``clear_metrics``.
"""
from __future__ import annotations

import hashlib
import json
import logging
import secrets
import threading
import time
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Callable

from dashtunnel.core.events import EventBus, MetricsUpdatedEvent, VisitorNewEvent

logger = logging.getLogger(__name__)

DEFAULT_ACTIVE_TIMEOUT = 5 * 60.0
DEFAULT_MAX_AGE = 24 * 60 * 60.0

# Checked in order; the first class with a matching token wins.
_USER_AGENT_RULES: list[tuple[str, tuple[str, ...]]] = [
    ("bot", ("bot", "crawler", "spider", "slurp", "curl", "wget")),
    ("mobile", ("mobile", "iphone", "ipod")),
    ("tablet", ("tablet", "ipad")),
    ("edge", ("edg/", "edge")),
    ("chrome", ("chrome", "chromium", "crios")),
    ("firefox", ("firefox", "fxios")),
    ("safari", ("safari",)),
]


def classify_user_agent(user_agent: str) -> str:
    """Map a raw user agent to a coarse, non-identifying category."""
    ua = user_agent.lower()
    for category, tokens in _USER_AGENT_RULES:
        if any(token in ua for token in tokens):
            return category
    return "other"


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, timezone.utc).isoformat()


@dataclass(frozen=True)
class AccessEvent:
    ip: str
    user_agent: str
    path: str
    timestamp: float | None = None


@dataclass
class VisitorRecord:
    id: str
    hashed_ip: str
    first_seen: float
    last_seen: float
    access_count: int
    user_agent: str  # raw, never exported

    @property
    def user_agent_class(self) -> str:
        return classify_user_agent(self.user_agent)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "hashed_ip": self.hashed_ip,
            "first_seen": _iso(self.first_seen),
            "last_seen": _iso(self.last_seen),
            "access_count": self.access_count,
            "user_agent": self.user_agent,
        }

    def to_anonymized_dict(self) -> dict:
        return {
            "id": self.id,
            "first_seen": _iso(self.first_seen),
            "last_seen": _iso(self.last_seen),
            "access_count": self.access_count,
            "user_agent_class": self.user_agent_class,
        }


@dataclass(frozen=True)
class UsageMetrics:
    total_visitors: int
    total_accesses: int
    active_visitors: int
    visitors: list[VisitorRecord]
    start_time: float
    last_activity: float

    def summary(self) -> dict:
        """Counters only, safe to relay to viewers."""
        return {
            "total_visitors": self.total_visitors,
            "total_accesses": self.total_accesses,
            "active_visitors": self.active_visitors,
            "start_time": _iso(self.start_time),
            "last_activity": _iso(self.last_activity),
        }


class UsageTracker:
    """Records anonymized visitor activity and computes live metrics."""

    def __init__(
        self,
        event_bus: EventBus | None = None,
        *,
        active_timeout: float = DEFAULT_ACTIVE_TIMEOUT,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._event_bus = event_bus
        self._active_timeout = active_timeout
        self._clock = clock
        self._salt = secrets.token_bytes(16)
        self._lock = threading.Lock()
        self._visitors: dict[str, VisitorRecord] = {}
        self._total_accesses = 0
        self._start_time = clock()
        self._last_activity = self._start_time

    def hash_ip(self, ip: str) -> str:
        """Salted SHA-256 of *ip*; stable for the lifetime of this tracker."""
        return hashlib.sha256(self._salt + ip.encode("utf-8")).hexdigest()[:16]

    def track_access(self, event: AccessEvent) -> None:
        timestamp = event.timestamp if event.timestamp is not None else self._clock()
        hashed_ip = self.hash_ip(event.ip)
        new_visitor: VisitorRecord | None = None

        with self._lock:
            visitor = self._visitors.get(hashed_ip)
            if visitor is None:
                new_visitor = VisitorRecord(
                    id=uuid.uuid4().hex[:12],
                    hashed_ip=hashed_ip,
                    first_seen=timestamp,
                    last_seen=timestamp,
                    access_count=1,
                    user_agent=event.user_agent,
                )
                self._visitors[hashed_ip] = new_visitor
            else:
                visitor.last_seen = max(visitor.last_seen, timestamp)
                visitor.access_count += 1
            self._total_accesses += 1
            self._last_activity = max(self._last_activity, timestamp)

        logger.debug("Tracked access to %s", event.path)
        if self._event_bus is None:
            return
        if new_visitor is not None:
            self._event_bus.publish(VisitorNewEvent(
                visitor_id=new_visitor.id, user_agent_class=new_visitor.user_agent_class,
            ))
        self._publish_metrics()

    def _publish_metrics(self) -> None:
        if self._event_bus is None:
            return
        metrics = self.get_metrics()
        self._event_bus.publish(MetricsUpdatedEvent(
            total_visitors=metrics.total_visitors,
            active_visitors=metrics.active_visitors,
            total_accesses=metrics.total_accesses,
        ))

    def _count_active(self, now: float) -> int:
        cutoff = now - self._active_timeout
        return sum(1 for v in self._visitors.values() if v.last_seen > cutoff)

    def get_metrics(self) -> UsageMetrics:
        now = self._clock()
        with self._lock:
            visitors = sorted(
                (replace(v) for v in self._visitors.values()),
                key=lambda v: v.last_seen,
                reverse=True,
            )
            return UsageMetrics(
                total_visitors=len(self._visitors),
                total_accesses=self._total_accesses,
                active_visitors=self._count_active(now),
                visitors=visitors,
                start_time=self._start_time,
                last_activity=self._last_activity,
            )

    def get_active_visitor_count(self) -> int:
        now = self._clock()
        with self._lock:
            return self._count_active(now)

    def get_visitor(self, visitor_id: str) -> VisitorRecord | None:
        with self._lock:
            for visitor in self._visitors.values():
                if visitor.id == visitor_id:
                    return replace(visitor)
        return None

    def set_active_timeout(self, seconds: float) -> None:
        self._active_timeout = seconds

    def cleanup_inactive_visitors(self, max_age: float = DEFAULT_MAX_AGE) -> int:
        """Remove visitors not seen for *max_age* seconds. Returns the count."""
        cutoff = self._clock() - max_age
        with self._lock:
            stale = [key for key, v in self._visitors.items() if v.last_seen < cutoff]
            for key in stale:
                del self._visitors[key]
        if stale:
            logger.info("Cleaned up %d inactive visitor(s)", len(stale))
            self._publish_metrics()
        return len(stale)

    def clear_metrics(self) -> None:
        with self._lock:
            self._visitors.clear()
            self._total_accesses = 0
            self._start_time = self._clock()
            self._last_activity = self._start_time
        logger.info("Cleared usage metrics")
        self._publish_metrics()

    def export_metrics(self) -> str:
        """JSON export without hashed addresses or raw user agents."""
        metrics = self.get_metrics()
        return json.dumps({
            **metrics.summary(),
            "visitors": [v.to_anonymized_dict() for v in metrics.visitors],
        }, indent=2)
