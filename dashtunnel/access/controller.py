"""Access control for tunnel-origin traffic.

Enforces read-only semantics, optional per-tunnel password gating and a
fixed-window rate limit on authentication attempts per hashed source.
All state lives in memory and is guarded by one lock so it can be shared
between concurrent request handlers.
"""
from __future__ import annotations

import hashlib
import hmac
import json
import logging
import secrets
import threading
import time
from dataclasses import dataclass
from typing import Callable

from dashtunnel.core.errors import AuthenticationFailed, RateLimitExceeded, ReadOnlyViolation

logger = logging.getLogger(__name__)

SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})
BLOCKED_MESSAGE_TYPES = frozenset({"command", "action", "write"})
READ_ONLY_TAGGED_TYPES = frozenset({"initial", "update"})
AUTH_PATH = "/api/tunnel/auth"

DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_WINDOW = 60.0
DEFAULT_SESSION_TTL = 3600.0


@dataclass(frozen=True)
class RequestDescriptor:
    """What the serving layer knows about an inbound request."""

    method: str
    path: str
    tunnel_origin: bool


@dataclass(frozen=True)
class AccessAttempt:
    source_key: str
    timestamp: float
    success: bool
    tunnel_id: str


@dataclass
class _Window:
    count: int
    reset_at: float


@dataclass(frozen=True)
class _Session:
    tunnel_id: str
    expires_at: float


def _digest(value: str) -> bytes:
    return hashlib.sha256(value.encode("utf-8")).digest()


class AccessController:
    def __init__(
        self,
        *,
        read_only: bool = True,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        window: float = DEFAULT_WINDOW,
        session_ttl: float = DEFAULT_SESSION_TTL,
        exempt_paths: frozenset[str] = frozenset({AUTH_PATH}),
        on_failed_attempt: Callable[[AccessAttempt], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._read_only = read_only
        self._max_attempts = max_attempts
        self._window = window
        self._session_ttl = session_ttl
        self._exempt_paths = exempt_paths
        self._on_failed_attempt = on_failed_attempt
        self._clock = clock
        self._salt = secrets.token_bytes(16)
        self._lock = threading.Lock()
        self._passwords: dict[str, bytes] = {}
        self._windows: dict[str, _Window] = {}
        self._sessions: dict[str, _Session] = {}
        self._read_only_sessions: set[str] = set()

    # -- Read-only enforcement ---------------------------------------------

    def enforce_read_only(self, request: RequestDescriptor) -> None:
        """Raise ReadOnlyViolation for a mutating tunnel-origin request."""
        if not self._read_only or not request.tunnel_origin:
            return
        if request.method.upper() in SAFE_METHODS or request.path in self._exempt_paths:
            return
        logger.warning("Blocked %s %s on read-only tunnel", request.method, request.path)
        raise ReadOnlyViolation(request.method, request.path)

    def filter_message(
        self, raw: str | bytes, *, tagged_types: frozenset[str] = READ_ONLY_TAGGED_TYPES,
    ) -> str | None:
        """Filter one outbound message for a read-only session.

        Messages whose type is in *tagged_types* get ``"readOnly": true``.
        Returns the (possibly tagged) message, or None to drop it.
        """
        try:
            message = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError):
            return None
        if not isinstance(message, dict):
            return None
        msg_type = message.get("type")
        if msg_type in BLOCKED_MESSAGE_TYPES:
            logger.debug("Dropped %r message for read-only session", msg_type)
            return None
        if msg_type in tagged_types:
            message["readOnly"] = True
        return json.dumps(message)

    def mark_read_only_session(self, session_id: str) -> None:
        with self._lock:
            self._read_only_sessions.add(session_id)

    def release_session(self, session_id: str) -> None:
        with self._lock:
            self._read_only_sessions.discard(session_id)

    def is_read_only_session(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._read_only_sessions

    # -- Passwords -----------------------------------------------------------

    def set_password(self, tunnel_id: str, password: str) -> None:
        with self._lock:
            self._passwords[tunnel_id] = _digest(password)

    def clear_password(self, tunnel_id: str) -> None:
        """Forget the password and every session issued for *tunnel_id*."""
        with self._lock:
            self._passwords.pop(tunnel_id, None)
        self.revoke_sessions(tunnel_id)

    def has_password(self, tunnel_id: str) -> bool:
        with self._lock:
            return tunnel_id in self._passwords

    def validate_access(
        self, tunnel_id: str, password: str | None, source: str | None = None,
    ) -> bool:
        """Check *password* against the one stored for *tunnel_id*.

        No stored password means access is granted. When *source* is given,
        the attempt counts against its rate-limit window first and
        RateLimitExceeded is raised once the window is exhausted.
        """
        with self._lock:
            expected = self._passwords.get(tunnel_id)
            if expected is None:
                return True
            source_key = self._source_key(source) if source is not None else None
            if source_key is not None:
                self._count_attempt(source_key)
            ok = hmac.compare_digest(expected, _digest(password or ""))

        if not ok:
            attempt = AccessAttempt(
                source_key=source_key or "-",
                timestamp=self._clock(),
                success=False,
                tunnel_id=tunnel_id,
            )
            logger.warning(
                "Failed tunnel password attempt for %s from %s", tunnel_id, attempt.source_key,
            )
            if self._on_failed_attempt:
                try:
                    self._on_failed_attempt(attempt)
                except Exception:
                    logger.exception("Failed-attempt hook raised")
        return ok

    def authenticate(self, tunnel_id: str, password: str | None, source: str | None = None) -> None:
        """Like validate_access() but raises AuthenticationFailed on a mismatch."""
        if not self.validate_access(tunnel_id, password, source):
            raise AuthenticationFailed()

    # -- Rate limiting -------------------------------------------------------

    def _source_key(self, source: str) -> str:
        return hashlib.sha256(self._salt + source.encode("utf-8")).hexdigest()[:16]

    def _count_attempt(self, source_key: str) -> None:
        now = self._clock()
        window = self._windows.get(source_key)
        if window is None or now >= window.reset_at:
            window = _Window(count=0, reset_at=now + self._window)
            self._windows[source_key] = window
        if window.count >= self._max_attempts:
            logger.warning("Rate limit exceeded for source %s", source_key)
            raise RateLimitExceeded(retry_after=window.reset_at - now)
        window.count += 1

    def cleanup_rate_limits(self) -> int:
        """Drop expired rate-limit windows. Returns how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [k for k, w in self._windows.items() if now >= w.reset_at]
            for key in expired:
                del self._windows[key]
        return len(expired)

    # -- Sessions ------------------------------------------------------------

    def create_session(self, tunnel_id: str) -> str:
        """Issue a session token after a successful login."""
        token = secrets.token_urlsafe(24)
        now = self._clock()
        with self._lock:
            self._sessions = {t: s for t, s in self._sessions.items() if s.expires_at > now}
            self._sessions[token] = _Session(tunnel_id=tunnel_id, expires_at=now + self._session_ttl)
        return token

    def validate_session(self, token: str | None, tunnel_id: str) -> bool:
        if not token:
            return False
        now = self._clock()
        with self._lock:
            session = self._sessions.get(token)
            if session is None:
                return False
            if now >= session.expires_at:
                del self._sessions[token]
                return False
            return hmac.compare_digest(session.tunnel_id, tunnel_id)

    def revoke_sessions(self, tunnel_id: str) -> int:
        with self._lock:
            before = len(self._sessions)
            self._sessions = {
                token: s for token, s in self._sessions.items() if s.tunnel_id != tunnel_id
            }
            return before - len(self._sessions)

    def get_stats(self) -> dict:
        with self._lock:
            return {
                "read_only_sessions": len(self._read_only_sessions),
                "authenticated_sessions": len(self._sessions),
                "protected_tunnels": len(self._passwords),
                "rate_limited_sources": len(self._windows),
            }
