"""Process-wide tracker for tunnel backend subprocesses.

Backend CLIs (cloudflared, ngrok) outlive a crashed event loop unless
somebody kills them. Spawned PIDs are registered here and an ``atexit``
handler sends SIGTERM to whatever is still tracked when the interpreter
exits, including exits through an unhandled exception.
"""
from __future__ import annotations

import atexit
import logging
import os
import signal
import threading

logger = logging.getLogger(__name__)

_tracked_pids: set[int] = set()
_lock = threading.Lock()


def track(pid: int) -> None:
    """Register a running backend PID."""
    with _lock:
        _tracked_pids.add(pid)


def untrack(pid: int) -> None:
    """Unregister a PID that was stopped normally."""
    with _lock:
        _tracked_pids.discard(pid)


def tracked() -> frozenset[int]:
    with _lock:
        return frozenset(_tracked_pids)


def kill_all() -> None:
    """Send SIGTERM to all tracked PIDs (called by atexit)."""
    with _lock:
        pids = list(_tracked_pids)
        _tracked_pids.clear()
    for pid in pids:
        try:
            os.kill(pid, signal.SIGTERM)
            logger.debug("Sent SIGTERM to tracked PID %d", pid)
        except ProcessLookupError:
            pass
        except OSError as e:
            logger.debug("Failed to signal PID %d: %s", pid, e)


# SIGKILL of this process cannot be caught; backends then die with their pipes.
atexit.register(kill_all)
