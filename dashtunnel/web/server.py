"""Tunnel control surface — REST API + SSE, and the tunnel guard middleware.

Requests that arrive through a public tunnel are recognised by the
forwarding headers the tunnel backends add. Those requests are tracked,
held to read-only access and, when the tunnel has a password, required to
carry a session cookie obtained from the login endpoint.
"""
from __future__ import annotations

import asyncio
import json
import logging
from typing import TYPE_CHECKING

from aiohttp import web

from dashtunnel.access.controller import AUTH_PATH, RequestDescriptor
from dashtunnel.analytics.usage_tracker import AccessEvent
from dashtunnel.core.errors import (
    AccessDenied,
    AllProvidersFailedError,
    ReadOnlyViolation,
    troubleshooting,
)
from dashtunnel.core.events import RELAYED_EVENT_KINDS, RELAYED_EVENT_TYPES, EventBus
from dashtunnel.core.models import TunnelOptions

if TYPE_CHECKING:
    from dashtunnel.access.controller import AccessController
    from dashtunnel.analytics.usage_tracker import UsageTracker
    from dashtunnel.core.manager import TunnelManager

logger = logging.getLogger(__name__)

SESSION_COOKIE = "dashtunnel_session"
TUNNEL_HEADERS = ("X-Forwarded-For", "Cf-Connecting-Ip", "X-Tunnel-readOnly")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _is_tunnel_origin(request: web.Request) -> bool:
    return any(header in request.headers for header in TUNNEL_HEADERS)


def _client_ip(request: web.Request) -> str:
    """Remote viewer address as seen by the tunnel edge.

    The edge appends the peer it accepted to ``X-Forwarded-For``, so only the
    rightmost entry is trusted; anything left of it came from the client.
    """
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        hop = forwarded.rsplit(",", 1)[-1].strip()
        if hop:
            return hop
    cf_ip = request.headers.get("Cf-Connecting-Ip")
    if cf_ip:
        return cf_ip.strip()
    return request.remote or "unknown"


def _denied() -> web.Response:
    return web.json_response({"error": "Access denied"}, status=401)


def _guard(request: web.Request) -> None:
    """Checks for one tunnel-origin request. Raises on rejection."""
    access: AccessController = request.app["access"]
    manager: TunnelManager = request.app["manager"]
    tracker: UsageTracker | None = request.app["tracker"]

    options = manager.last_options
    if tracker is not None and (options is None or options.analytics):
        tracker.track_access(AccessEvent(
            ip=_client_ip(request),
            user_agent=request.headers.get("User-Agent", ""),
            path=request.path,
        ))

    access.enforce_read_only(RequestDescriptor(
        method=request.method, path=request.path, tunnel_origin=True,
    ))

    tunnel_id = manager.tunnel_id
    if request.path == AUTH_PATH or tunnel_id is None or not access.has_password(tunnel_id):
        return
    if not access.validate_session(request.cookies.get(SESSION_COOKIE), tunnel_id):
        raise AccessDenied()


@web.middleware
async def tunnel_guard(request: web.Request, handler) -> web.StreamResponse:
    try:
        if _is_tunnel_origin(request):
            _guard(request)
        return await handler(request)
    except ReadOnlyViolation:
        return web.json_response(
            {"error": "This tunnel is read-only", "code": ReadOnlyViolation.code}, status=403,
        )
    except AccessDenied:
        # Rate-limited and wrong-password attempts look the same to the client.
        return _denied()


# ---------------------------------------------------------------------------
# Route handlers
# ---------------------------------------------------------------------------

async def _handle_status(request: web.Request) -> web.Response:
    """GET /api/tunnel/status"""
    manager: TunnelManager = request.app["manager"]
    return web.json_response(manager.get_status().to_dict())


async def _handle_start(request: web.Request) -> web.Response:
    """POST /api/tunnel/start — body is a TunnelOptions JSON object."""
    manager: TunnelManager = request.app["manager"]
    try:
        body = await request.json() if request.can_read_body else {}
        options = TunnelOptions.from_dict(body or {})
    except (ValueError, TypeError, AttributeError):
        return web.json_response({"error": "Invalid tunnel options"}, status=400)

    try:
        info = await manager.start_tunnel(options)
    except AllProvidersFailedError as e:
        return web.json_response({
            "error": str(e),
            "code": e.code,
            "failures": [{"provider": name, "reason": reason} for name, reason in e.failures],
            "troubleshooting": troubleshooting(e.code),
        }, status=503)
    return web.json_response(info.to_dict())


async def _handle_stop(request: web.Request) -> web.Response:
    """POST /api/tunnel/stop"""
    manager: TunnelManager = request.app["manager"]
    await manager.stop_tunnel()
    return web.json_response({"ok": True})


async def _handle_health(request: web.Request) -> web.Response:
    """POST /api/tunnel/health — probe now, restarting once if unhealthy."""
    manager: TunnelManager = request.app["manager"]
    health = await manager.check_tunnel_health()
    if health is None:
        return web.json_response({"active": False})
    return web.json_response({"active": manager.get_status().active, **health.to_dict()})


async def _handle_metrics(request: web.Request) -> web.Response:
    """GET /api/tunnel/metrics — anonymized export."""
    tracker: UsageTracker | None = request.app["tracker"]
    if tracker is None:
        return web.json_response({"error": "Analytics disabled"}, status=404)
    return web.Response(text=tracker.export_metrics(), content_type="application/json")


async def _handle_auth(request: web.Request) -> web.Response:
    """POST /api/tunnel/auth — exchange the tunnel password for a session cookie."""
    manager: TunnelManager = request.app["manager"]
    access: AccessController = request.app["access"]

    tunnel_id = manager.tunnel_id
    if tunnel_id is None:
        raise AccessDenied()
    try:
        body = await request.json()
    except ValueError:
        body = {}
    password = body.get("password") if isinstance(body, dict) else None

    access.authenticate(tunnel_id, password, source=_client_ip(request))
    token = access.create_session(tunnel_id)
    response = web.json_response({"ok": True})
    response.set_cookie(SESSION_COOKIE, token, httponly=True, samesite="Strict", path="/")
    return response


# -- SSE --------------------------------------------------------------------

async def _close_streams(app: web.Application) -> None:
    """Wake every open SSE stream so shutdown does not wait on them."""
    for queue in list(app["sse_queues"]):
        queue.put_nowait(None)


async def _handle_sse(request: web.Request) -> web.StreamResponse:
    """GET /api/tunnel/events — Server-Sent Events relay of tunnel events."""
    event_bus: EventBus = request.app["event_bus"]
    access: AccessController = request.app["access"]
    read_only = _is_tunnel_origin(request)

    # Subscribe before the headers go out so no event is missed.
    merged: asyncio.Queue = asyncio.Queue()
    request.app["sse_queues"].add(merged)
    subscriptions = [(et, event_bus.subscribe(et)) for et in RELAYED_EVENT_TYPES]

    async def _forward(q: asyncio.Queue) -> None:
        while True:
            await merged.put(await q.get())

    tasks = [asyncio.create_task(_forward(q)) for _, q in subscriptions]
    session_id = f"sse-{id(request):x}"
    if read_only:
        access.mark_read_only_session(session_id)

    response = web.StreamResponse(
        status=200,
        reason="OK",
        headers={
            "Content-Type": "text/event-stream",
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
    try:
        await response.prepare(request)
        while True:
            ev = await merged.get()
            if ev is None:
                break
            message: str | None = json.dumps(ev.to_dict(), ensure_ascii=False)
            if access.is_read_only_session(session_id):
                message = access.filter_message(message, tagged_types=RELAYED_EVENT_KINDS)
                if message is None:
                    continue
            await response.write(f"data: {message}\n\n".encode("utf-8"))
    except (asyncio.CancelledError, ConnectionResetError):
        pass
    finally:
        for t in tasks:
            t.cancel()
        for event_type, q in subscriptions:
            event_bus.unsubscribe(event_type, q)
        access.release_session(session_id)
        request.app["sse_queues"].discard(merged)

    return response


# ---------------------------------------------------------------------------
# App factory & server class
# ---------------------------------------------------------------------------

def build_app(
    manager: TunnelManager,
    access_controller: AccessController,
    usage_tracker: UsageTracker | None,
    event_bus: EventBus,
) -> web.Application:
    app = web.Application(middlewares=[tunnel_guard])
    app["manager"] = manager
    app["access"] = access_controller
    app["tracker"] = usage_tracker
    app["event_bus"] = event_bus
    app["sse_queues"] = set()
    app.on_shutdown.append(_close_streams)

    app.router.add_get("/api/tunnel/status", _handle_status)
    app.router.add_post("/api/tunnel/start", _handle_start)
    app.router.add_post("/api/tunnel/stop", _handle_stop)
    app.router.add_post("/api/tunnel/health", _handle_health)
    app.router.add_get("/api/tunnel/metrics", _handle_metrics)
    app.router.add_get("/api/tunnel/events", _handle_sse)
    app.router.add_post(AUTH_PATH, _handle_auth)

    return app


class ControlServer:
    """Serves the control app on a local port; tunnels forward to it."""

    def __init__(self, app: web.Application, host: str = "127.0.0.1", port: int = 7777) -> None:
        self._app = app
        self._host = host
        self._port = port
        self._runner: web.AppRunner | None = None

    async def start(self) -> None:
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._host, self._port)
        await site.start()
        logger.info("Control server running at http://%s:%d", self._host, self._port)

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            logger.info("Control server stopped")
