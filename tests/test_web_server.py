"""Tests for the aiohttp control surface and tunnel guard middleware."""
from __future__ import annotations

import asyncio
import json

import pytest
from aiohttp.test_utils import TestClient, TestServer

from dashtunnel.access.controller import AccessController
from dashtunnel.analytics.usage_tracker import UsageTracker
from dashtunnel.core.errors import ProviderError
from dashtunnel.core.events import EventBus, TunnelHealthEvent
from dashtunnel.core.manager import TunnelManager
from dashtunnel.core.models import HealthStatus
from dashtunnel.web.server import SESSION_COOKIE, build_app
from tests.conftest import FakeProvider

VIA_TUNNEL = {"X-Forwarded-For": "10.0.0.1, 203.0.113.9", "User-Agent": "curl/8.4.0"}


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider("cloudflare")


@pytest.fixture
def parts(provider, clock):
    bus = EventBus()
    access = AccessController()
    tracker = UsageTracker(bus, clock=clock)
    manager = TunnelManager(8080, event_bus=bus, access_controller=access, usage_tracker=tracker)
    manager.register_provider(provider)
    return manager, access, tracker, bus


@pytest.fixture
async def client(parts):
    async with TestClient(TestServer(build_app(*parts))) as client:
        yield client


class TestTunnelApi:
    async def test_status_idle(self, client):
        resp = await client.get("/api/tunnel/status")
        assert resp.status == 200
        assert await resp.json() == {"active": False}

    async def test_start_and_stop(self, client):
        resp = await client.post("/api/tunnel/start", json={"provider": "auto", "ttl": 30})
        assert resp.status == 200
        info = await resp.json()
        assert info["provider"] == "cloudflare"
        assert info["expires_at"] is not None
        assert "password" not in info

        status = await (await client.get("/api/tunnel/status")).json()
        assert status["active"] is True
        assert status["info"]["url"] == info["url"]

        resp = await client.post("/api/tunnel/stop")
        assert resp.status == 200
        assert await (await client.get("/api/tunnel/status")).json() == {"active": False}

    async def test_start_without_body(self, client):
        resp = await client.post("/api/tunnel/start")
        assert resp.status == 200

    async def test_start_invalid_options(self, client):
        resp = await client.post("/api/tunnel/start", json={"ttl": "soon"})
        assert resp.status == 400

    async def test_start_rejects_unbounded_ttl(self, client, provider):
        resp = await client.post("/api/tunnel/start", json={"ttl": 1e20})
        assert resp.status == 400
        assert provider.calls == []
        assert await (await client.get("/api/tunnel/status")).json() == {"active": False}

    async def test_start_all_failed(self, client, provider):
        provider.error = ProviderError("cloudflare", "PROVIDER_EXITED", "died")
        resp = await client.post("/api/tunnel/start", json={})
        assert resp.status == 503
        data = await resp.json()
        assert data["code"] == "PROVIDER_FAILURES"
        assert data["failures"] == [{"provider": "cloudflare", "reason": "died"}]
        assert data["troubleshooting"]

    async def test_health_idle(self, client):
        resp = await client.post("/api/tunnel/health")
        assert await resp.json() == {"active": False}

    async def test_health_active(self, client):
        await client.post("/api/tunnel/start", json={})
        data = await (await client.post("/api/tunnel/health")).json()
        assert data["active"] is True
        assert data["healthy"] is True

    async def test_metrics(self, client):
        await client.get("/api/tunnel/status", headers=VIA_TUNNEL)
        resp = await client.get("/api/tunnel/metrics")
        text = await resp.text()
        assert "203.0.113.9" not in text
        assert json.loads(text)["total_visitors"] == 1


class TestTunnelGuard:
    async def test_local_requests_are_not_tracked(self, client, parts):
        _, _, tracker, _ = parts
        await client.get("/api/tunnel/status")
        assert tracker.get_metrics().total_accesses == 0

    async def test_tunnel_requests_are_tracked(self, client, parts):
        _, _, tracker, _ = parts
        await client.get("/api/tunnel/status", headers=VIA_TUNNEL)
        await client.get("/api/tunnel/status", headers=VIA_TUNNEL)
        metrics = tracker.get_metrics()
        assert metrics.total_visitors == 1
        assert metrics.total_accesses == 2
        assert metrics.visitors[0].hashed_ip == tracker.hash_ip("203.0.113.9")

    async def test_no_tracking_when_analytics_disabled(self, client, parts):
        _, _, tracker, _ = parts
        await client.post("/api/tunnel/start", json={"analytics": False})
        await client.get("/api/tunnel/status", headers=VIA_TUNNEL)
        assert tracker.get_metrics().total_accesses == 0

    async def test_mutation_over_tunnel_is_forbidden(self, client, parts):
        manager = parts[0]
        await client.post("/api/tunnel/start", json={})

        resp = await client.post("/api/tunnel/stop", headers=VIA_TUNNEL)

        assert resp.status == 403
        assert (await resp.json())["code"] == "READ_ONLY"
        assert manager.get_status().active is True

    @pytest.mark.parametrize("header", ["Cf-Connecting-Ip", "X-Tunnel-readOnly"])
    async def test_other_tunnel_headers(self, client, header):
        resp = await client.post("/api/tunnel/start", headers={header: "1.2.3.4"})
        assert resp.status == 403


class TestPasswordGate:
    async def _start_protected(self, client) -> None:
        resp = await client.post("/api/tunnel/start", json={"password": "secret"})
        assert (await resp.json())["password_protected"] is True

    async def test_tunnel_viewer_needs_session(self, client):
        await self._start_protected(client)

        resp = await client.get("/api/tunnel/status", headers=VIA_TUNNEL)

        assert resp.status == 401
        assert await resp.json() == {"error": "Access denied"}

    async def test_local_owner_is_not_gated(self, client):
        await self._start_protected(client)
        resp = await client.get("/api/tunnel/status")
        assert resp.status == 200

    async def test_login_flow(self, client):
        await self._start_protected(client)

        resp = await client.post("/api/tunnel/auth", json={"password": "wrong"}, headers=VIA_TUNNEL)
        assert resp.status == 401
        assert await resp.json() == {"error": "Access denied"}

        resp = await client.post("/api/tunnel/auth", json={"password": "secret"}, headers=VIA_TUNNEL)
        assert resp.status == 200
        token = resp.cookies[SESSION_COOKIE].value

        headers = {**VIA_TUNNEL, "Cookie": f"{SESSION_COOKIE}={token}"}
        resp = await client.get("/api/tunnel/status", headers=headers)
        assert resp.status == 200

    async def test_login_rate_limited(self, client):
        await self._start_protected(client)
        for _ in range(5):
            await client.post("/api/tunnel/auth", json={"password": "wrong"}, headers=VIA_TUNNEL)

        resp = await client.post("/api/tunnel/auth", json={"password": "secret"}, headers=VIA_TUNNEL)

        assert resp.status == 401
        assert await resp.json() == {"error": "Access denied"}
        assert "Retry-After" not in resp.headers

    async def test_rate_limit_ignores_client_supplied_hops(self, client):
        await self._start_protected(client)
        for i in range(5):
            headers = {"X-Forwarded-For": f"10.9.9.{i}, 198.51.100.7"}
            await client.post("/api/tunnel/auth", json={"password": "wrong"}, headers=headers)

        headers = {"X-Forwarded-For": "10.9.9.99, 198.51.100.7"}
        resp = await client.post("/api/tunnel/auth", json={"password": "secret"}, headers=headers)
        assert resp.status == 401

        headers = {"X-Forwarded-For": "10.9.9.0, 198.51.100.8"}
        resp = await client.post("/api/tunnel/auth", json={"password": "secret"}, headers=headers)
        assert resp.status == 200

    async def test_auth_without_tunnel(self, client):
        resp = await client.post("/api/tunnel/auth", json={"password": "x"})
        assert resp.status == 401

    async def test_sessions_end_with_tunnel(self, client):
        await self._start_protected(client)
        resp = await client.post("/api/tunnel/auth", json={"password": "secret"}, headers=VIA_TUNNEL)
        token = resp.cookies[SESSION_COOKIE].value
        await client.post("/api/tunnel/stop")
        await self._start_protected(client)

        headers = {**VIA_TUNNEL, "Cookie": f"{SESSION_COOKIE}={token}"}
        resp = await client.get("/api/tunnel/status", headers=headers)
        assert resp.status == 401


class TestEventStream:
    async def _next_event(self, resp) -> dict:
        while True:
            line = await asyncio.wait_for(resp.content.readline(), timeout=2)
            if line.startswith(b"data: "):
                return json.loads(line[len(b"data: "):])

    async def test_relays_manager_events(self, client):
        resp = await client.get("/api/tunnel/events")
        assert resp.headers["Content-Type"] == "text/event-stream"

        await client.post("/api/tunnel/start", json={})

        event = await self._next_event(resp)
        assert event["type"] == "tunnel:started"
        assert event["data"]["provider"] == "cloudflare"
        assert "readOnly" not in event
        resp.close()

    async def test_tunnel_viewer_stream(self, client, parts):
        _, access, _, bus = parts
        resp = await client.get("/api/tunnel/events", headers=VIA_TUNNEL)
        assert access.get_stats()["read_only_sessions"] == 1

        bus.publish(TunnelHealthEvent(health=HealthStatus(healthy=True, latency=0.1)))

        event = await self._next_event(resp)
        assert event == {
            "type": "tunnel:health",
            "data": {"healthy": True, "latency": 0.1, "restarted": False},
            "readOnly": True,
        }
        resp.close()
