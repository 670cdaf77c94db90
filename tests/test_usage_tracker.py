from __future__ import annotations

import json

import pytest

from dashtunnel.analytics.usage_tracker import AccessEvent, UsageTracker, classify_user_agent
from dashtunnel.core.events import EventBus, MetricsUpdatedEvent, VisitorNewEvent

CHROME = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0 Safari/537.36"
)
IPHONE = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.0 Mobile/15E148 Safari/604.1"
)


class TestClassification:
    @pytest.mark.parametrize("ua, expected", [
        ("Googlebot/2.1 (+http://www.google.com/bot.html)", "bot"),
        ("curl/8.4.0", "bot"),
        (IPHONE, "mobile"),
        ("Mozilla/5.0 (iPad; CPU OS 17_0 like Mac OS X) Safari/604.1", "tablet"),
        (CHROME + " Edg/120.0", "edge"),
        (CHROME, "chrome"),
        ("Mozilla/5.0 (X11; Linux x86_64; rv:121.0) Gecko/20100101 Firefox/121.0", "firefox"),
        ("Mozilla/5.0 (Macintosh) AppleWebKit/605.1.15 Version/17.0 Safari/605.1.15", "safari"),
        ("", "other"),
    ])
    def test_rules(self, ua, expected):
        assert classify_user_agent(ua) == expected

    def test_bot_wins_over_mobile(self):
        assert classify_user_agent("Mobile Googlebot") == "bot"


class TestTracking:
    def test_same_ip_is_one_visitor(self, clock):
        tracker = UsageTracker(clock=clock)
        tracker.track_access(AccessEvent("10.0.0.1", CHROME, "/a"))
        tracker.track_access(AccessEvent("10.0.0.1", CHROME, "/b"))

        metrics = tracker.get_metrics()
        assert metrics.total_visitors == 1
        assert metrics.total_accesses == 2
        assert metrics.visitors[0].access_count == 2

    def test_hash_is_stable_and_one_way(self):
        tracker = UsageTracker()
        assert tracker.hash_ip("10.0.0.1") == tracker.hash_ip("10.0.0.1")
        assert tracker.hash_ip("10.0.0.1") != tracker.hash_ip("10.0.0.2")
        assert "10.0.0.1" not in tracker.hash_ip("10.0.0.1")

    def test_first_and_last_seen(self, clock):
        tracker = UsageTracker(clock=clock)
        start = clock()
        tracker.track_access(AccessEvent("10.0.0.1", CHROME, "/"))
        clock.advance(30)
        tracker.track_access(AccessEvent("10.0.0.1", CHROME, "/"))

        visitor = tracker.get_metrics().visitors[0]
        assert visitor.first_seen == start
        assert visitor.last_seen == start + 30

    def test_explicit_timestamp(self, clock):
        tracker = UsageTracker(clock=clock)
        tracker.track_access(AccessEvent("10.0.0.1", CHROME, "/", timestamp=123.0))
        assert tracker.get_metrics().visitors[0].first_seen == 123.0

    def test_visitors_sorted_by_last_seen(self, clock):
        tracker = UsageTracker(clock=clock)
        tracker.track_access(AccessEvent("10.0.0.1", CHROME, "/"))
        clock.advance(1)
        tracker.track_access(AccessEvent("10.0.0.2", CHROME, "/"))
        visitors = tracker.get_metrics().visitors
        assert visitors[0].last_seen > visitors[1].last_seen

    def test_get_visitor(self, clock):
        tracker = UsageTracker(clock=clock)
        tracker.track_access(AccessEvent("10.0.0.1", CHROME, "/"))
        visitor_id = tracker.get_metrics().visitors[0].id
        assert tracker.get_visitor(visitor_id).access_count == 1
        assert tracker.get_visitor("missing") is None

    def test_events(self, clock):
        bus = EventBus()
        new = bus.subscribe(VisitorNewEvent)
        updated = bus.subscribe(MetricsUpdatedEvent)
        tracker = UsageTracker(bus, clock=clock)

        tracker.track_access(AccessEvent("10.0.0.1", IPHONE, "/"))
        tracker.track_access(AccessEvent("10.0.0.1", IPHONE, "/"))

        assert new.qsize() == 1
        assert new.get_nowait().user_agent_class == "mobile"
        assert updated.qsize() == 2


class TestActivity:
    def test_active_count_is_computed_on_read(self, clock):
        tracker = UsageTracker(active_timeout=300, clock=clock)
        tracker.track_access(AccessEvent("10.0.0.1", CHROME, "/"))
        assert tracker.get_active_visitor_count() == 1

        clock.advance(300)

        assert tracker.get_active_visitor_count() == 0
        assert tracker.get_metrics().total_visitors == 1

    def test_set_active_timeout(self, clock):
        tracker = UsageTracker(clock=clock)
        tracker.track_access(AccessEvent("10.0.0.1", CHROME, "/"))
        clock.advance(60)
        tracker.set_active_timeout(30)
        assert tracker.get_active_visitor_count() == 0

    def test_cleanup(self, clock):
        tracker = UsageTracker(clock=clock)
        tracker.track_access(AccessEvent("10.0.0.1", CHROME, "/"))
        clock.advance(100)
        tracker.track_access(AccessEvent("10.0.0.2", CHROME, "/"))

        assert tracker.cleanup_inactive_visitors(max_age=50) == 1
        assert tracker.get_metrics().total_visitors == 1
        assert tracker.cleanup_inactive_visitors(max_age=50) == 0

    def test_clear(self, clock):
        tracker = UsageTracker(clock=clock)
        tracker.track_access(AccessEvent("10.0.0.1", CHROME, "/"))
        tracker.clear_metrics()
        metrics = tracker.get_metrics()
        assert metrics.total_visitors == 0
        assert metrics.total_accesses == 0
        assert metrics.visitors == []


class TestExport:
    def test_export_has_no_raw_identifiers(self, clock):
        tracker = UsageTracker(clock=clock)
        tracker.track_access(AccessEvent("203.0.113.9", CHROME, "/"))

        exported = tracker.export_metrics()

        assert "203.0.113.9" not in exported
        assert CHROME not in exported
        assert tracker.hash_ip("203.0.113.9") not in exported
        data = json.loads(exported)
        assert data["total_visitors"] == 1
        assert data["visitors"][0]["user_agent_class"] == "chrome"
        assert "hashed_ip" not in data["visitors"][0]
        assert "user_agent" not in data["visitors"][0]
