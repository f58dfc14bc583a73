"""Tests for the admin global rollup: alerts and caching."""

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from booking.domain import admin_metrics
from booking.domain.admin_metrics import (
    cache_key,
    clamp_range,
    compute_alerts,
    get_global_metrics,
)
from booking.infra.cache import TTLCache

NOW = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)


def _alerts(**overrides):
    kwargs = {
        "now": NOW,
        "webhook_total_2h": 100,
        "webhook_failed_2h": 0,
        "webhook_last_at": NOW - timedelta(minutes=1),
        "outbox_failed_2h": 0,
        "oldest_pending_age_sec": None,
        "tokens_expired": 0,
        "risk_businesses": [],
    }
    kwargs.update(overrides)
    return compute_alerts(**kwargs)


def _codes(alerts):
    return [a["code"] for a in alerts]


class TestComputeAlerts:
    def test_healthy_has_no_alerts(self):
        assert _alerts() == []

    def test_webhook_fail_rate_red(self):
        alerts = _alerts(webhook_total_2h=100, webhook_failed_2h=5)
        assert _codes(alerts) == ["WH_FAIL_RATE_HIGH"]
        assert alerts[0]["severity"] == "red"
        assert alerts[0]["detail"] == "5/100 (5%)"

    def test_fail_rate_needs_enough_events(self):
        assert _alerts(webhook_total_2h=49, webhook_failed_2h=10) == []

    def test_fail_rate_at_threshold_is_quiet(self):
        assert _alerts(webhook_total_2h=100, webhook_failed_2h=2) == []

    def test_stale_webhook(self):
        alerts = _alerts(webhook_last_at=NOW - timedelta(minutes=61))
        assert _codes(alerts) == ["WH_STALE"]
        assert alerts[0]["severity"] == "red"

    def test_no_webhook_data(self):
        alerts = _alerts(webhook_last_at=None, webhook_total_2h=0)
        assert _codes(alerts) == ["WH_NO_DATA"]
        assert alerts[0]["severity"] == "orange"

    def test_outbox_fail_spike(self):
        assert _codes(_alerts(outbox_failed_2h=11)) == ["OUTBOX_FAIL_SPIKE"]
        assert _alerts(outbox_failed_2h=10) == []

    def test_old_outbox_row(self):
        alerts = _alerts(oldest_pending_age_sec=600)
        assert _codes(alerts) == ["OUTBOX_OLD"]
        assert alerts[0]["severity"] == "orange"
        assert alerts[0]["detail"] == "Oldest queued message: 10 min"

    def test_outbox_within_five_minutes_is_quiet(self):
        assert _alerts(oldest_pending_age_sec=300) == []

    def test_expired_onboarding(self):
        alerts = _alerts(tokens_expired=6)
        assert _codes(alerts) == ["ONBOARDING_EXPIRED"]
        assert alerts[0]["severity"] == "yellow"

    def test_failing_businesses_capped(self):
        risk = [
            {
                "businessId": f"b{i}",
                "businessName": f"Biz {i}",
                "failed2h": 3,
                "pending": 0,
                "href": f"/admin/businesses/b{i}",
            }
            for i in range(10)
        ]
        alerts = _alerts(risk_businesses=risk)
        assert _codes(alerts) == ["BIZ_FAILING"] * 8
        assert alerts[0]["href"] == "/admin/businesses/b0"

    def test_pending_only_risk_business_no_alert(self):
        risk = [
            {"businessId": "b1", "businessName": None, "failed2h": 0, "pending": 25, "href": "/x"}
        ]
        assert _alerts(risk_businesses=risk) == []


class TestRange:
    @pytest.mark.parametrize("value", ["2h", "24h", "7d", "30d"])
    def test_known_ranges(self, value):
        assert clamp_range(value) == value

    @pytest.mark.parametrize("value", [None, "", "1y", "24H"])
    def test_unknown_falls_back(self, value):
        assert clamp_range(value) == "24h"

    def test_cache_key(self):
        assert cache_key("7d") == "admin-global:range:7d"


class TestGetGlobalMetrics:
    def test_cached_within_ttl(self, fake_txn):
        cache = TTLCache(ttl_seconds=15)
        payload = {"ok": True, "range": "24h"}
        with patch.object(admin_metrics, "txn", fake_txn), patch.object(
            admin_metrics, "build_global_metrics", return_value=payload
        ) as build:
            first = get_global_metrics("24h", cache=cache)
            second = get_global_metrics("24h", cache=cache)
        assert first == second == payload
        assert build.call_count == 1

    def test_ranges_cached_separately(self, fake_txn):
        cache = TTLCache(ttl_seconds=15)
        def build(cur, *, range_key, now):
            return {"range": range_key}

        with patch.object(admin_metrics, "txn", fake_txn), patch.object(
            admin_metrics, "build_global_metrics", side_effect=build
        ) as mock_build:
            assert get_global_metrics("2h", cache=cache)["range"] == "2h"
            assert get_global_metrics("7d", cache=cache)["range"] == "7d"
            assert get_global_metrics("bogus", cache=cache)["range"] == "24h"
        assert mock_build.call_count == 3

    def test_expired_entry_recomputed(self, fake_txn):
        now = [0.0]
        cache = TTLCache(ttl_seconds=15, clock=lambda: now[0])
        with patch.object(admin_metrics, "txn", fake_txn), patch.object(
            admin_metrics, "build_global_metrics", return_value={"ok": True}
        ) as build:
            get_global_metrics("24h", cache=cache)
            now[0] = 16.0
            get_global_metrics("24h", cache=cache)
        assert build.call_count == 2


class TestTTLCache:
    def test_get_set_expire(self):
        cache = TTLCache(ttl_seconds=10, clock=lambda: 0.0)
        assert cache.get("k") is None
        cache.set("k", {"v": 1})
        assert cache.get("k") == {"v": 1}
        cache.expire("k")
        assert cache.get("k") is None

    def test_per_entry_ttl(self):
        now = [0.0]
        cache = TTLCache(ttl_seconds=10, clock=lambda: now[0])
        cache.set("short", 1, ttl_seconds=1)
        cache.set("long", 2)
        now[0] = 5.0
        assert cache.get("short") is None
        assert cache.get("long") == 2
