"""Clock and business-timezone helpers."""

from datetime import date, datetime, time, timezone

import pytest

from booking.infra.time import (
    from_epoch_seconds,
    isoformat_or_none,
    local_day_bounds,
    local_to_utc,
    parse_iso_datetime,
    utc_now,
)


@pytest.fixture(autouse=True)
def _business_timezone(monkeypatch):
    monkeypatch.setenv("BOOKING_TIMEZONE", "America/Mexico_City")


def test_utc_now_is_aware():
    assert utc_now().tzinfo is timezone.utc


class TestEpochSeconds:
    def test_string_seconds(self):
        assert from_epoch_seconds("1760000000") == datetime(2025, 10, 9, 8, 53, 20, tzinfo=timezone.utc)

    @pytest.mark.parametrize("value", [None, "", "abc", "99999999999999999999"])
    def test_unusable(self, value):
        assert from_epoch_seconds(value) is None


class TestParseIso:
    def test_zulu(self):
        assert parse_iso_datetime("2026-03-10T16:00:00Z") == datetime(2026, 3, 10, 16, tzinfo=timezone.utc)

    def test_naive_taken_as_utc(self):
        assert parse_iso_datetime("2026-03-10T16:00:00").tzinfo == timezone.utc

    def test_offset_kept(self):
        parsed = parse_iso_datetime("2026-03-10T10:00:00-06:00")
        assert parsed.astimezone(timezone.utc).hour == 16

    def test_invalid(self):
        with pytest.raises(ValueError):
            parse_iso_datetime("tomorrow")


def test_local_to_utc():
    assert local_to_utc(date(2026, 3, 10), time(10, 0)) == datetime(2026, 3, 10, 16, tzinfo=timezone.utc)


def test_local_to_utc_other_zone(monkeypatch):
    monkeypatch.setenv("BOOKING_TIMEZONE", "UTC")
    assert local_to_utc(date(2026, 3, 10), time(10, 0)) == datetime(2026, 3, 10, 10, tzinfo=timezone.utc)


def test_local_day_bounds():
    start, end = local_day_bounds(date(2026, 3, 10))
    assert start == datetime(2026, 3, 10, 6, tzinfo=timezone.utc)
    assert end == datetime(2026, 3, 11, 6, tzinfo=timezone.utc)


def test_isoformat_or_none():
    assert isoformat_or_none(None) is None
    assert isoformat_or_none(datetime(2026, 3, 10, tzinfo=timezone.utc)) == "2026-03-10T00:00:00+00:00"
