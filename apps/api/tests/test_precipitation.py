import asyncio
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from backcountry.cache import SnapshotCache
from backcountry.geo import Coordinate
from backcountry.precipitation import (
    SOURCE_ARCHIVE,
    SOURCE_CACHED,
    SOURCE_LIVE,
    SOURCE_STALE,
    SOURCE_ZEROED,
    HourlySeries,
    PrecipitationService,
    accumulate,
    accumulation_window,
    build_precipitation_signal,
    cm_to_in,
    mm_to_in,
    zero_fallback,
)

from conftest import NOW, mock_client

T0 = datetime(2026, 1, 15, 0, tzinfo=timezone.utc)
COORD = Coordinate(40.6, -111.6)


def hours(n):
    return [T0 + timedelta(hours=i) for i in range(n)]


def payload(n=72, rain=0.5, snow=0.2):
    return {
        "timezone": "GMT",
        "hourly": {
            "time": [(T0 + timedelta(hours=i)).strftime("%Y-%m-%dT%H:%M") for i in range(n)],
            "precipitation": [rain + snow for _ in range(n)],
            "rain": [rain] * n,
            "snowfall": [snow] * n,
        },
    }


# ---------- accumulate ----------
def test_rolling_window_includes_anchor_excludes_start():
    s = HourlySeries([T0, T0 + timedelta(hours=1)], [1.0, 2.0])
    assert accumulate(s, T0 + timedelta(hours=1), 2, "rolling") == 3.0
    assert accumulate(s, T0 + timedelta(hours=1), 1, "rolling") == 2.0


def test_forward_window_includes_anchor_excludes_end():
    s = HourlySeries(hours(4), [1.0, 2.0, 4.0, 8.0])
    assert accumulate(s, T0 + timedelta(hours=1), 2, "forward") == 6.0


def test_zero_samples_is_none_not_zero():
    s = HourlySeries(hours(3), [1.0, 1.0, 1.0])
    assert accumulate(s, T0 + timedelta(days=3), 12, "rolling") is None
    assert accumulate(HourlySeries([], []), T0, 12) is None


def test_missing_and_negative_values_count_as_samples_but_add_nothing():
    s = HourlySeries(hours(3), [None, -1.0, float("nan")])
    assert accumulate(s, T0 + timedelta(hours=2), 3, "rolling") == 0.0


def test_gaps_in_series_are_tolerated():
    s = HourlySeries([T0, T0 + timedelta(hours=5)], [1.0, 2.0])
    assert accumulate(s, T0 + timedelta(hours=5), 3, "rolling") == 2.0


def test_bad_window_and_mode():
    s = HourlySeries(hours(2), [1.0, 1.0])
    assert accumulate(s, T0, 0) is None
    with pytest.raises(ValueError):
        accumulate(s, T0, 1, "sideways")


def test_series_rejects_mismatched_lengths():
    with pytest.raises(ValueError):
        HourlySeries(hours(2), [1.0])


def test_from_payload_drops_unparsable_times():
    s = HourlySeries.from_payload(["2026-01-15T00:00", "garbage", "2026-01-15T02:00"], [1, 2, 3])
    assert len(s) == 2
    assert s.value == [1, 3]


def test_accumulation_window_record():
    w = accumulation_window(HourlySeries(hours(2), [1.0, 2.0]), T0 + timedelta(hours=1), 2)
    assert w.total == 3.0
    assert w.window_hours == 2


def test_unit_conversions():
    assert mm_to_in(25.4) == 1.0
    assert cm_to_in(2.54) == 1.0
    assert mm_to_in(None) is None


# ---------- signal ----------
def test_build_signal_totals_and_expected_window():
    anchor = T0 + timedelta(hours=36)
    sig = build_precipitation_signal(payload(), anchor, 6, now=anchor)
    assert sig.status == "ok"
    assert sig.anchor_time == anchor
    assert sig.totals.rain_past_12h_mm == 6.0
    assert sig.totals.rain_past_24h_mm == 12.0
    assert sig.totals.rain_past_48h_mm == 18.5
    assert sig.totals.snow_past_24h_cm == 4.8
    assert sig.totals.snow_past_24h_in == 1.89
    assert sig.expected.status == "ok"
    assert sig.expected.rain_window_mm == 3.0
    assert sig.expected.travel_window_hours == 6
    assert sig.mode == "observed_recent"


def test_rain_falls_back_to_precipitation_when_rain_missing():
    p = payload()
    p["hourly"]["rain"] = [None] * 72
    sig = build_precipitation_signal(p, T0 + timedelta(hours=36), 6, now=T0 + timedelta(hours=36))
    assert sig.totals.rain_past_12h_mm == 8.4


def test_empty_payload_zeroes_out():
    sig = build_precipitation_signal({"hourly": {}}, NOW, 12, now=NOW)
    assert sig.fallback_mode == "zeroed_totals"
    assert sig.source == SOURCE_ZEROED


def test_zero_fallback_shape():
    sig = zero_fallback(NOW, 30, NOW, "boom")
    assert sig.status == "partial"
    assert sig.expected.travel_window_hours == 24
    assert sig.expected.status == "no_data"
    assert "boom" in sig.note


def test_archive_payload_has_no_expected_window_for_future_start():
    now = T0 + timedelta(hours=30)
    sig = build_precipitation_signal(payload(), now + timedelta(hours=20), 6, now=now, source=SOURCE_ARCHIVE)
    assert sig.expected.status == "no_data"
    assert "historical only" in sig.expected.note
    assert sig.mode == "projected_for_selected_start"


# ---------- acquisition chain ----------
class Upstream:
    def __init__(self, live=None, archive=None):
        self.live = live
        self.archive = archive
        self.hosts = []

    def __call__(self, request):
        self.hosts.append(request.url.host)
        body = self.archive if request.url.host == "archive-api.open-meteo.com" else self.live
        if body is None:
            return httpx.Response(503, text="unavailable")
        return httpx.Response(200, json=body)


def run_fetch(service, upstream, now, target=None):
    async def run():
        async with mock_client(upstream) as client:
            return await service.fetch(client, COORD, target_time=target, travel_window_hours=6, now=now)

    return asyncio.run(run())


def test_live_feed_is_used_and_cached():
    now = T0 + timedelta(hours=36)
    service = PrecipitationService(SnapshotCache("precip:test", 1800))
    sig = run_fetch(service, Upstream(live=payload()), now)
    assert sig.source == SOURCE_LIVE
    assert service.cache.stale(COORD.cache_key()) is not None


def test_fresh_cache_used_when_live_fails():
    now = T0 + timedelta(hours=36)
    service = PrecipitationService(SnapshotCache("precip:test", 1800))
    run_fetch(service, Upstream(live=payload()), now)
    upstream = Upstream()
    sig = run_fetch(service, upstream, now + timedelta(minutes=10))
    assert sig.source == SOURCE_CACHED
    assert "archive-api.open-meteo.com" not in upstream.hosts


def test_archive_used_when_live_fails_and_cache_is_old():
    now = T0 + timedelta(hours=36)
    service = PrecipitationService(SnapshotCache("precip:test", 1800))
    run_fetch(service, Upstream(live=payload()), now)
    sig = run_fetch(service, Upstream(archive=payload()), now + timedelta(hours=2))
    assert sig.source == SOURCE_ARCHIVE


def test_stale_cache_used_when_archive_also_fails():
    now = T0 + timedelta(hours=36)
    service = PrecipitationService(SnapshotCache("precip:test", 1800))
    run_fetch(service, Upstream(live=payload()), now)
    sig = run_fetch(service, Upstream(), now + timedelta(hours=2))
    assert sig.source == SOURCE_STALE
    assert sig.status == "ok"


def test_everything_down_gives_zeroed_totals():
    service = PrecipitationService(SnapshotCache("precip:test", 1800))
    sig = run_fetch(service, Upstream(), NOW)
    assert sig.fallback_mode == "zeroed_totals"
    assert sig.status == "partial"


def test_archive_skipped_for_future_start():
    service = PrecipitationService(SnapshotCache("precip:test", 1800))
    upstream = Upstream(archive=payload())
    sig = run_fetch(service, upstream, NOW, target=NOW + timedelta(days=2))
    assert "archive-api.open-meteo.com" not in upstream.hosts
    assert sig.fallback_mode == "zeroed_totals"
