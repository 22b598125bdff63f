import asyncio
from datetime import date

import httpx
import pytest

from backcountry.cache import SnapshotCache
from backcountry.geo import Coordinate
from backcountry.providers import RequestCancelled
from backcountry.snowpack import (
    Observation,
    SnowpackService,
    classify_against_average,
    compare_to_historical_baseline,
    describe_comparison,
    observations_from_awdb,
    same_day_in_year,
)

from conftest import NOW, mock_client

TARGET = date(2026, 1, 15)


def history(current=8.0, past=10.0, years=range(2016, 2026)):
    obs = [Observation(date(y, 1, 15), past) for y in years]
    return obs + [Observation(TARGET, current)]


# ---------- comparator ----------
def test_current_eight_against_average_ten_is_below_average():
    cmp = compare_to_historical_baseline(history(), TARGET)
    assert cmp.current_value == 8.0
    assert cmp.average_value == 10.0
    assert cmp.sample_count == 10
    assert cmp.max_offset_days == 0
    assert cmp.status == "below_average"
    assert cmp.percent_of_average == 80


def test_above_and_at_average():
    assert compare_to_historical_baseline(history(current=12.0), TARGET).status == "above_average"
    assert compare_to_historical_baseline(history(current=10.0), TARGET).status == "at_average"


def test_only_observations_within_window_before_the_day_count():
    obs = [
        Observation(date(2025, 1, 10), 6.0),   # 5 days before, counted
        Observation(date(2024, 1, 7), 100.0),  # 8 days before, outside window
        Observation(date(2023, 1, 16), 100.0),  # after the day, ignored
        Observation(TARGET, 6.0),
    ]
    cmp = compare_to_historical_baseline(obs, TARGET)
    assert cmp.sample_count == 1
    assert cmp.average_value == 6.0
    assert cmp.max_offset_days == 5
    assert cmp.status == "at_average"


def test_closest_sample_in_window_wins():
    obs = [Observation(date(2025, 1, 12), 1.0), Observation(date(2025, 1, 14), 3.0), Observation(TARGET, 3.0)]
    cmp = compare_to_historical_baseline(obs, TARGET)
    assert cmp.average_value == 3.0
    assert cmp.max_offset_days == 1


def test_lookback_is_bounded():
    cmp = compare_to_historical_baseline(history(years=range(2000, 2026)), TARGET, lookback_years=3)
    assert cmp.sample_count == 3


def test_no_history_is_unknown():
    cmp = compare_to_historical_baseline([Observation(TARGET, 5.0)], TARGET)
    assert cmp.status == "unknown"
    assert cmp.average_value is None
    assert cmp.current_value == 5.0
    assert cmp.sample_count == 0


def test_leap_day_maps_to_feb_28():
    assert same_day_in_year(date(2024, 2, 29), 2023) == date(2023, 2, 28)
    assert same_day_in_year(date(2024, 2, 29), 2020) == date(2020, 2, 29)
    cmp = compare_to_historical_baseline([Observation(date(2023, 2, 28), 5.0)], date(2024, 2, 29))
    assert cmp.sample_count == 1


def test_zero_average_is_unknown():
    assert classify_against_average(3.0, 0.0) == ("unknown", None)
    assert classify_against_average(None, 4.0) == ("unknown", None)


def test_describe_comparison():
    cmp = compare_to_historical_baseline(history(), TARGET)
    assert describe_comparison("SWE", cmp) == "Current SWE is below average for this date (80% of historical average)."
    assert describe_comparison(None, cmp).startswith("Historical average comparison unavailable")


def test_observations_from_awdb_filters_and_sorts():
    obs = observations_from_awdb([
        {"date": "2026-01-02 00:00", "value": 4},
        {"date": "2026-01-01", "value": 3},
        {"date": "bad", "value": 1},
        {"date": "2026-01-03", "value": None},
        "junk",
    ])
    assert [o.value for o in obs] == [3.0, 4.0]


# ---------- acquisition ----------
STATION = {
    "stationTriplet": "366:UT:SNTL",
    "stationId": "366",
    "name": "Brighton",
    "networkCode": "SNTL",
    "stateCode": "UT",
    "latitude": 40.6,
    "longitude": -111.58,
    "elevation": 8750,
}


def awdb_data():
    def series(current, past):
        values = [{"date": f"{y}-01-15", "value": past} for y in range(2016, 2026)]
        return values + [{"date": "2026-01-15", "value": current}]

    return [{
        "stationTriplet": STATION["stationTriplet"],
        "data": [
            {"stationElement": {"elementCode": "WTEQ"}, "values": series(8.0, 10.0)},
            {"stationElement": {"elementCode": "SNWD"}, "values": series(40.0, 50.0)},
        ],
    }]


NOHRSC = {"results": [
    {"layerId": 3, "attributes": {"Service Pixel Value": "1.2"}},
    {"layerId": 7, "attributes": {"Service Pixel Value": "250"}},
]}


class Upstream:
    def __init__(self, nohrsc=NOHRSC, stations=(STATION,)):
        self.nohrsc = nohrsc
        self.stations = list(stations)
        self.station_calls = 0

    def __call__(self, request):
        if request.url.host == "mapservices.weather.noaa.gov":
            if self.nohrsc is None:
                return httpx.Response(500, text="raster down")
            return httpx.Response(200, json=self.nohrsc)
        if request.url.path.endswith("/stations"):
            self.station_calls += 1
            return httpx.Response(200, json=self.stations)
        if request.url.path.endswith("/data"):
            assert request.url.params["stationTriplets"] == STATION["stationTriplet"]
            return httpx.Response(200, json=awdb_data())
        return httpx.Response(404)


def fetch(service, upstream, coord=Coordinate(40.6, -111.6)):
    async def run():
        async with mock_client(upstream) as client:
            return await service.fetch(client, coord, selected_date="2026-01-15", now=NOW)

    return asyncio.run(run())


def service():
    return SnowpackService(SnapshotCache("snotel:test", 3600))


def test_report_combines_snotel_and_nohrsc():
    report = fetch(service(), Upstream())
    assert report.status == "ok"
    assert report.snotel.station_name == "Brighton"
    assert report.snotel.swe_in == 8.0
    assert report.snotel.snow_depth_in == 40.0
    assert report.snotel.distance_km < 5
    assert report.overall_metric == "SWE"
    assert report.overall_comparison.status == "below_average"
    assert report.nohrsc.snow_depth_in == 47.2
    assert report.nohrsc.swe_in == 9.8
    assert "below average" in report.summary


def test_station_list_is_cached():
    svc = service()
    upstream = Upstream()
    fetch(svc, upstream)
    fetch(svc, upstream)
    assert upstream.station_calls == 1


def test_raster_failure_gives_partial_report():
    report = fetch(service(), Upstream(nohrsc=None))
    assert report.status == "partial"
    assert report.nohrsc is None
    assert report.snotel is not None


def test_implausible_raster_values_are_discarded():
    raster = {"results": [
        {"layerId": 3, "attributes": {"Service Pixel Value": "-9999"}},
        {"layerId": 7, "attributes": {"Service Pixel Value": "40"}},
    ]}
    report = fetch(service(), Upstream(nohrsc=raster))
    assert report.nohrsc.snow_depth_in is None
    assert report.nohrsc.swe_in == 1.6
    assert "Implausible depth" in report.nohrsc.note


def test_far_station_and_no_raster_is_unavailable():
    far = dict(STATION, latitude=30.0, longitude=-100.0)
    report = fetch(service(), Upstream(nohrsc={"results": []}, stations=(far,)))
    assert report.status == "unavailable"


def test_unexpected_station_error_keeps_raster_sample():
    svc = service()

    async def broken(*args, **kwargs):
        raise ValueError("station payload changed shape")

    svc.fetch_snotel = broken
    report = fetch(svc, Upstream())
    assert report.status == "partial"
    assert report.snotel is None
    assert report.nohrsc.snow_depth_in == 47.2


def test_cancellation_is_not_swallowed():
    svc = service()

    async def cancelled(*args, **kwargs):
        raise RequestCancelled("caller went away")

    svc.fetch_nohrsc = cancelled
    with pytest.raises(RequestCancelled):
        fetch(svc, Upstream())
