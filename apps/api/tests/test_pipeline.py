import asyncio
from datetime import timedelta

import httpx
import pytest

from backcountry.alerts import AirQualitySignal, AlertsSignal
from backcountry.avalanche import AvalancheSignal
from backcountry.pipeline import SafetyPipeline, assess
from backcountry.precipitation import PrecipitationSignal, PrecipTotals
from backcountry.providers import (
    InvalidCoordinateError,
    ProviderError,
    RequestCancelled,
    SignalProvider,
    ZoneLayerError,
)
from backcountry.snowpack import SnowpackReport
from backcountry.weather import TrendPoint, WeatherRecord

from conftest import NOW, mock_client


class Fixed(SignalProvider):
    """Returns a canned record, or raises a canned error."""

    def __init__(self, name, value, unavailable):
        self.name = name
        self.value = value
        self._unavailable = unavailable
        self.calls = []

    def unavailable(self, status="unavailable"):
        return self._unavailable(status)

    async def fetch(self, client, coord, **kwargs):
        self.calls.append(kwargs)
        if isinstance(self.value, BaseException):
            raise self.value
        return self.value


def weather(**kw):
    base = dict(
        temp=40.0, feels_like=34.0, wind_speed=35.0, wind_gust=50.0, precip_chance=0.0,
        description="Partly Cloudy", is_daytime=True, provider="NOAA",
        issued_time=NOW - timedelta(hours=1), forecast_start_time=NOW + timedelta(hours=1),
        trend=tuple(
            TrendPoint(time=NOW + timedelta(hours=1 + i), temp=40.0, wind=10.0, gust=15.0, precip_chance=0.0)
            for i in range(8)
        ),
    )
    base.update(kw)
    return WeatherRecord(**base)


def make_pipeline(**overrides):
    values = dict(
        weather=weather(),
        avalanche=AvalancheSignal(
            coverage_status="reported", danger_level=4, danger_unknown=False, risk="High",
            published_time=NOW - timedelta(hours=2),
        ),
        alerts=AlertsSignal(status="none"),
        air_quality=AirQualitySignal(status="ok", us_aqi=20, category="Good"),
        precipitation=PrecipitationSignal(
            status="ok", anchor_time=NOW, totals=PrecipTotals(rain_past_24h_in=0.0, snow_past_24h_in=0.0),
        ),
        snowpack=SnowpackReport.unavailable(),
    )
    values.update(overrides)
    fallbacks = dict(
        weather=lambda status: WeatherRecord.unavailable(),
        avalanche=lambda status: AvalancheSignal.unknown("temporarily_unavailable"),
        alerts=AlertsSignal.unavailable,
        air_quality=AirQualitySignal.unavailable,
        precipitation=PrecipitationSignal.unavailable,
        snowpack=SnowpackReport.unavailable,
    )
    return SafetyPipeline(**{name: Fixed(name, values[name], fallbacks[name]) for name in values})


def run(pipeline, **kw):
    async def go():
        async with mock_client(lambda request: httpx.Response(404)) as client:
            return await pipeline.assess(client, now=NOW, **kw)
    return asyncio.run(go())


def test_healthy_assessment():
    result = run(make_pipeline(), lat=39.6, lon=-106.0)
    assert result.partial_failures == []
    assert result.selected_date == "2026-01-15"
    assert result.start_time == NOW
    assert result.avalanche.relevant is True
    assert result.safety.score == 28
    assert result.safety.confidence == 100
    assert result.safety.primary_hazard == "Avalanche"
    assert result.fire_risk.level == 0
    assert result.heat_risk.status == "ok"


def test_provider_failures_degrade_to_unavailable():
    pipeline = make_pipeline(
        alerts=ProviderError("NWS alerts", "HTTP 503", 503),
        air_quality=httpx.ConnectError("boom"),
        precipitation=RuntimeError("unexpected payload"),
    )
    result = run(pipeline, lat=39.6, lon=-106.0)
    assert {f["provider"] for f in result.partial_failures} == {"alerts", "air_quality", "precipitation"}
    assert result.alerts.status == "unavailable"
    assert result.air_quality.status == "unavailable"
    assert result.precipitation.status == "unavailable"
    assert result.avalanche.danger_level == 4
    assert "NWS alerts feed unavailable." in result.safety.confidence_reasons


def test_weather_failure_scores_unavailable():
    result = run(make_pipeline(weather=ProviderError("weather", "down")), lat=39.6, lon=-106.0)
    assert result.weather.is_unavailable
    assert result.heat_risk.status == "unavailable"
    assert any(f.hazard == "Weather Unavailable" for f in result.safety.factors)


@pytest.mark.parametrize("error", [ZoneLayerError("bad layer"), RequestCancelled("caller went away")])
def test_fatal_errors_abort(error):
    with pytest.raises(type(error)):
        run(make_pipeline(avalanche=error), lat=39.6, lon=-106.0)


def test_invalid_coordinate_rejected_before_fetching():
    pipeline = make_pipeline()
    with pytest.raises(InvalidCoordinateError):
        run(pipeline, lat=95.0, lon=-106.0)
    assert pipeline.weather.calls == []


def test_travel_window_clamped_and_forwarded():
    pipeline = make_pipeline()
    result = run(pipeline, lat=39.6, lon=-106.0, travel_window_hours=30)
    assert result.travel_window_hours == 24
    assert pipeline.precipitation.calls[0]["travel_window_hours"] == 24
    assert pipeline.weather.calls[0]["trend_hours"] == 24


def test_avalanche_relevance_off_for_warm_summer_day():
    pipeline = make_pipeline(
        weather=weather(temp=75.0, feels_like=75.0, wind_speed=5.0, wind_gust=8.0, description="Sunny", trend=()),
        avalanche=AvalancheSignal.unknown("no_center_coverage"),
    )
    result = run(pipeline, lat=35.0, lon=-111.0, selected_date="2026-07-15")
    assert result.avalanche.relevant is False
    assert all("avalanche" not in f.group for f in result.safety.factors)


def test_uncovered_wintry_objective_keeps_avalanche_relevant():
    pipeline = make_pipeline(
        weather=weather(temp=28.0, feels_like=20.0),
        avalanche=AvalancheSignal.unknown("no_center_coverage"),
    )
    result = run(pipeline, lat=45.0, lon=-110.0)
    assert result.avalanche.relevant is True
    assert result.avalanche.relevance_reason.startswith("Forecast includes wintry signals")
    assert any(f.hazard == "Avalanche Uncertainty" for f in result.safety.factors)


def test_module_level_assess_uses_given_client():
    pipeline = make_pipeline()

    async def go():
        async with mock_client(lambda request: httpx.Response(404)) as client:
            return await assess(39.6, -106.0, client=client, pipeline=pipeline, now=NOW)

    result = asyncio.run(go())
    assert result.coordinate.lat == 39.6
    assert result.safety.score == 28
