from datetime import datetime, timedelta, timezone

from backcountry.fusion import FUSED_FIELDS, fuse_weather
from backcountry.weather import TrendPoint, WeatherRecord

T0 = datetime(2026, 1, 15, 15, tzinfo=timezone.utc)


def trend(n, **kw):
    return tuple(TrendPoint(time=T0 + timedelta(hours=i), temp=20.0, wind=10.0, gust=15.0, **kw) for i in range(n))


def primary(**kw):
    base = dict(
        temp=20.0, wind_speed=10.0, wind_gust=15.0, wind_direction="NW",
        description="Mostly Cloudy", provider="NOAA", trend=trend(12),
        field_sources={"wind_gust": "primary"},
    )
    base.update(kw)
    return WeatherRecord(**base)


def secondary(**kw):
    base = dict(
        temp=18.0, wind_speed=12.0, wind_gust=20.0, wind_direction="SW",
        dew_point=10.0, pressure=1010.5, cloud_cover=88.0, timezone="America/Denver",
        issued_time=T0 - timedelta(hours=1), provider="Open-Meteo",
        trend=trend(24, pressure=1011.0),
    )
    base.update(kw)
    return WeatherRecord(**base)


def test_primary_values_are_kept_and_gaps_filled_with_provenance():
    fused = fuse_weather(primary(), secondary())
    assert fused.wind_direction == "NW"
    assert fused.field_sources["wind_direction"] == "primary"
    assert fused.temp == 20.0
    assert fused.dew_point == 10.0
    assert fused.field_sources["dew_point"] == "secondary"
    assert fused.cloud_cover == 88.0
    assert fused.field_sources["cloud_cover"] == "secondary"
    assert fused.issued_time == T0 - timedelta(hours=1)
    assert fused.source_details["blended"] is True
    assert fused.source_details["supplemental_sources"] == ["Open-Meteo"]
    assert "dew_point" in fused.source_details["supplemented_fields"]


def test_every_fused_field_is_tagged():
    fused = fuse_weather(primary(), secondary())
    for name in FUSED_FIELDS:
        assert name in fused.field_sources
    assert fused.field_sources["trend"] == "primary"
    assert fused.field_sources["visibility_risk"] == "derived_from_merged_fields"


def test_blank_string_counts_as_missing():
    fused = fuse_weather(primary(wind_direction="  "), secondary())
    assert fused.wind_direction == "SW"
    assert fused.field_sources["wind_direction"] == "secondary"


def test_short_primary_trend_is_replaced():
    fused = fuse_weather(primary(trend=trend(3)), secondary())
    assert len(fused.trend) == 24
    assert fused.field_sources["trend"] == "secondary"
    assert "trend" in fused.source_details["supplemented_fields"]


def test_trend_pressure_filled_in_lockstep():
    fused = fuse_weather(primary(), secondary())
    assert len(fused.trend) == 12
    assert all(p.pressure == 1011.0 for p in fused.trend)
    assert all(p.temp == 20.0 for p in fused.trend)
    assert fused.field_sources["pressure"] == "derived_from_blended_trend"
    assert "trend_pressure" in fused.source_details["supplemented_fields"]


def test_no_secondary_estimates_cloud_from_description():
    fused = fuse_weather(primary(), None)
    assert fused.cloud_cover == 70.0
    assert fused.field_sources["cloud_cover"] == "estimated_from_description"
    assert fused.source_details["blended"] is False
    assert fused.source_details["supplemental_sources"] == []
    assert fused.field_sources["visibility_risk"] == "derived_from_primary_fields"


def test_visibility_is_recomputed_on_merged_record():
    rec = primary(description="Blizzard", humidity=None)
    fused = fuse_weather(rec, secondary(humidity=95.0, cloud_cover=96.0))
    assert fused.humidity is None
    assert fused.visibility_risk.score >= 55


def test_fuse_is_idempotent():
    once = fuse_weather(primary(), secondary())
    twice = fuse_weather(once, secondary())
    assert twice.wind_direction == once.wind_direction
    assert twice.cloud_cover == once.cloud_cover
    assert twice.trend == once.trend
    assert twice.dew_point == once.dew_point


def test_inputs_are_not_mutated():
    p = primary()
    fuse_weather(p, secondary())
    assert p.dew_point is None
    assert p.cloud_cover is None
    assert p.field_sources == {"wind_gust": "primary"}
