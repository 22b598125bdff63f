from dataclasses import replace
from datetime import datetime, timedelta, timezone

from backcountry.visibility import build_visibility_risk
from backcountry.weather import TrendPoint, WeatherRecord

T0 = datetime(2026, 1, 15, 15, tzinfo=timezone.utc)


def test_all_inputs_missing_is_unknown():
    risk = build_visibility_risk(WeatherRecord.unavailable())
    assert risk.score is None
    assert risk.level == "Unknown"


def test_clear_calm_day_is_minimal():
    rec = WeatherRecord(description="Sunny", precip_chance=0, humidity=30, cloud_cover=5, wind_speed=5, wind_gust=8, is_daytime=True)
    risk = build_visibility_risk(rec)
    assert risk.score == 0
    assert risk.level == "Minimal"


def test_blizzard_stack_is_capped_at_100():
    stormy = TrendPoint(time=T0, condition="Blizzard", precip_chance=90, wind=40, gust=60, humidity=95, cloud_cover=100)
    rec = WeatherRecord(
        description="Blizzard", precip_chance=90, humidity=95, cloud_cover=100,
        wind_speed=40, wind_gust=60, is_daytime=False,
        trend=tuple(replace(stormy, time=T0 + timedelta(hours=i)) for i in range(8)),
    )
    risk = build_visibility_risk(rec)
    assert risk.score == 100
    assert risk.level == "Extreme"
    assert risk.active_hours == 8
    assert risk.window_hours == 8
    assert len(risk.factors) == 4


def test_fog_at_night():
    rec = WeatherRecord(description="Patchy Fog", humidity=91, is_daytime=False)
    risk = build_visibility_risk(rec)
    # fog 30 + humidity 8 + night 6
    assert risk.score == 44
    assert risk.level == "Moderate"
