from __future__ import annotations

import re
import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import httpx
import numpy as np
import pandas as pd

from backcountry import net
from backcountry.geo import Coordinate
from backcountry.providers import ProviderError, finite_or_none
from backcountry.timeutil import clamp_travel_window_hours, local_hour, localize, parse_time
from backcountry.visibility import VisibilityRisk, build_visibility_risk

WEATHER_UNAVAILABLE = "Weather data unavailable"

OPEN_METEO_HOSTS = ("api.open-meteo.com", "customer-api.open-meteo.com")
OPEN_METEO_HOURLY_FIELDS = ",".join([
    "temperature_2m", "relative_humidity_2m", "dew_point_2m", "precipitation_probability",
    "weather_code", "cloud_cover", "surface_pressure", "wind_speed_10m", "wind_direction_10m",
    "wind_gusts_10m", "is_day",
])
OPEN_METEO_TIMEOUT_SECONDS = max(net.REQUEST_TIMEOUT_SECONDS, 12.0)

OPEN_METEO_CODE_LABELS = {
    0: "Clear", 1: "Mainly clear", 2: "Partly cloudy", 3: "Overcast",
    45: "Fog", 48: "Rime fog",
    51: "Light drizzle", 53: "Drizzle", 55: "Heavy drizzle",
    56: "Freezing drizzle", 57: "Heavy freezing drizzle",
    61: "Light rain", 63: "Rain", 65: "Heavy rain",
    66: "Freezing rain", 67: "Heavy freezing rain",
    71: "Light snow", 73: "Snow", 75: "Heavy snow", 77: "Snow grains",
    80: "Rain showers", 81: "Rain showers", 82: "Violent rain showers",
    85: "Snow showers", 86: "Heavy snow showers",
    95: "Thunderstorm", 96: "Thunderstorm with hail", 99: "Severe thunderstorm with hail",
}

CARDINALS = ["N", "NNE", "NE", "ENE", "E", "ESE", "SE", "SSE", "S", "SSW", "SW", "WSW", "W", "WNW", "NW", "NNW"]

TEMP_LAPSE_F_PER_1000FT = 3.3
WIND_INCREASE_MPH_PER_1000FT = 2.0
GUST_INCREASE_MPH_PER_1000FT = 2.5


# ---------- Models ----------
@dataclass(frozen=True)
class TrendPoint:
    time: datetime
    temp: Optional[float] = None
    wind: Optional[float] = None
    gust: Optional[float] = None
    wind_direction: Optional[str] = None
    precip_chance: Optional[float] = None
    humidity: Optional[float] = None
    dew_point: Optional[float] = None
    cloud_cover: Optional[float] = None
    pressure: Optional[float] = None
    condition: Optional[str] = None
    is_daytime: Optional[bool] = None


@dataclass(frozen=True)
class TemperatureContext:
    window_hours: int
    timezone: Optional[str]
    min_temp_f: float
    max_temp_f: float
    overnight_low_f: Optional[float]
    daytime_high_f: Optional[float]


@dataclass(frozen=True)
class ElevationBand:
    label: str
    delta_from_objective_ft: int
    elevation_ft: int
    temp: int
    feels_like: int
    wind_speed: int
    wind_gust: int


@dataclass
class WeatherRecord:
    """Weather at the selected start hour plus the travel-window trend.

    `field_sources` maps field name to a provenance tag ("primary",
    "secondary", "derived_from_blended_trend", ...).
    """
    temp: Optional[float] = None
    feels_like: Optional[float] = None
    wind_speed: Optional[float] = None
    wind_gust: Optional[float] = None
    wind_direction: Optional[str] = None
    humidity: Optional[float] = None
    dew_point: Optional[float] = None
    pressure: Optional[float] = None
    cloud_cover: Optional[float] = None
    precip_chance: Optional[float] = None
    description: Optional[str] = None
    is_daytime: Optional[bool] = None
    issued_time: Optional[datetime] = None
    timezone: Optional[str] = None
    forecast_start_time: Optional[datetime] = None
    forecast_end_time: Optional[datetime] = None
    forecast_date: Optional[str] = None
    elevation_ft: Optional[float] = None
    temperature_context_24h: Optional[TemperatureContext] = None
    trend: Tuple[TrendPoint, ...] = ()
    elevation_bands: Tuple[ElevationBand, ...] = ()
    visibility_risk: Optional[VisibilityRisk] = None
    status: str = "ok"
    provider: str = "unknown"
    field_sources: Dict[str, str] = field(default_factory=dict)
    source_details: Dict[str, Any] = field(default_factory=dict)
    link: Optional[str] = None

    @classmethod
    def unavailable(cls, forecast_date: str | None = None) -> "WeatherRecord":
        rec = cls(
            description=WEATHER_UNAVAILABLE,
            forecast_date=forecast_date,
            status="unavailable",
            provider="Unavailable",
            source_details={"primary": "Unavailable", "blended": False},
        )
        rec.visibility_risk = build_visibility_risk(rec)
        return rec

    @property
    def is_unavailable(self) -> bool:
        return self.status == "unavailable" or WEATHER_UNAVAILABLE.lower() in (self.description or "").lower()


# ---------- Helpers ----------
def parse_mph(s: Any) -> Optional[float]:
    # "10 mph" or "5 to 10 mph"
    if isinstance(s, (int, float)) and not isinstance(s, bool):
        return max(0.0, float(s))
    nums = [float(x) for x in re.findall(r"\d+(?:\.\d+)?", str(s or ""))]
    if not nums:
        return None
    return float(sum(nums) / len(nums))


def cloud_from_text(short_forecast: str | None) -> Optional[float]:
    t = (short_forecast or "").lower()
    # crude mapping for when skyCover isn't provided
    if "mostly sunny" in t or "mostly clear" in t:
        return 20.0
    if "partly sunny" in t or "partly cloudy" in t:
        return 40.0
    if "sunny" in t or "clear" in t:
        return 5.0
    if "mostly cloudy" in t:
        return 70.0
    if "cloudy" in t or "overcast" in t:
        return 90.0
    if "rain" in t or "showers" in t or "thunder" in t or "snow" in t:
        return 85.0
    return None


def estimate_gust(wind_mph: float | None) -> float:
    if wind_mph is None or wind_mph <= 0:
        return 0.0
    if wind_mph <= 5:
        return float(round(wind_mph + 2))
    if wind_mph <= 15:
        return float(round(wind_mph * 1.25))
    if wind_mph <= 30:
        return float(round(wind_mph * 1.35))
    return float(round(wind_mph * 1.45))


def degrees_to_cardinal(degrees: Any) -> Optional[str]:
    value = finite_or_none(degrees)
    if value is None:
        return None
    return CARDINALS[int(round((value % 360) / 22.5)) % 16]


def normalize_wind_direction(value: Any) -> Optional[str]:
    if not isinstance(value, str) or not value.strip():
        return None
    raw = value.strip().upper()
    if "CALM" in raw:
        return "CALM"
    if "VAR" in raw:
        return "VRB"
    compact = re.sub(r"[^A-Z]", "", raw)
    return compact if compact in CARDINALS else None


def compute_feels_like_f(temp_f: float | None, wind_mph: float | None) -> Optional[float]:
    """NWS wind chill below 50F with >=3 mph wind, otherwise the air temperature."""
    if temp_f is None:
        return None
    wind = wind_mph or 0.0
    if temp_f <= 50 and wind >= 3:
        v = wind ** 0.16
        return float(round(35.74 + 0.6215 * temp_f - 35.75 * v + 0.4275 * temp_f * v))
    return float(round(temp_f))


def normalize_pressure_hpa(value: Any) -> Optional[float]:
    v = finite_or_none(value)
    return None if v is None else round(v, 1)


def _c_to_f(value: Any, unit_code: str | None) -> Optional[float]:
    v = finite_or_none(value)
    if v is None:
        return None
    if "degc" in (unit_code or "").lower():
        v = v * 9.0 / 5.0 + 32.0
    return float(round(v))


def build_temperature_context(
    points: List[Tuple[datetime, Optional[float], Optional[bool]]],
    tz: str | None,
    window_hours: int = 24,
) -> Optional[TemperatureContext]:
    """Min/max and overnight-low/daytime-high over the next `window_hours` points.

    Points without an explicit day flag are classed by local hour (06-18 is day).
    """
    window = max(1, int(window_hours))
    valid = [(t, temp, day) for t, temp, day in points[:window] if temp is not None]
    if not valid:
        return None
    day_temps: List[float] = []
    night_temps: List[float] = []
    for t, temp, day in valid:
        if day is None:
            hour = local_hour(t, tz)
            day = None if hour is None else 6 <= hour < 18
        if day is True:
            day_temps.append(temp)
        elif day is False:
            night_temps.append(temp)
    temps = [temp for _, temp, _ in valid]
    return TemperatureContext(
        window_hours=window,
        timezone=tz,
        min_temp_f=min(temps),
        max_temp_f=max(temps),
        overnight_low_f=min(night_temps) if night_temps else None,
        daytime_high_f=max(day_temps) if day_temps else None,
    )


def build_elevation_bands(
    base_elevation_ft: float | None,
    temp_f: float | None,
    wind_mph: float | None,
    gust_mph: float | None,
) -> Tuple[ElevationBand, ...]:
    """Lapse-rate estimates from the objective down through lower terrain."""
    if base_elevation_ft is None or temp_f is None:
        return ()
    objective = max(0, int(round(base_elevation_ft)))
    if objective >= 13000:
        templates = [("Approach Terrain", -3500), ("Mid Mountain", -2200), ("Near Objective", -1000)]
    elif objective >= 9000:
        templates = [("Approach Terrain", -2800), ("Mid Mountain", -1700), ("Near Objective", -800)]
    elif objective >= 6000:
        templates = [("Lower Terrain", -2000), ("Mid Terrain", -1200), ("Near Objective", -500)]
    else:
        templates = [("Lower Terrain", -1000), ("Mid Terrain", -500), ("Near Objective", -200)]
    templates.append(("Objective Elevation", 0))

    bands: List[ElevationBand] = []
    seen = set()
    for label, delta in templates:
        elevation = max(0, min(objective, objective + delta))
        if elevation in seen:
            continue
        seen.add(elevation)
        delta_kft = (elevation - objective) / 1000.0
        temp = int(round(temp_f - delta_kft * TEMP_LAPSE_F_PER_1000FT))
        wind = max(0, int(round((wind_mph or 0) + delta_kft * WIND_INCREASE_MPH_PER_1000FT)))
        gust = max(0, int(round((gust_mph or 0) + delta_kft * GUST_INCREASE_MPH_PER_1000FT)))
        bands.append(ElevationBand(
            label=label,
            delta_from_objective_ft=elevation - objective,
            elevation_ft=elevation,
            temp=temp,
            feels_like=int(compute_feels_like_f(temp, wind)),
            wind_speed=wind,
            wind_gust=gust,
        ))
    return tuple(bands)


def _py(ts: Any) -> Optional[datetime]:
    return ts.to_pydatetime() if isinstance(ts, pd.Timestamp) else ts


def _value(v: Any) -> Optional[float]:
    # NWS wraps most quantities as {"value": x, "unitCode": ...}
    if isinstance(v, dict):
        return finite_or_none(v.get("value"))
    return finite_or_none(v)


# ---------- NOAA / NWS (primary) ----------
def normalize_nws_hourly(
    points_props: Dict[str, Any],
    hourly: Dict[str, Any],
    target: datetime,
    trend_hours: int = 12,
) -> WeatherRecord:
    """Build a WeatherRecord from an NWS forecastHourly payload.

    Notes:
    - The start hour is the period containing `target`, else the first one.
    - Pressure is not part of the hourly product and is left missing for
      fusion to fill.
    """
    props = (hourly.get("properties") if isinstance(hourly, dict) else None) or {}
    periods = props.get("periods") or []
    tz = points_props.get("timeZone") or "UTC"

    rows = []
    for per in periods:
        start = parse_time(per.get("startTime"))
        if start is None:
            continue
        wind = parse_mph(per.get("windSpeed"))
        gust = parse_mph(per.get("windGust")) if per.get("windGust") else None
        temp = finite_or_none(per.get("temperature"))
        if temp is not None and per.get("temperatureUnit") == "C":
            temp = temp * 9.0 / 5.0 + 32.0
        dew = per.get("dewpoint") or {}
        rows.append({
            "time": start,
            "local": start,
            "end": parse_time(per.get("endTime")),
            "temp": None if temp is None else float(round(temp)),
            "wind": None if wind is None else float(round(wind)),
            "gust": gust,
            "wind_direction": normalize_wind_direction(per.get("windDirection")),
            "precip_chance": _value(per.get("probabilityOfPrecipitation")),
            "humidity": _value(per.get("relativeHumidity")),
            "dew_point": _c_to_f(dew.get("value"), dew.get("unitCode")) if isinstance(dew, dict) else None,
            "cloud_cover": _value(per.get("skyCover")),
            "condition": per.get("shortForecast") or None,
            "is_daytime": per.get("isDaytime") if isinstance(per.get("isDaytime"), bool) else None,
        })
    if not rows:
        raise ProviderError("NOAA/NWS", "hourly forecast empty")

    df = pd.DataFrame(rows)
    # offsets shift across DST; index on UTC and keep the local stamp
    df.index = pd.to_datetime(df.pop("time"), utc=True)
    df = df.sort_index()
    df = df.astype(object).where(pd.notna(df), None)
    pos = int(df.index.searchsorted(pd.Timestamp(target), side="right")) - 1
    pos = min(max(pos, 0), len(df) - 1)
    window = clamp_travel_window_hours(trend_hours)
    start_row = df.iloc[pos]
    start_time = _py(start_row["local"])

    trend = []
    for _, row in df.iloc[pos:pos + window].iterrows():
        wind = row["wind"]
        gust = row["gust"]
        trend.append(TrendPoint(
            time=_py(row["local"]),
            temp=row["temp"],
            wind=wind,
            gust=max(wind or 0.0, gust if gust is not None else estimate_gust(wind)),
            wind_direction=row["wind_direction"],
            precip_chance=row["precip_chance"],
            humidity=row["humidity"],
            dew_point=row["dew_point"],
            cloud_cover=row["cloud_cover"],
            pressure=None,
            condition=row["condition"],
            is_daytime=row["is_daytime"],
        ))

    context_rows = df.iloc[pos:pos + 24]
    context = build_temperature_context(
        [(_py(r["local"]), r["temp"], r["is_daytime"]) for _, r in context_rows.iterrows()],
        tz,
    )

    wind = start_row["wind"]
    reported_gust = start_row["gust"]
    gust = max(wind or 0.0, reported_gust if reported_gust is not None else estimate_gust(wind))
    elevation_m = _value(props.get("elevation"))
    elevation_ft = None if elevation_m is None else float(round(elevation_m * 3.28084))
    issued = parse_time(props.get("generatedAt")) or parse_time(props.get("updateTime"))

    rec = WeatherRecord(
        temp=start_row["temp"],
        feels_like=compute_feels_like_f(start_row["temp"], wind),
        wind_speed=wind,
        wind_gust=gust,
        wind_direction=start_row["wind_direction"],
        humidity=start_row["humidity"],
        dew_point=start_row["dew_point"],
        pressure=None,
        cloud_cover=start_row["cloud_cover"],
        precip_chance=start_row["precip_chance"],
        description=start_row["condition"],
        is_daytime=start_row["is_daytime"],
        issued_time=issued,
        timezone=tz,
        forecast_start_time=start_time,
        forecast_end_time=_py(start_row["end"]),
        forecast_date=start_time.date().isoformat(),
        elevation_ft=elevation_ft,
        temperature_context_24h=context,
        trend=tuple(trend),
        elevation_bands=build_elevation_bands(elevation_ft, start_row["temp"], wind, gust),
        provider="NOAA",
        field_sources={"wind_gust": "primary" if reported_gust is not None else "estimated_from_wind"},
        source_details={"primary": "NOAA", "blended": False},
        link=points_props.get("forecastHourly"),
    )
    rec.visibility_risk = build_visibility_risk(rec)
    return rec


async def fetch_nws_weather(
    client: httpx.AsyncClient,
    coord: Coordinate,
    target: datetime,
    trend_hours: int = 12,
    cancel: asyncio.Event | None = None,
) -> WeatherRecord:
    pj, _ = await net.fetch_json(
        client, f"https://api.weather.gov/points/{coord.lat:.4f},{coord.lon:.4f}",
        cancel=cancel, provider="NOAA/NWS points",
    )
    if not isinstance(pj, dict):
        raise ProviderError("NOAA/NWS", "points response is not a JSON object")
    props = pj.get("properties") or {}
    hourly_url = props.get("forecastHourly")
    if not hourly_url:
        raise ProviderError("NOAA/NWS", "points response missing forecastHourly URL")
    hj, _ = await net.fetch_json(client, hourly_url, cancel=cancel, provider="NOAA/NWS hourly")
    return normalize_nws_hourly(props, hj, target, trend_hours)


# ---------- Open-Meteo (secondary) ----------
def open_meteo_code_to_text(code: Any) -> str:
    c = finite_or_none(code)
    return OPEN_METEO_CODE_LABELS.get(int(c), "Unknown") if c is not None else "Unknown"


def normalize_open_meteo(
    payload: Dict[str, Any],
    target: datetime,
    trend_hours: int = 12,
    issued_time: datetime | None = None,
) -> WeatherRecord:
    hourly = payload.get("hourly") or {}
    times = hourly.get("time") or []
    if not times:
        raise ProviderError("Open-Meteo", "forecast response did not include hourly time series")
    tz = payload.get("timezone") or "UTC"

    df = pd.DataFrame({k: v for k, v in hourly.items() if isinstance(v, list) and len(v) == len(times)})
    df.index = pd.DatetimeIndex([localize(str(t), tz) for t in times])
    df = df.drop(columns=["time"], errors="ignore").apply(pd.to_numeric, errors="coerce")

    pos = int(df.index.searchsorted(pd.Timestamp(target), side="left"))
    pos = min(pos, len(df) - 1)
    window = clamp_travel_window_hours(trend_hours)

    def cell(col: str, i: int, digits: int | None = 0) -> Optional[float]:
        if col not in df.columns:
            return None
        v = df[col].iloc[i]
        if not np.isfinite(v):
            return None
        if digits is None:
            return float(v)
        return float(round(v, digits)) if digits else float(round(v))

    def gust_at(i: int) -> float:
        wind = cell("wind_speed_10m", i) or 0.0
        raw = cell("wind_gusts_10m", i)
        return max(wind, raw if raw is not None else estimate_gust(wind))

    def is_day(i: int) -> Optional[bool]:
        v = cell("is_day", i)
        return None if v is None else v >= 1

    trend = []
    for i in range(pos, min(pos + window, len(df))):
        trend.append(TrendPoint(
            time=df.index[i].to_pydatetime(),
            temp=cell("temperature_2m", i),
            wind=cell("wind_speed_10m", i),
            gust=gust_at(i),
            wind_direction=degrees_to_cardinal(cell("wind_direction_10m", i, None)),
            precip_chance=cell("precipitation_probability", i),
            humidity=cell("relative_humidity_2m", i),
            dew_point=cell("dew_point_2m", i),
            cloud_cover=cell("cloud_cover", i),
            pressure=normalize_pressure_hpa(cell("surface_pressure", i, None)),
            condition=open_meteo_code_to_text(cell("weather_code", i)),
            is_daytime=is_day(i),
        ))

    context = build_temperature_context(
        [(df.index[i].to_pydatetime(), cell("temperature_2m", i), is_day(i)) for i in range(pos, min(pos + 24, len(df)))],
        tz,
    )

    start_time = df.index[pos].to_pydatetime()
    temp = cell("temperature_2m", pos)
    wind = cell("wind_speed_10m", pos)
    rec = WeatherRecord(
        temp=temp,
        feels_like=compute_feels_like_f(temp, wind),
        wind_speed=wind,
        wind_gust=gust_at(pos),
        wind_direction=degrees_to_cardinal(cell("wind_direction_10m", pos, None)),
        humidity=cell("relative_humidity_2m", pos),
        dew_point=cell("dew_point_2m", pos),
        pressure=normalize_pressure_hpa(cell("surface_pressure", pos, None)),
        cloud_cover=cell("cloud_cover", pos),
        precip_chance=cell("precipitation_probability", pos),
        description=open_meteo_code_to_text(cell("weather_code", pos)),
        is_daytime=is_day(pos),
        issued_time=issued_time,
        timezone=tz,
        forecast_start_time=start_time,
        forecast_end_time=start_time,
        forecast_date=start_time.date().isoformat(),
        elevation_ft=None if finite_or_none(payload.get("elevation")) is None
        else float(round(float(payload["elevation"]) * 3.28084)),
        temperature_context_24h=context,
        trend=tuple(trend),
        provider="Open-Meteo",
        source_details={"primary": "Open-Meteo", "blended": False},
        link=f"https://open-meteo.com/en/docs#latitude={payload.get('latitude')}&longitude={payload.get('longitude')}",
    )
    rec.visibility_risk = build_visibility_risk(rec)
    return rec


async def fetch_open_meteo_weather(
    client: httpx.AsyncClient,
    coord: Coordinate,
    target: datetime,
    trend_hours: int = 12,
    cancel: asyncio.Event | None = None,
) -> WeatherRecord:
    params = {
        "latitude": coord.lat,
        "longitude": coord.lon,
        "timezone": "auto",
        "forecast_days": 16,
        "temperature_unit": "fahrenheit",
        "windspeed_unit": "mph",
        "hourly": OPEN_METEO_HOURLY_FIELDS,
    }
    payload, headers = await net.fetch_json_with_fallback(
        client,
        [f"https://{host}/v1/forecast" for host in OPEN_METEO_HOSTS],
        params=params,
        attempts=3,
        timeout=OPEN_METEO_TIMEOUT_SECONDS,
        cancel=cancel,
        provider="Open-Meteo forecast",
    )
    issued = net.response_date(headers)
    return normalize_open_meteo(payload, target, trend_hours, issued_time=issued)
