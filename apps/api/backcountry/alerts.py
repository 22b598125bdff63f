from __future__ import annotations

import re
import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import httpx

from backcountry import net
from backcountry.geo import Coordinate
from backcountry.providers import SignalProvider, finite_or_none
from backcountry.timeutil import find_closest_time_index, parse_time, utcnow

ALERTS_URL = "https://api.weather.gov/alerts/active"
AIR_QUALITY_URL = "https://air-quality-api.open-meteo.com/v1/air-quality"

SEVERITY_RANK = {"unknown": 0, "minor": 1, "moderate": 2, "severe": 3, "extreme": 4}
MAX_LISTED_ALERTS = 6

# Active alerts describe the present; far-off starts cannot be matched against them.
ALERTS_HORIZON = timedelta(days=7)
# Hourly air-quality forecasts run about four days out.
AIR_QUALITY_HORIZON = timedelta(hours=96)


# ---------- Alerts ----------
def normalize_severity(value: Any) -> str:
    s = str(value or "").strip().lower()
    return s if s in SEVERITY_RANK else "unknown"


def format_severity(value: Any) -> str:
    return normalize_severity(value).capitalize()


def higher_severity(a: Any, b: Any) -> str:
    na, nb = normalize_severity(a), normalize_severity(b)
    return na if SEVERITY_RANK[na] >= SEVERITY_RANK[nb] else nb


def normalize_alert_text(value: Any, max_length: int = 4000) -> Optional[str]:
    if not isinstance(value, str):
        return None
    lines = [re.sub(r"\s+", " ", line).strip() for line in value.replace("\r\n", "\n").split("\n")]
    text = "\n".join(line for line in lines if line).strip()
    if not text:
        return None
    if len(text) <= max_length:
        return text
    return text[: max(0, max_length - 1)].rstrip() + "…"


def area_list(area_desc: Any) -> List[str]:
    if not isinstance(area_desc, str):
        return []
    return [p.strip() for p in re.split(r"[;,]", area_desc) if p.strip()][:12]


@dataclass(frozen=True)
class WeatherAlert:
    event: str
    severity: str
    urgency: str
    certainty: str
    headline: str
    description: Optional[str] = None
    instruction: Optional[str] = None
    area_desc: Optional[str] = None
    affected_areas: List[str] = field(default_factory=list)
    onset: Optional[datetime] = None
    ends: Optional[datetime] = None
    expires: Optional[datetime] = None
    link: Optional[str] = None


@dataclass
class AlertsSignal:
    source: str = "NOAA/NWS Active Alerts"
    status: str = "unavailable"
    active_count: int = 0
    total_active_count: int = 0
    target_time: Optional[datetime] = None
    highest_severity: str = "Unknown"
    note: Optional[str] = None
    alerts: List[WeatherAlert] = field(default_factory=list)

    @classmethod
    def unavailable(cls, status: str = "unavailable") -> "AlertsSignal":
        return cls(status=status)


def _alert_link(feature: Dict[str, Any], props: Dict[str, Any], coord: Coordinate) -> str:
    for candidate in (feature.get("id"), props.get("@id"), props.get("id")):
        if isinstance(candidate, str) and candidate.startswith("https://api.weather.gov/alerts/"):
            if candidate.rstrip("/") not in (ALERTS_URL, "https://api.weather.gov/alerts"):
                return candidate
    ident = props.get("id") or props.get("identifier")
    if isinstance(ident, str) and ident.strip() and not ident.startswith("http"):
        return f"https://api.weather.gov/alerts/{ident.strip()}"
    return f"{ALERTS_URL}?point={coord.lat},{coord.lon}"


def _active_at(props: Dict[str, Any], target: datetime) -> bool:
    start = parse_time(props.get("onset")) or parse_time(props.get("effective")) or parse_time(props.get("sent"))
    end = parse_time(props.get("ends")) or parse_time(props.get("expires"))
    return (start is None or target >= start) and (end is None or target <= end)


def parse_alerts(payload: Dict[str, Any], coord: Coordinate, target: datetime) -> AlertsSignal:
    """Keep the alerts in force at `target`, most severe first."""
    features = payload.get("features") if isinstance(payload, dict) else None
    features = [f for f in features or [] if isinstance(f, dict)]
    if not features:
        return AlertsSignal(status="none", target_time=target)

    active = [f for f in features if _active_at(f.get("properties") or {}, target)]
    if not active:
        return AlertsSignal(
            status="none_for_selected_start",
            total_active_count=len(features),
            target_time=target,
            note="No currently issued alert is active at the selected start time.",
        )

    highest = "unknown"
    parsed: List[WeatherAlert] = []
    for feature in active:
        props = feature.get("properties") or {}
        severity = normalize_severity(props.get("severity"))
        highest = higher_severity(highest, severity)
        parsed.append(WeatherAlert(
            event=props.get("event") or "Weather Alert",
            severity=format_severity(severity),
            urgency=props.get("urgency") or "Unknown",
            certainty=props.get("certainty") or "Unknown",
            headline=props.get("headline") or props.get("description") or "",
            description=normalize_alert_text(props.get("description")),
            instruction=normalize_alert_text(props.get("instruction")),
            area_desc=normalize_alert_text(props.get("areaDesc"), 1200),
            affected_areas=area_list(props.get("areaDesc")),
            onset=parse_time(props.get("onset")),
            ends=parse_time(props.get("ends")),
            expires=parse_time(props.get("expires")),
            link=_alert_link(feature, props, coord),
        ))
    parsed.sort(key=lambda a: SEVERITY_RANK[normalize_severity(a.severity)], reverse=True)

    return AlertsSignal(
        status="ok",
        active_count=len(active),
        total_active_count=len(features),
        target_time=target,
        highest_severity=format_severity(highest),
        alerts=parsed[:MAX_LISTED_ALERTS],
    )


class AlertsProvider(SignalProvider):
    name = "alerts"

    def unavailable(self, status: str = "unavailable") -> AlertsSignal:
        return AlertsSignal.unavailable(status)

    async def fetch(
        self,
        client: httpx.AsyncClient,
        coord: Coordinate,
        target_time: datetime | None = None,
        now: datetime | None = None,
        cancel: asyncio.Event | None = None,
    ) -> AlertsSignal:
        now = now or utcnow()
        target = target_time or now
        if target > now + ALERTS_HORIZON:
            return AlertsSignal(
                status="future_time_not_supported",
                target_time=target,
                note="Active alerts cannot be projected this far ahead of the selected start.",
            )
        payload, _ = await net.fetch_json(
            client,
            ALERTS_URL,
            params={"point": f"{coord.lat},{coord.lon}"},
            cancel=cancel,
            provider="NWS alerts",
        )
        return parse_alerts(payload, coord, target)


# ---------- Air quality ----------
def classify_us_aqi(aqi: Any) -> str:
    v = finite_or_none(aqi)
    if v is None:
        return "Unknown"
    if v <= 50:
        return "Good"
    if v <= 100:
        return "Moderate"
    if v <= 150:
        return "Unhealthy for Sensitive Groups"
    if v <= 200:
        return "Unhealthy"
    if v <= 300:
        return "Very Unhealthy"
    return "Hazardous"


@dataclass
class AirQualitySignal:
    source: str = "Open-Meteo Air Quality API"
    status: str = "unavailable"
    us_aqi: Optional[int] = None
    category: str = "Unknown"
    pm25: Optional[float] = None
    pm10: Optional[float] = None
    ozone: Optional[float] = None
    measured_time: Optional[datetime] = None
    note: Optional[str] = None

    @classmethod
    def unavailable(cls, status: str = "unavailable") -> "AirQualitySignal":
        return cls(status=status)


def parse_air_quality(payload: Dict[str, Any], target: datetime) -> AirQualitySignal:
    hourly = payload.get("hourly") or {}
    times = hourly.get("time") or []
    if not times:
        return AirQualitySignal.unavailable("no_data")
    idx = find_closest_time_index(times, target)
    if idx < 0:
        return AirQualitySignal.unavailable("no_data")

    def at(key: str) -> Optional[float]:
        series = hourly.get(key) or []
        return finite_or_none(series[idx]) if idx < len(series) else None

    aqi = at("us_aqi")
    pm25, pm10, ozone = at("pm2_5"), at("pm10"), at("ozone")
    return AirQualitySignal(
        status="ok",
        us_aqi=None if aqi is None else int(round(aqi)),
        category=classify_us_aqi(aqi),
        pm25=None if pm25 is None else round(pm25, 1),
        pm10=None if pm10 is None else round(pm10, 1),
        ozone=None if ozone is None else round(ozone, 1),
        measured_time=parse_time(times[idx]),
    )


class AirQualityProvider(SignalProvider):
    name = "air_quality"

    def unavailable(self, status: str = "unavailable") -> AirQualitySignal:
        return AirQualitySignal.unavailable(status)

    async def fetch(
        self,
        client: httpx.AsyncClient,
        coord: Coordinate,
        target_time: datetime | None = None,
        now: datetime | None = None,
        cancel: asyncio.Event | None = None,
    ) -> AirQualitySignal:
        now = now or utcnow()
        target = target_time or now
        if target > now + AIR_QUALITY_HORIZON:
            return AirQualitySignal(
                status="not_applicable_future_date",
                note="Air quality forecasts do not reach the selected start time.",
            )
        payload, _ = await net.fetch_json(
            client,
            AIR_QUALITY_URL,
            params={
                "latitude": coord.lat,
                "longitude": coord.lon,
                "hourly": "us_aqi,pm2_5,pm10,ozone",
                "timezone": "UTC",
            },
            cancel=cancel,
            provider="Open-Meteo air quality",
        )
        return parse_air_quality(payload, target)
