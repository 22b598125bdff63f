from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx

from backcountry import net
from backcountry.alerts import AirQualityProvider, AirQualitySignal, AlertsProvider, AlertsSignal
from backcountry.avalanche import AvalancheSignal, avalanche_signal_from_match, evaluate_avalanche_relevance
from backcountry.fusion import fuse_weather
from backcountry.geo import Coordinate, resolve_zone
from backcountry.hazards import FireRisk, HeatRisk, build_fire_risk, build_heat_risk
from backcountry.precipitation import PrecipitationService, PrecipitationSignal
from backcountry.providers import ProviderError, SignalProvider, is_fatal
from backcountry.scoring import SafetyScoreResult, SafetySignals, compose_safety_score
from backcountry.snowpack import SnowpackReport, SnowpackService
from backcountry.timeutil import clamp_travel_window_hours, planned_start, utcnow
from backcountry.weather import WeatherRecord, fetch_nws_weather, fetch_open_meteo_weather
from backcountry.zones import ZoneLayerCache

logger = logging.getLogger(__name__)


# ---------- Composite providers ----------
class WeatherService(SignalProvider):
    """NWS hourly as primary, Open-Meteo as secondary, fused field by field."""

    name = "weather"

    def unavailable(self, status: str = "unavailable") -> WeatherRecord:
        return WeatherRecord.unavailable()

    async def fetch(
        self,
        client: httpx.AsyncClient,
        coord: Coordinate,
        target_time: datetime | None = None,
        trend_hours: int = 12,
        selected_date: str | None = None,
        cancel: asyncio.Event | None = None,
    ) -> WeatherRecord:
        target = target_time or utcnow()
        primary, secondary = await asyncio.gather(
            fetch_nws_weather(client, coord, target, trend_hours, cancel),
            fetch_open_meteo_weather(client, coord, target, trend_hours, cancel),
            return_exceptions=True,
        )
        for label, result in (("NOAA/NWS", primary), ("Open-Meteo", secondary)):
            if not isinstance(result, BaseException):
                continue
            if is_fatal(result):
                raise result
            if isinstance(result, (ProviderError, httpx.HTTPError)):
                logger.warning("weather source %s failed: %s", label, result)
            else:
                logger.exception("weather source %s raised unexpectedly", label, exc_info=result)
        primary = None if isinstance(primary, BaseException) else primary
        secondary = None if isinstance(secondary, BaseException) else secondary

        if primary is not None:
            return fuse_weather(primary, secondary)
        if secondary is not None:
            return fuse_weather(secondary, None)
        return WeatherRecord.unavailable(selected_date)


class AvalancheService(SignalProvider):
    """Resolve the coordinate against the cached map layer."""

    name = "avalanche"

    def __init__(self, zone_cache: ZoneLayerCache | None = None):
        self.zone_cache = zone_cache or ZoneLayerCache()

    def unavailable(self, status: str = "temporarily_unavailable") -> AvalancheSignal:
        return AvalancheSignal.unknown("temporarily_unavailable")

    async def fetch(
        self,
        client: httpx.AsyncClient,
        coord: Coordinate,
        target_time: datetime | None = None,
        now: datetime | None = None,
        cancel: asyncio.Event | None = None,
    ) -> AvalancheSignal:
        features = await self.zone_cache.features(
            client,
            now=None if now is None else now.timestamp(),
            cancel=cancel,
        )
        return avalanche_signal_from_match(resolve_zone(coord, features), target_time)


# ---------- Assessment ----------
@dataclass
class Assessment:
    coordinate: Coordinate
    selected_date: str
    start_time: Optional[datetime]
    travel_window_hours: int
    generated_at: datetime
    safety: SafetyScoreResult
    weather: WeatherRecord
    avalanche: AvalancheSignal
    alerts: AlertsSignal
    air_quality: AirQualitySignal
    precipitation: PrecipitationSignal
    snowpack: SnowpackReport
    fire_risk: FireRisk
    heat_risk: HeatRisk
    partial_failures: List[Dict[str, str]] = field(default_factory=list)


class SafetyPipeline:
    """Fan out to every provider at once, degrade failures, then score.

    Notes:
    - Providers keep their caches between assessments, so one pipeline is
      meant to be shared by the whole process.
    - Invalid coordinates, a malformed map layer with no cached copy and
      caller cancellation abort the assessment; every other provider
      failure becomes that provider's unavailable record.
    """

    def __init__(
        self,
        weather: SignalProvider | None = None,
        avalanche: SignalProvider | None = None,
        alerts: SignalProvider | None = None,
        air_quality: SignalProvider | None = None,
        precipitation: SignalProvider | None = None,
        snowpack: SignalProvider | None = None,
    ):
        self.weather = weather or WeatherService()
        self.avalanche = avalanche or AvalancheService()
        self.alerts = alerts or AlertsProvider()
        self.air_quality = air_quality or AirQualityProvider()
        self.precipitation = precipitation or PrecipitationService()
        self.snowpack = snowpack or SnowpackService()

    async def assess(
        self,
        client: httpx.AsyncClient,
        lat: Any,
        lon: Any,
        selected_date: str | None = None,
        start_clock: str | None = None,
        travel_window_hours: Any = None,
        tz: str | None = None,
        now: datetime | None = None,
        cancel: asyncio.Event | None = None,
    ) -> Assessment:
        coord = Coordinate(lat, lon).validated()
        now = now or utcnow()
        start = planned_start(selected_date, start_clock, tz, reference=now) or now
        selected = selected_date or start.date().isoformat()
        window = clamp_travel_window_hours(travel_window_hours)

        calls = [
            (self.weather, self.weather.fetch(
                client, coord, target_time=start, trend_hours=window, selected_date=selected, cancel=cancel)),
            (self.avalanche, self.avalanche.fetch(client, coord, target_time=start, now=now, cancel=cancel)),
            (self.alerts, self.alerts.fetch(client, coord, target_time=start, now=now, cancel=cancel)),
            (self.air_quality, self.air_quality.fetch(client, coord, target_time=start, now=now, cancel=cancel)),
            (self.precipitation, self.precipitation.fetch(
                client, coord, target_time=start, travel_window_hours=window, now=now, cancel=cancel)),
            (self.snowpack, self.snowpack.fetch(client, coord, selected_date=selected, now=now, cancel=cancel)),
        ]
        results = await asyncio.gather(*(c for _, c in calls), return_exceptions=True)

        signals: Dict[str, Any] = {}
        failures: List[Dict[str, str]] = []
        for (provider, _), result in zip(calls, results):
            if isinstance(result, BaseException) and is_fatal(result):
                raise result
            if isinstance(result, Exception):
                if isinstance(result, (ProviderError, httpx.HTTPError)):
                    logger.warning("%s provider failed for %s: %s", provider.name, coord.cache_key(), result)
                else:
                    logger.exception("%s provider raised unexpectedly", provider.name, exc_info=result)
                failures.append({"provider": provider.name, "error": str(result)})
                result = provider.unavailable()
            signals[provider.name] = result

        weather: WeatherRecord = signals["weather"]
        precipitation: PrecipitationSignal = signals["precipitation"]
        snowpack: SnowpackReport = signals["snowpack"]
        alerts: AlertsSignal = signals["alerts"]
        air_quality: AirQualitySignal = signals["air_quality"]

        relevant, reason = evaluate_avalanche_relevance(
            coord.lat, selected, weather, signals["avalanche"], snowpack, precipitation,
        )
        avalanche = replace(signals["avalanche"], relevant=relevant, relevance_reason=reason)

        usable_weather = None if weather.is_unavailable else weather
        fire = build_fire_risk(usable_weather, alerts, air_quality)
        heat = build_heat_risk(usable_weather)

        safety = compose_safety_score(
            SafetySignals(
                weather=weather,
                avalanche=avalanche,
                alerts=alerts,
                air_quality=air_quality,
                fire=fire,
                heat=heat,
                precipitation=precipitation,
                selected_date=selected,
                travel_window_hours=window,
            ),
            now=now,
        )

        return Assessment(
            coordinate=coord,
            selected_date=selected,
            start_time=start,
            travel_window_hours=window,
            generated_at=now,
            safety=safety,
            weather=weather,
            avalanche=avalanche,
            alerts=alerts,
            air_quality=air_quality,
            precipitation=precipitation,
            snowpack=snowpack,
            fire_risk=fire,
            heat_risk=heat,
            partial_failures=failures,
        )


_default_pipeline: SafetyPipeline | None = None


def default_pipeline() -> SafetyPipeline:
    global _default_pipeline
    if _default_pipeline is None:
        _default_pipeline = SafetyPipeline()
    return _default_pipeline


async def assess(
    lat: Any,
    lon: Any,
    selected_date: str | None = None,
    start_clock: str | None = None,
    travel_window_hours: Any = None,
    tz: str | None = None,
    *,
    client: httpx.AsyncClient | None = None,
    pipeline: SafetyPipeline | None = None,
    now: datetime | None = None,
    cancel: asyncio.Event | None = None,
) -> Assessment:
    """One-shot assessment; opens its own client when none is given."""
    pipeline = pipeline or default_pipeline()
    if client is not None:
        return await pipeline.assess(
            client, lat, lon, selected_date, start_clock, travel_window_hours, tz, now=now, cancel=cancel,
        )
    async with net.new_client() as own:
        return await pipeline.assess(
            own, lat, lon, selected_date, start_clock, travel_window_hours, tz, now=now, cancel=cancel,
        )
