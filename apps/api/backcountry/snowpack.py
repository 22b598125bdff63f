from __future__ import annotations

import os
import time
import asyncio
import calendar
import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Literal, Optional, Sequence, Tuple

import httpx

from backcountry import net
from backcountry.cache import SnapshotCache
from backcountry.geo import Coordinate, haversine_km
from backcountry.providers import ProviderError, SignalProvider, finite_or_none, is_fatal
from backcountry.timeutil import parse_date, utcnow

logger = logging.getLogger(__name__)

SNOTEL_STATION_TTL_SECONDS = float(os.environ.get("BACKCOUNTRY_SNOTEL_STATION_TTL_SECONDS", "43200"))

AWDB_BASE = "https://wcc.sc.egov.usda.gov/awdbRestApi/services/v1"
NOHRSC_IDENTIFY_URL = (
    "https://mapservices.weather.noaa.gov/raster/rest/services/snow/NOHRSC_Snow_Analysis/MapServer/identify"
)
SNOTEL_NETWORKS = {"SNTL", "SNTLT", "MSNT"}
MAX_STATION_DISTANCE_KM = 140.0
MAX_NOHRSC_DEPTH_M = 20.0
MAX_NOHRSC_SWE_MM = 5000.0

HISTORICAL_LOOKBACK_YEARS = 10
HISTORICAL_WINDOW_DAYS = 7
ABOVE_AVERAGE_RATIO = 1.2
BELOW_AVERAGE_RATIO = 0.8

ComparisonStatus = Literal["below_average", "at_average", "above_average", "unknown"]
STATUS_LABELS = {
    "below_average": "below average",
    "at_average": "at average",
    "above_average": "above average",
    "unknown": "unknown",
}


# ---------- Historical comparator ----------
@dataclass(frozen=True)
class Observation:
    date: date
    value: float


@dataclass(frozen=True)
class HistoricalComparison:
    current_value: Optional[float]
    average_value: Optional[float]
    sample_count: int
    max_offset_days: Optional[int]
    status: ComparisonStatus
    percent_of_average: Optional[int]
    sample_dates: Tuple[date, ...] = ()


def observations_from_awdb(values: Any) -> List[Observation]:
    """AWDB `values` entries ({date, value}) with a valid date and finite value, sorted by date."""
    out: List[Observation] = []
    for entry in values or []:
        if not isinstance(entry, dict):
            continue
        d = parse_date(str(entry.get("date") or "")[:10])
        v = finite_or_none(entry.get("value"))
        if d is not None and v is not None:
            out.append(Observation(d, v))
    out.sort(key=lambda o: o.date)
    return out


def same_day_in_year(target: date, year: int) -> date:
    # Feb 29 maps to Feb 28 in non-leap years
    if target.month == 2 and target.day == 29 and not calendar.isleap(year):
        return date(year, 2, 28)
    return target.replace(year=year)


def _closest_at_or_before(history: Sequence[Observation], target: date, window_days: int) -> Optional[Tuple[Observation, int]]:
    best: Optional[Tuple[Observation, int]] = None
    for obs in history:
        offset = (target - obs.date).days
        if offset < 0 or offset > window_days:
            continue
        if best is None or offset < best[1] or (offset == best[1] and obs.date > best[0].date):
            best = (obs, offset)
    return best


def classify_against_average(current: Optional[float], average: Optional[float]) -> Tuple[ComparisonStatus, Optional[int]]:
    if current is None or average is None or average <= 0:
        return "unknown", None
    ratio = current / average
    pct = int(round(ratio * 100))
    if ratio >= ABOVE_AVERAGE_RATIO:
        return "above_average", pct
    if ratio <= BELOW_AVERAGE_RATIO:
        return "below_average", pct
    return "at_average", pct


def compare_to_historical_baseline(
    history: Sequence[Observation],
    target_date: date,
    lookback_years: int = HISTORICAL_LOOKBACK_YEARS,
    window_days: int = HISTORICAL_WINDOW_DAYS,
) -> HistoricalComparison:
    """Compare the latest observation against the same calendar day of prior years.

    For each of the trailing `lookback_years` years the closest observation
    at or before that year's target day, within `window_days`, is sampled;
    ties go to the later date.
    """
    current_obs = [o for o in history if o.date <= target_date]
    current = max(current_obs, key=lambda o: o.date).value if current_obs else None

    picked: List[Tuple[Observation, int]] = []
    for year in range(target_date.year - 1, target_date.year - lookback_years - 1, -1):
        sample = _closest_at_or_before(history, same_day_in_year(target_date, year), window_days)
        if sample is not None:
            picked.append(sample)

    if not picked:
        return HistoricalComparison(current, None, 0, None, "unknown", None)

    average = round(sum(o.value for o, _ in picked) / len(picked), 2)
    status, pct = classify_against_average(current, average)
    return HistoricalComparison(
        current_value=current,
        average_value=average,
        sample_count=len(picked),
        max_offset_days=max(off for _, off in picked),
        status=status,
        percent_of_average=pct,
        sample_dates=tuple(o.date for o, _ in picked[:5]),
    )


def describe_comparison(metric: Optional[str], comparison: Optional[HistoricalComparison]) -> str:
    if not metric or comparison is None or comparison.status == "unknown":
        return "Historical average comparison unavailable for this date."
    pct = f" ({comparison.percent_of_average}% of historical average)" if comparison.percent_of_average is not None else ""
    return f"Current {metric} is {STATUS_LABELS[comparison.status]} for this date{pct}."


# ---------- Records ----------
@dataclass
class SnotelReading:
    station_triplet: str
    station_name: str
    distance_km: Optional[float]
    source: str = "NRCS AWDB / SNOTEL"
    status: str = "ok"
    station_id: Optional[str] = None
    network_code: Optional[str] = None
    state_code: Optional[str] = None
    elevation_ft: Optional[int] = None
    observed_date: Optional[date] = None
    snow_depth_in: Optional[float] = None
    swe_in: Optional[float] = None
    precip_in: Optional[float] = None
    obs_temp_f: Optional[float] = None
    swe_comparison: Optional[HistoricalComparison] = None
    depth_comparison: Optional[HistoricalComparison] = None
    historical_summary: Optional[str] = None
    link: Optional[str] = None
    note: Optional[str] = None


@dataclass
class NohrscReading:
    source: str = "NOAA NOHRSC Snow Analysis"
    status: str = "ok"
    sampled_time: Optional[datetime] = None
    snow_depth_in: Optional[float] = None
    swe_in: Optional[float] = None
    depth_m: Optional[float] = None
    swe_mm: Optional[float] = None
    link: str = "https://www.nohrsc.noaa.gov/nsa/"
    note: Optional[str] = None


@dataclass
class SnowpackReport:
    source: str = "NRCS AWDB / SNOTEL, NOAA NOHRSC Snow Analysis"
    status: str = "unavailable"
    summary: str = "Snowpack observations unavailable."
    snotel: Optional[SnotelReading] = None
    nohrsc: Optional[NohrscReading] = None
    overall_metric: Optional[str] = None
    overall_comparison: Optional[HistoricalComparison] = None

    @classmethod
    def unavailable(cls, status: str = "unavailable") -> "SnowpackReport":
        return cls(status=status)


def _fmt_in(v: Optional[float]) -> str:
    return "N/A" if v is None else f"{v:g} in"


# ---------- Acquisition ----------
class SnowpackService(SignalProvider):
    """Nearest SNOTEL station history plus a NOHRSC raster point sample."""

    name = "snowpack"

    def __init__(self, station_cache: SnapshotCache | None = None):
        self.station_cache = station_cache or SnapshotCache("snotel-stations:v1", SNOTEL_STATION_TTL_SECONDS)

    def unavailable(self, status: str = "unavailable") -> SnowpackReport:
        return SnowpackReport.unavailable(status)

    async def stations(self, client: httpx.AsyncClient, cancel: asyncio.Event | None = None) -> List[Dict[str, Any]]:
        cached = self.station_cache.fresh("stations", time.time())
        if cached is not None:
            return cached
        payload, _ = await net.fetch_json(
            client,
            f"{AWDB_BASE}/stations",
            params={"elements": "WTEQ,SNWD,PREC", "durations": "DAILY", "activeOnly": "true"},
            cancel=cancel,
            provider="AWDB stations",
        )
        stations = [
            s for s in (payload if isinstance(payload, list) else [])
            if isinstance(s, dict)
            and str(s.get("networkCode") or "").upper() in SNOTEL_NETWORKS
            and finite_or_none(s.get("latitude")) is not None
            and finite_or_none(s.get("longitude")) is not None
        ]
        self.station_cache.put("stations", stations)
        return stations

    @staticmethod
    def nearest_station(coord: Coordinate, stations: Sequence[Dict[str, Any]]) -> Optional[Tuple[Dict[str, Any], float]]:
        best = None
        best_km = float("inf")
        for s in stations:
            d = haversine_km(coord.lat, coord.lon, float(s["latitude"]), float(s["longitude"]))
            if d < best_km:
                best, best_km = s, d
        if best is None or best_km > MAX_STATION_DISTANCE_KM:
            return None
        return best, best_km

    async def fetch_snotel(
        self,
        client: httpx.AsyncClient,
        coord: Coordinate,
        target_date: date,
        selected_date: date | None,
        cancel: asyncio.Event | None = None,
    ) -> Optional[SnotelReading]:
        nearest = self.nearest_station(coord, await self.stations(client, cancel))
        if nearest is None:
            return None
        station, distance_km = nearest
        triplet = str(station.get("stationTriplet") or "")
        if not triplet:
            return None

        begin = target_date - timedelta(days=HISTORICAL_LOOKBACK_YEARS * 366 + HISTORICAL_WINDOW_DAYS)
        payload, _ = await net.fetch_json(
            client,
            f"{AWDB_BASE}/data",
            params={
                "stationTriplets": triplet,
                "elements": "WTEQ,SNWD,PREC,TOBS",
                "duration": "DAILY",
                "beginDate": begin.isoformat(),
                "endDate": target_date.isoformat(),
                "periodRef": "END",
            },
            cancel=cancel,
            provider="AWDB station data",
        )
        station_data = payload[0] if isinstance(payload, list) and payload else {}
        by_element: Dict[str, List[Observation]] = {}
        for entry in station_data.get("data") or []:
            code = str((entry.get("stationElement") or {}).get("elementCode") or "").upper()
            if code:
                by_element[code] = observations_from_awdb(entry.get("values"))

        def latest(code: str) -> Optional[Observation]:
            obs = by_element.get(code) or []
            bounded = [o for o in obs if o.date <= target_date]
            return (bounded or obs)[-1] if obs else None

        depth, swe, prec, tobs = latest("SNWD"), latest("WTEQ"), latest("PREC"), latest("TOBS")
        depth_cmp = compare_to_historical_baseline(by_element.get("SNWD") or [], target_date)
        swe_cmp = compare_to_historical_baseline(by_element.get("WTEQ") or [], target_date)
        observed = next((o.date for o in (depth, swe, prec, tobs) if o is not None), None)
        station_id = station.get("stationId")
        elevation = finite_or_none(station.get("elevation"))
        return SnotelReading(
            station_triplet=triplet,
            station_name=station.get("name") or triplet,
            distance_km=round(distance_km, 1),
            station_id=station_id,
            network_code=station.get("networkCode"),
            state_code=station.get("stateCode"),
            elevation_ft=None if elevation is None else int(round(elevation)),
            observed_date=observed,
            snow_depth_in=None if depth is None else depth.value,
            swe_in=None if swe is None else swe.value,
            precip_in=None if prec is None else prec.value,
            obs_temp_f=None if tobs is None else tobs.value,
            swe_comparison=swe_cmp,
            depth_comparison=depth_cmp,
            link=f"https://wcc.sc.egov.usda.gov/nwcc/site?sitenum={station_id}" if station_id else None,
            note=(
                f"Selected date is in the future; showing latest available daily SNOTEL observations through {target_date.isoformat()}."
                if selected_date is not None and selected_date > target_date
                else "Nearest daily SNOTEL observation."
            ),
        )

    async def fetch_nohrsc(
        self,
        client: httpx.AsyncClient,
        coord: Coordinate,
        cancel: asyncio.Event | None = None,
    ) -> Optional[NohrscReading]:
        pad = 0.6
        extent = f"{coord.lon - pad:.4f},{coord.lat - pad:.4f},{coord.lon + pad:.4f},{coord.lat + pad:.4f}"
        payload, headers = await net.fetch_json(
            client,
            NOHRSC_IDENTIFY_URL,
            params={
                "f": "pjson",
                "geometry": f"{coord.lon},{coord.lat}",
                "geometryType": "esriGeometryPoint",
                "sr": "4326",
                "tolerance": "2",
                "mapExtent": extent,
                "imageDisplay": "800,600,96",
                "returnGeometry": "false",
                "layers": "all:3,7",
            },
            cancel=cancel,
            provider="NOHRSC snow analysis",
        )
        results = payload.get("results") or [] if isinstance(payload, dict) else []

        def pixel(layer_id: int) -> Optional[float]:
            for r in results:
                if finite_or_none(r.get("layerId")) == layer_id:
                    return finite_or_none((r.get("attributes") or {}).get("Service Pixel Value"))
            return None

        raw_depth, raw_swe = pixel(3), pixel(7)
        depth_m = raw_depth if raw_depth is not None and 0 <= raw_depth <= MAX_NOHRSC_DEPTH_M else None
        swe_mm = raw_swe if raw_swe is not None and 0 <= raw_swe <= MAX_NOHRSC_SWE_MM else None
        if depth_m is None and swe_mm is None:
            return None
        discarded = []
        if raw_depth is not None and depth_m is None:
            discarded.append("depth")
        if raw_swe is not None and swe_mm is None:
            discarded.append("SWE")
        return NohrscReading(
            sampled_time=net.response_date(headers),
            snow_depth_in=None if depth_m is None else max(0.0, round(depth_m * 39.3701, 1)),
            swe_in=None if swe_mm is None else max(0.0, round(swe_mm * 0.0393701, 1)),
            depth_m=None if depth_m is None else round(depth_m, 2),
            swe_mm=None if swe_mm is None else round(swe_mm, 1),
            note=(
                f"Point sample from NOAA National Snow Analysis raster. Implausible {' + '.join(discarded)} value(s) were discarded."
                if discarded
                else "Point sample from NOAA National Snow Analysis raster (depth converted from meters; SWE converted from millimeters)."
            ),
        )

    async def fetch(
        self,
        client: httpx.AsyncClient,
        coord: Coordinate,
        selected_date: str | date | None = None,
        now: datetime | None = None,
        cancel: asyncio.Event | None = None,
    ) -> SnowpackReport:
        today = (now or utcnow()).date()
        selected = parse_date(selected_date)
        target = min(selected, today) if selected is not None else today

        snotel, nohrsc = await asyncio.gather(
            self.fetch_snotel(client, coord, target, selected, cancel),
            self.fetch_nohrsc(client, coord, cancel),
            return_exceptions=True,
        )
        for label, result in (("SNOTEL", snotel), ("NOHRSC", nohrsc)):
            if not isinstance(result, BaseException):
                continue
            if is_fatal(result):
                raise result
            if isinstance(result, (ProviderError, httpx.HTTPError)):
                logger.warning("snowpack %s lookup failed: %s", label, result)
            else:
                logger.exception("snowpack %s lookup raised unexpectedly", label, exc_info=result)
        snotel = None if isinstance(snotel, BaseException) else snotel
        nohrsc = None if isinstance(nohrsc, BaseException) else nohrsc

        if snotel is None and nohrsc is None:
            return SnowpackReport.unavailable()

        metric, comparison = None, None
        if snotel is not None:
            if snotel.swe_comparison is not None and snotel.swe_comparison.status != "unknown":
                metric, comparison = "SWE", snotel.swe_comparison
            elif snotel.depth_comparison is not None and snotel.depth_comparison.status != "unknown":
                metric, comparison = "Snow Depth", snotel.depth_comparison
            snotel.historical_summary = describe_comparison(metric, comparison)

        parts = []
        if snotel is not None:
            parts.append(
                f"SNOTEL {snotel.station_name}: depth {_fmt_in(snotel.snow_depth_in)}, "
                f"SWE {_fmt_in(snotel.swe_in)} ({snotel.distance_km} km)."
            )
            parts.append(snotel.historical_summary)
        if nohrsc is not None:
            parts.append(f"NOHRSC grid: depth {_fmt_in(nohrsc.snow_depth_in)}, SWE {_fmt_in(nohrsc.swe_in)}.")

        return SnowpackReport(
            status="ok" if snotel is not None and nohrsc is not None else "partial",
            summary=" ".join(parts),
            snotel=snotel,
            nohrsc=nohrsc,
            overall_metric=metric,
            overall_comparison=comparison,
        )
