from __future__ import annotations

import os
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Literal, Optional, Sequence

import httpx
import numpy as np
import pandas as pd

from backcountry import net
from backcountry.cache import SnapshotCache
from backcountry.geo import Coordinate
from backcountry.providers import ProviderError, SignalProvider
from backcountry.timeutil import (
    clamp_travel_window_hours,
    find_closest_time_index,
    parse_time,
    utcnow,
)

logger = logging.getLogger(__name__)

PRECIP_CACHE_TTL_SECONDS = float(os.environ.get("BACKCOUNTRY_PRECIP_CACHE_TTL_SECONDS", "1800"))
PRECIP_TIMEOUT_SECONDS = max(net.REQUEST_TIMEOUT_SECONDS, 12.0)

LIVE_HOSTS = ("api.open-meteo.com", "customer-api.open-meteo.com")
ARCHIVE_HOST = "archive-api.open-meteo.com"
HOURLY_FIELDS = "precipitation,rain,snowfall"

INCHES_PER_MM = 0.0393701
INCHES_PER_CM = 0.393701
LOOKBACK_HOURS = (12, 24, 48)

SOURCE_LIVE = "Open-Meteo Precipitation History (Rain + Snowfall)"
SOURCE_CACHED = "Open-Meteo Precipitation History (Rain + Snowfall, cached fallback)"
SOURCE_STALE = "Open-Meteo Precipitation History (Rain + Snowfall, stale cached fallback)"
SOURCE_ARCHIVE = "Open-Meteo Archive Precipitation (Rain + Snowfall)"
SOURCE_ZEROED = "Open-Meteo Precipitation Fallback (zeroed totals)"

Mode = Literal["rolling", "forward"]


# ---------- Series ----------
@dataclass(frozen=True)
class HourlySeries:
    """Timestamps and values of one hourly variable; gaps and None values allowed."""
    time: List[datetime]
    value: List[Optional[float]]

    def __post_init__(self):
        if len(self.time) != len(self.value):
            raise ValueError(f"series length mismatch: {len(self.time)} times, {len(self.value)} values")

    @classmethod
    def from_payload(cls, times: Sequence[Any], values: Sequence[Any]) -> "HourlySeries":
        """Pair raw provider arrays, dropping timestamps that do not parse."""
        t_out: List[datetime] = []
        v_out: List[Optional[float]] = []
        for i, raw in enumerate(times):
            ts = parse_time(raw)
            if ts is None:
                continue
            t_out.append(ts)
            v_out.append(values[i] if i < len(values) else None)
        return cls(t_out, v_out)

    def to_series(self) -> pd.Series:
        index = pd.DatetimeIndex(self.time) if self.time else pd.DatetimeIndex([], tz="UTC")
        return pd.Series(pd.to_numeric(pd.Series(self.value, dtype=object), errors="coerce").astype("float64").to_numpy(), index=index)

    def has_finite_values(self) -> bool:
        s = self.to_series()
        return bool(((s >= 0) & np.isfinite(s)).any())

    def __len__(self) -> int:
        return len(self.time)


@dataclass(frozen=True)
class AccumulationWindow:
    anchor: datetime
    window_hours: float
    total: Optional[float]


def accumulate(
    series: HourlySeries,
    anchor: datetime,
    window_hours: float,
    mode: Mode = "rolling",
) -> Optional[float]:
    """Sum a series over a window.

    rolling: timestamps in (anchor - window, anchor].
    forward: timestamps in [anchor, anchor + window).

    Every timestamp in range counts as a sample even when its value is
    missing or negative; only finite, non-negative values are summed. No
    samples at all gives None so "no data" never reads as "no precipitation".
    """
    if window_hours is None or window_hours <= 0 or not len(series):
        return None
    s = series.to_series()
    a = pd.Timestamp(anchor)
    span = pd.Timedelta(hours=window_hours)
    if mode == "rolling":
        mask = (s.index > a - span) & (s.index <= a)
    elif mode == "forward":
        mask = (s.index >= a) & (s.index < a + span)
    else:
        raise ValueError(f"unknown accumulation mode: {mode}")
    if not mask.any():
        return None
    window = s[mask]
    total = window[(window >= 0) & np.isfinite(window)].sum()
    return round(float(total), 1)


def accumulation_window(series: HourlySeries, anchor: datetime, window_hours: float, mode: Mode = "rolling") -> AccumulationWindow:
    return AccumulationWindow(anchor=anchor, window_hours=window_hours, total=accumulate(series, anchor, window_hours, mode))


def mm_to_in(mm: Optional[float]) -> Optional[float]:
    return None if mm is None else round(mm * INCHES_PER_MM, 2)


def cm_to_in(cm: Optional[float]) -> Optional[float]:
    return None if cm is None else round(cm * INCHES_PER_CM, 2)


# ---------- Records ----------
@dataclass
class PrecipTotals:
    rain_past_12h_mm: Optional[float] = None
    rain_past_24h_mm: Optional[float] = None
    rain_past_48h_mm: Optional[float] = None
    rain_past_12h_in: Optional[float] = None
    rain_past_24h_in: Optional[float] = None
    rain_past_48h_in: Optional[float] = None
    snow_past_12h_cm: Optional[float] = None
    snow_past_24h_cm: Optional[float] = None
    snow_past_48h_cm: Optional[float] = None
    snow_past_12h_in: Optional[float] = None
    snow_past_24h_in: Optional[float] = None
    snow_past_48h_in: Optional[float] = None

    def any_value(self) -> bool:
        return any(v is not None for v in vars(self).values())


@dataclass
class ExpectedPrecip:
    status: str = "unavailable"
    travel_window_hours: Optional[int] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    rain_window_mm: Optional[float] = None
    rain_window_in: Optional[float] = None
    snow_window_cm: Optional[float] = None
    snow_window_in: Optional[float] = None
    note: Optional[str] = None


@dataclass
class PrecipitationSignal:
    source: str = SOURCE_LIVE
    status: str = "unavailable"
    mode: str = "observed_recent"
    issued_time: Optional[datetime] = None
    anchor_time: Optional[datetime] = None
    timezone: Optional[str] = None
    expected: ExpectedPrecip = field(default_factory=ExpectedPrecip)
    totals: PrecipTotals = field(default_factory=PrecipTotals)
    fallback_mode: Optional[str] = None
    note: Optional[str] = None
    link: Optional[str] = None

    @classmethod
    def unavailable(cls, status: str = "unavailable") -> "PrecipitationSignal":
        return cls(status=status)


def source_link(coord: Coordinate) -> str:
    return (
        f"https://api.open-meteo.com/v1/forecast?latitude={coord.lat}&longitude={coord.lon}"
        f"&timezone=UTC&past_days=3&forecast_days=8&hourly={HOURLY_FIELDS}"
    )


def _mode(target: datetime, now: datetime) -> str:
    return "projected_for_selected_start" if target > now + timedelta(hours=1) else "observed_recent"


def zero_fallback(
    target_time: datetime | None,
    travel_window_hours: Any,
    now: datetime,
    reason: str | None = None,
    link: str | None = None,
) -> PrecipitationSignal:
    """Conservative record for when no payload could be obtained at all."""
    hours = clamp_travel_window_hours(travel_window_hours, 12)
    anchor = target_time or now
    reason = (reason or "").strip() or "upstream precipitation feed unavailable"
    return PrecipitationSignal(
        source=SOURCE_ZEROED,
        status="partial",
        mode="unknown" if target_time is None else _mode(target_time, now),
        issued_time=anchor,
        anchor_time=anchor,
        timezone="UTC",
        fallback_mode="zeroed_totals",
        expected=ExpectedPrecip(
            status="no_data",
            travel_window_hours=hours,
            start_time=anchor,
            end_time=anchor + timedelta(hours=hours),
            note=f"Expected precipitation unavailable for the next {hours}h because upstream feed data was unavailable.",
        ),
        note=(
            f"Precipitation totals are on conservative zero fallback because upstream data could not be "
            f"fetched ({reason}). Verify upstream before relying on this window."
        ),
        link=link,
    )


def build_precipitation_signal(
    payload: Dict[str, Any],
    target_time: datetime | None,
    travel_window_hours: Any,
    now: datetime,
    source: str = SOURCE_LIVE,
    link: str | None = None,
) -> PrecipitationSignal:
    """Rolling look-back totals and the forward travel-window total from one payload."""
    hourly = payload.get("hourly") or {}
    times = hourly.get("time") or []
    precip = hourly.get("precipitation") or []
    rain = hourly.get("rain") or []
    snow = hourly.get("snowfall") or []
    if not times or not (precip or rain or snow):
        return zero_fallback(target_time, travel_window_hours, now, "timeseries missing from upstream payload", link)

    target = target_time or now
    anchor_idx = find_closest_time_index(times, target)
    if anchor_idx < 0:
        return zero_fallback(target_time, travel_window_hours, now, "timeseries did not include parsable timestamps", link)
    anchor = parse_time(times[anchor_idx]) or target

    rain_series = HourlySeries.from_payload(times, rain)
    precip_series = HourlySeries.from_payload(times, precip)
    if not rain_series.has_finite_values():
        if precip_series.has_finite_values() or not rain:
            rain_series = precip_series
    snow_series = HourlySeries.from_payload(times, snow)

    totals = PrecipTotals()
    for hours in LOOKBACK_HOURS:
        rain_mm = accumulate(rain_series, anchor, hours, "rolling")
        snow_cm = accumulate(snow_series, anchor, hours, "rolling")
        setattr(totals, f"rain_past_{hours}h_mm", rain_mm)
        setattr(totals, f"rain_past_{hours}h_in", mm_to_in(rain_mm))
        setattr(totals, f"snow_past_{hours}h_cm", snow_cm)
        setattr(totals, f"snow_past_{hours}h_in", cm_to_in(snow_cm))

    window_hours = clamp_travel_window_hours(travel_window_hours, 12)
    start: Optional[datetime] = None
    for t in rain_series.time:
        if t >= target and (start is None or t < start):
            start = t
    archive_future = source == SOURCE_ARCHIVE and target > now + timedelta(hours=1)
    if archive_future:
        start = None

    rain_window = None if start is None else accumulate(rain_series, start, window_hours, "forward")
    snow_window = None if start is None else accumulate(snow_series, start, window_hours, "forward")
    has_expected = rain_window is not None or snow_window is not None
    if has_expected:
        note = f"Expected precipitation totals for the next {window_hours}h from selected start time."
    elif archive_future:
        note = "Archive data is historical only and cannot forecast precipitation for a future start time."
    else:
        note = f"Expected precipitation totals unavailable for the next {window_hours}h from selected start time."
    expected = ExpectedPrecip(
        status="ok" if has_expected else "no_data",
        travel_window_hours=window_hours,
        start_time=start,
        end_time=None if start is None else start + timedelta(hours=window_hours),
        rain_window_mm=rain_window,
        rain_window_in=mm_to_in(rain_window),
        snow_window_cm=snow_window,
        snow_window_in=cm_to_in(snow_window),
        note=note,
    )

    mode = _mode(target, now)
    has_signal = totals.any_value() or has_expected
    if not has_signal:
        summary = "Precipitation timeseries exists but rolling totals were not computable for this anchor window."
    elif mode == "projected_for_selected_start":
        summary = "Rolling rain and snowfall totals are anchored to selected start time and can include forecast hours."
    else:
        summary = "Rolling rain and snowfall totals are based on recent hours prior to the selected period."

    return PrecipitationSignal(
        source=source,
        status="ok" if has_signal else "no_data",
        mode=mode,
        issued_time=anchor,
        anchor_time=anchor,
        timezone=payload.get("timezone") or "UTC",
        expected=expected,
        totals=totals,
        note=summary,
        link=link,
    )


# ---------- Acquisition chain ----------
class PrecipitationService(SignalProvider):
    """Live forecast, then fresh cache, then archive, then stale cache, then zeroed totals.

    Notes:
    - Cache entries are keyed by the coordinate rounded to 3 decimals.
    - The archive only holds past hours, so it is skipped for start times
      more than an hour ahead of `now`.
    """

    name = "precipitation"

    def __init__(self, cache: SnapshotCache | None = None):
        self.cache = cache or SnapshotCache("precip:v1", PRECIP_CACHE_TTL_SECONDS)

    def unavailable(self, status: str = "unavailable") -> PrecipitationSignal:
        return PrecipitationSignal.unavailable(status)

    async def fetch(
        self,
        client: httpx.AsyncClient,
        coord: Coordinate,
        target_time: datetime | None = None,
        travel_window_hours: Any = 12,
        now: datetime | None = None,
        cancel: asyncio.Event | None = None,
    ) -> PrecipitationSignal:
        now = now or utcnow()
        key = coord.cache_key()
        ts = now.timestamp()
        link = source_link(coord)
        base = {"latitude": coord.lat, "longitude": coord.lon, "timezone": "UTC", "hourly": HOURLY_FIELDS}
        last_error: Exception | None = None

        payload = None
        source = SOURCE_LIVE
        try:
            payload, _ = await net.fetch_json_with_fallback(
                client,
                [f"https://{host}/v1/forecast" for host in LIVE_HOSTS],
                params={**base, "past_days": 3, "forecast_days": 8},
                attempts=3,
                timeout=PRECIP_TIMEOUT_SECONDS,
                cancel=cancel,
                provider="Open-Meteo precipitation",
            )
            self.cache.put(key, payload, ts)
        except (ProviderError, httpx.HTTPError) as e:
            last_error = e
            logger.warning("precipitation live feed failed for %s: %s", key, e)

        if payload is None:
            payload = self.cache.fresh(key, ts)
            source = SOURCE_CACHED

        anchor = target_time or now
        if payload is None and anchor <= now + timedelta(hours=1):
            today = now.date()
            try:
                payload, _ = await net.fetch_json_with_fallback(
                    client,
                    [f"https://{ARCHIVE_HOST}/v1/archive"],
                    params={
                        **base,
                        "start_date": (today - timedelta(days=3)).isoformat(),
                        "end_date": today.isoformat(),
                    },
                    attempts=2,
                    timeout=PRECIP_TIMEOUT_SECONDS,
                    cancel=cancel,
                    provider="Open-Meteo precipitation archive",
                )
                self.cache.put(key, payload, ts)
                source = SOURCE_ARCHIVE
            except (ProviderError, httpx.HTTPError) as e:
                last_error = e
                logger.warning("precipitation archive failed for %s: %s", key, e)

        if payload is None:
            payload = self.cache.stale(key)
            source = SOURCE_STALE

        if payload is None:
            return zero_fallback(target_time, travel_window_hours, now, str(last_error or ""), link)
        return build_precipitation_signal(payload, target_time, travel_window_hours, now, source, link)
