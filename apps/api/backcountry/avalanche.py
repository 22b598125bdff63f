from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, List, Optional, TYPE_CHECKING

from backcountry.providers import finite_or_none
from backcountry.timeutil import parse_date, parse_time

if TYPE_CHECKING:
    from backcountry.geo import ZoneMatch
    from backcountry.precipitation import PrecipitationSignal
    from backcountry.snowpack import SnowpackReport
    from backcountry.weather import WeatherRecord

UNKNOWN_MESSAGE = (
    "No official avalanche center forecast covers this objective. Avalanche terrain can still be "
    "dangerous. Treat conditions as unknown and use conservative terrain choices."
)
OFF_SEASON_MESSAGE = (
    "Local avalanche center is not currently issuing forecasts for this zone (likely off-season). "
    "This does not imply zero risk; assess snow and terrain conditions directly."
)
UNAVAILABLE_MESSAGE = (
    "Avalanche center data could not be retrieved right now. Avalanche terrain can still be dangerous. "
    "Treat risk as unknown and use conservative terrain choices."
)

WINTER_MONTHS = {11, 12, 1, 2, 3, 4}
SHOULDER_MONTHS = {5, 6, 10}

MATERIAL_SNOW_DEPTH_IN = 8.0
MATERIAL_SWE_IN = 1.0
MEASURABLE_SNOW_DEPTH_IN = 2.0
MEASURABLE_SWE_IN = 0.2

_NO_FORECAST_LANGUAGE = re.compile(
    r"no (current )?avalanche forecast|outside (the )?forecast season|not issuing forecasts"
    r"|forecast season has ended|off[- ]?season"
)
_RATED_DANGER_WORD = re.compile(r"low|moderate|considerable|high|extreme")
_WINTRY = re.compile(r"snow|sleet|blizzard|ice|freezing|wintry|graupel|flurr|rime")


@dataclass
class AvalancheSignal:
    source: str = "Avalanche.org public map layer"
    status: str = "ok"
    coverage_status: str = "reported"
    center: Optional[str] = None
    center_id: Optional[str] = None
    zone: Optional[str] = None
    risk: str = "Unknown"
    danger_level: int = 0
    danger_unknown: bool = True
    bottom_line: Optional[str] = None
    problems: List[Dict[str, Any]] = field(default_factory=list)
    published_time: Optional[datetime] = None
    expires_time: Optional[datetime] = None
    link: Optional[str] = None
    match_mode: str = "none"
    fallback_distance_km: Optional[float] = None
    relevant: Optional[bool] = None
    relevance_reason: Optional[str] = None
    stale_warning: Optional[str] = None

    @classmethod
    def unknown(cls, coverage_status: str = "no_center_coverage") -> "AvalancheSignal":
        if coverage_status == "temporarily_unavailable":
            return cls(status="unavailable", coverage_status=coverage_status,
                       center="Avalanche Data Unavailable", bottom_line=UNAVAILABLE_MESSAGE)
        if coverage_status == "no_active_forecast":
            return cls(coverage_status=coverage_status, center="Avalanche Forecast Off-Season",
                       bottom_line=OFF_SEASON_MESSAGE)
        return cls(coverage_status=coverage_status, center="No Avalanche Center Coverage",
                   bottom_line=UNKNOWN_MESSAGE)


def avalanche_signal_from_match(match: "ZoneMatch", target_time: datetime | None = None) -> AvalancheSignal:
    """Read the map-layer properties of the matched zone into an AvalancheSignal."""
    if match.feature is None:
        return AvalancheSignal.unknown("no_center_coverage")

    props = match.feature.properties
    level = finite_or_none(props.get("danger_level"))
    main_level = int(level) if level is not None else 0
    reported_risk = str(props.get("danger") or "").strip()
    advice = str(props.get("travel_advice") or "")
    has_issued_window = bool(props.get("start_date") or props.get("end_date"))
    no_forecast_language = bool(_NO_FORECAST_LANGUAGE.search(f"{reported_risk.lower()} {advice.lower()}"))
    no_rating = main_level <= 0 and not _RATED_DANGER_WORD.search(reported_risk.lower())
    off_season = props.get("off_season") is True or no_forecast_language or (not has_issued_window and no_rating)

    signal = AvalancheSignal(
        center=props.get("center"),
        center_id=props.get("center_id"),
        zone=props.get("name"),
        risk="Unknown" if off_season else (reported_risk or "No Rating"),
        danger_level=0 if (off_season or no_rating) else main_level,
        danger_unknown=off_season or no_rating,
        coverage_status="no_active_forecast" if off_season else "reported",
        bottom_line=(advice.strip() or OFF_SEASON_MESSAGE) if off_season else (advice or None),
        published_time=None if off_season else parse_time(props.get("start_date")),
        expires_time=None if off_season else parse_time(props.get("end_date")),
        link=props.get("link") or props.get("center_link"),
        match_mode=match.mode,
        fallback_distance_km=match.fallback_distance_km,
    )

    if (
        signal.coverage_status == "reported"
        and target_time is not None
        and signal.expires_time is not None
        and signal.expires_time < target_time
    ):
        signal = replace(
            signal,
            coverage_status="expired_for_selected_start",
            stale_warning="Avalanche product expires before the selected start time; treat as stale guidance.",
        )
    return signal


# ---------- Relevance ----------
@dataclass(frozen=True)
class SnowpackEvidence:
    has_signal: bool = False
    has_material_signal: bool = False
    has_measurable_presence: bool = False
    has_no_signal: bool = False
    has_observed_presence: bool = False
    reason: Optional[str] = None


def _snow_parts(depth: float | None, swe: float | None, swe_digits: int = 1) -> str:
    parts = []
    if depth is not None:
        parts.append(f"depth ~{depth:.1f} in")
    if swe is not None:
        parts.append(f"SWE ~{swe:.{swe_digits}f} in")
    return ", ".join(parts)


def evaluate_snowpack_signal(snowpack: "SnowpackReport | None") -> SnowpackEvidence:
    """Classify observed snowpack as material, measurable, low or mixed."""
    if snowpack is None:
        return SnowpackEvidence()

    depths: List[float] = []
    swes: List[float] = []
    snotel = snowpack.snotel
    if snotel is not None and (snotel.distance_km is None or snotel.distance_km <= 80):
        if snotel.snow_depth_in is not None:
            depths.append(snotel.snow_depth_in)
        if snotel.swe_in is not None:
            swes.append(snotel.swe_in)
    nohrsc = snowpack.nohrsc
    if nohrsc is not None:
        if nohrsc.snow_depth_in is not None:
            depths.append(nohrsc.snow_depth_in)
        if nohrsc.swe_in is not None:
            swes.append(nohrsc.swe_in)

    if not depths and not swes:
        return SnowpackEvidence()

    depth = max(depths) if depths else None
    swe = max(swes) if swes else None

    if (depth is not None and depth >= MATERIAL_SNOW_DEPTH_IN) or (swe is not None and swe >= MATERIAL_SWE_IN):
        return SnowpackEvidence(
            has_signal=True,
            has_material_signal=True,
            has_measurable_presence=True,
            has_observed_presence=True,
            reason=f"Snowpack Snapshot shows material snowpack ({_snow_parts(depth, swe)}).",
        )
    if (depth is not None and depth >= MEASURABLE_SNOW_DEPTH_IN) or (swe is not None and swe >= MEASURABLE_SWE_IN):
        return SnowpackEvidence(
            has_measurable_presence=True,
            has_observed_presence=True,
            reason=(
                f"Snowpack Snapshot shows measurable snowpack ({_snow_parts(depth, swe)}), "
                "below material avalanche relevance threshold."
            ),
        )
    if depth is not None and depth <= 1 and (swe is None or swe <= 0.25):
        return SnowpackEvidence(
            has_no_signal=True,
            reason=f"Snowpack Snapshot shows very low snow signal ({_snow_parts(depth, swe, swe_digits=2)}).",
        )
    return SnowpackEvidence(
        has_observed_presence=True,
        reason="Snowpack Snapshot is mixed/patchy and below material avalanche threshold; use weather and season context.",
    )


def evaluate_avalanche_relevance(
    lat: float,
    selected_date: str | None,
    weather: "WeatherRecord | None",
    avalanche: AvalancheSignal,
    snowpack: "SnowpackReport | None",
    precipitation: "PrecipitationSignal | None",
) -> tuple[bool, str]:
    """Decide whether avalanche hazard should count for this objective and date."""
    if avalanche.coverage_status == "expired_for_selected_start":
        return True, "Avalanche product expired before the selected start time; shown as stale guidance only."
    if avalanche.coverage_status == "reported" and not avalanche.danger_unknown:
        return True, "Official avalanche center forecast covers this objective."

    expected_snow = precipitation.expected.snow_window_in if precipitation is not None else None
    if expected_snow is not None and expected_snow >= 6:
        return True, (
            "Significant snow accumulation (>=6 in) expected during the travel window; "
            "active loading increases avalanche cycle risk."
        )

    elevation = weather.elevation_ft if weather is not None else None
    temp = weather.temp if weather is not None else None
    feels = weather.feels_like if weather is not None else None
    precip_chance = weather.precip_chance if weather is not None else None
    description = (weather.description or "").lower() if weather is not None else ""
    forecast_day = parse_date(selected_date) or parse_date(weather.forecast_date if weather is not None else None)
    month = forecast_day.month if forecast_day is not None else None

    high_latitude = abs(lat) >= 42
    high_elevation = elevation is not None and elevation >= 8500
    mid_elevation = elevation is not None and elevation >= 6500
    winter = month is not None and (month in WINTER_MONTHS or (high_elevation and month == 5))
    shoulder = month is not None and not winter and month in SHOULDER_MONTHS
    season_unknown = month is None
    evidence = evaluate_snowpack_signal(snowpack)

    wintry = (
        bool(_WINTRY.search(description))
        or (temp is not None and temp <= 34)
        or (feels is not None and feels <= 30)
        or (precip_chance is not None and precip_chance >= 50 and temp is not None and temp <= 38)
    )
    if wintry:
        return True, "Forecast includes wintry signals (snow/ice/freezing conditions)."

    if evidence.has_material_signal or evidence.has_signal:
        return True, evidence.reason or "Snowpack Snapshot indicates meaningful snowpack."

    if evidence.has_measurable_presence:
        base = evidence.reason or "Snowpack Snapshot shows measurable snowpack."
        if high_elevation and (winter or shoulder or season_unknown):
            return True, f"{base} Elevation/season context keeps avalanche relevance on."
        if mid_elevation and high_latitude and (winter or season_unknown):
            return True, f"{base} Winter latitude/elevation context keeps avalanche relevance on."
        return False, (
            f"{base} Keep monitoring, but avalanche forecasting is de-emphasized until snowpack "
            "reaches material levels or wintry signals increase."
        )

    if evidence.has_no_signal and avalanche.coverage_status in ("no_active_forecast", "no_center_coverage"):
        base = evidence.reason or "Snowpack Snapshot shows low snow signal."
        if avalanche.coverage_status == "no_active_forecast":
            return False, f"{base} Local avalanche center is out of forecast season."
        return False, f"{base} No local avalanche center coverage for this objective."

    if avalanche.coverage_status == "no_active_forecast" and not winter and not shoulder:
        return False, "Local avalanche center is out of forecast season for this objective/date."

    if high_elevation and (winter or shoulder or season_unknown):
        return True, "High-elevation objective has meaningful seasonal snow potential."

    if mid_elevation and high_latitude and (winter or season_unknown):
        return True, "Mid-elevation objective in winter window at snow-prone latitude."

    if evidence.has_no_signal and not winter and not shoulder:
        return False, evidence.reason or "Snowpack Snapshot shows low snow signal for this objective window."

    return False, "Objective appears typically low-snow for the selected season and forecast."
