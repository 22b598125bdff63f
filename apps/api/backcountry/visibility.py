from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, List, Optional

from backcountry.providers import finite_or_none

VISIBILITY_RISK_SOURCE = (
    "Derived from weather description, precipitation, wind, humidity, and cloud cover signals"
)

_SUMMARIES = {
    "Extreme": "Whiteout conditions are plausible; terrain contrast and navigation margin may collapse quickly.",
    "High": "Poor visibility is likely during this window. Expect route-finding and terrain-reading difficulty.",
    "Moderate": "Intermittent visibility reductions are possible. Keep close navigation checks.",
    "Low": "Mostly workable visibility with occasional reduced-contrast periods.",
    "Minimal": "No strong whiteout signal in the selected period.",
}

_TREND_CONDITION = re.compile(r"whiteout|blizzard|snow squall|blowing snow|fog|mist|haze|smoke")


@dataclass(frozen=True)
class VisibilityRisk:
    score: Optional[int]
    level: str
    summary: str
    factors: List[str] = field(default_factory=list)
    active_hours: Optional[int] = None
    window_hours: Optional[int] = None
    source: str = VISIBILITY_RISK_SOURCE


def _level(score: int) -> str:
    if score >= 80:
        return "Extreme"
    if score >= 60:
        return "High"
    if score >= 40:
        return "Moderate"
    if score >= 20:
        return "Low"
    return "Minimal"


def _trend_point_active(point: Any) -> bool:
    condition = str(getattr(point, "condition", None) or "").lower()
    precip = finite_or_none(getattr(point, "precip_chance", None))
    humidity = finite_or_none(getattr(point, "humidity", None))
    cloud = finite_or_none(getattr(point, "cloud_cover", None))
    wind = max(finite_or_none(getattr(point, "wind", None)) or 0.0, finite_or_none(getattr(point, "gust", None)) or 0.0)

    signals = 0
    if _TREND_CONDITION.search(condition):
        signals += 2
    if precip is not None and precip >= 60:
        signals += 2
    elif precip is not None and precip >= 40:
        signals += 1
    if humidity is not None and cloud is not None and humidity >= 92 and cloud >= 92:
        signals += 2
    elif cloud is not None and cloud >= 90:
        signals += 1
    if wind >= 35:
        signals += 2
    elif wind >= 25:
        signals += 1
    return signals >= 3


def build_visibility_risk(weather: Any) -> VisibilityRisk:
    """Whiteout / low-contrast score (0-100) for a weather record.

    Returns level "Unknown" with no score when every input is missing.
    """
    description = str(getattr(weather, "description", None) or "").lower().strip()
    precip = finite_or_none(getattr(weather, "precip_chance", None))
    humidity = finite_or_none(getattr(weather, "humidity", None))
    cloud = finite_or_none(getattr(weather, "cloud_cover", None))
    wind = finite_or_none(getattr(weather, "wind_speed", None))
    gust = finite_or_none(getattr(weather, "wind_gust", None))
    is_daytime = getattr(weather, "is_daytime", None)
    trend = list(getattr(weather, "trend", None) or ())

    signals_missing = not description or "unavailable" in description
    if signals_missing and all(v is None for v in (precip, humidity, cloud, wind, gust)) and not trend:
        return VisibilityRisk(
            score=None,
            level="Unknown",
            summary="Visibility/whiteout signal unavailable for this selected period.",
        )

    score = 0
    factors: List[str] = []

    def add(points: int, message: str) -> None:
        nonlocal score
        score += points
        factors.append(message)

    if re.search(r"whiteout|ground blizzard|blizzard", description):
        add(55, "whiteout/blizzard wording in forecast")
    elif re.search(r"snow squall|heavy snow|blowing snow|snow showers", description):
        add(38, "snowfall or blowing-snow signal")
    elif re.search(r"\bsnow\b", description):
        add(12, "light snow signal")
    elif re.search(r"dense fog|freezing fog|fog|mist|haze|smoke", description):
        add(30, "fog/smoke/haze signal")
    elif re.search(r"drizzle|rain|showers", description):
        add(12, "rain/drizzle signal")

    if precip is not None:
        if precip >= 80:
            add(22, f"high precip chance ({round(precip)}%)")
        elif precip >= 60:
            add(16, f"elevated precip chance ({round(precip)}%)")
        elif precip >= 40:
            add(10, f"moderate precip chance ({round(precip)}%)")
        elif precip >= 25:
            add(4, f"minor precip chance ({round(precip)}%)")

    effective_wind = max(wind or 0.0, gust or 0.0)
    if effective_wind >= 45:
        add(20, f"strong transport winds ({round(effective_wind)} mph)")
    elif effective_wind >= 35:
        add(14, f"wind-driven visibility reduction possible ({round(effective_wind)} mph)")
    elif effective_wind >= 25:
        add(8, f"moderate wind signal ({round(effective_wind)} mph)")

    if humidity is not None and cloud is not None and humidity >= 92 and cloud >= 92:
        add(18, f"saturated low-contrast air mass ({round(humidity)}% RH / {round(cloud)}% cloud)")
    elif humidity is not None and humidity >= 90:
        add(8, f"very high humidity ({round(humidity)}%)")

    if cloud is not None and cloud >= 95:
        add(8, f"overcast signal ({round(cloud)}% cloud)")
    elif cloud is not None and cloud >= 80:
        add(4, f"mostly overcast signal ({round(cloud)}% cloud)")

    active = sum(1 for p in trend if _trend_point_active(p))
    if trend:
        if active >= 6:
            add(12, f"{active}/{len(trend)} trend hours show persistent reduced visibility")
        elif active >= 3:
            add(7, f"{active}/{len(trend)} trend hours show reduced visibility")
        elif active >= 1:
            add(3, f"{active}/{len(trend)} trend hours show brief reduced visibility")

    if is_daytime is False:
        add(6, "nighttime period reduces terrain contrast")

    bounded = max(0, min(100, int(round(score))))
    level = _level(bounded)
    return VisibilityRisk(
        score=bounded,
        level=level,
        summary=_SUMMARIES[level],
        factors=factors[:4],
        active_hours=active,
        window_hours=len(trend),
    )
