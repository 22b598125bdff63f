from __future__ import annotations

from dataclasses import replace
from typing import Any, Dict, List, Optional

from backcountry.visibility import build_visibility_risk
from backcountry.weather import WeatherRecord, cloud_from_text

FUSED_FIELDS = (
    "wind_direction",
    "issued_time",
    "timezone",
    "forecast_end_time",
    "dew_point",
    "temperature_context_24h",
    "cloud_cover",
    "pressure",
)
MIN_PRIMARY_TREND_POINTS = 6


def is_missing(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    return False


def fuse_weather(primary: WeatherRecord, secondary: Optional[WeatherRecord]) -> WeatherRecord:
    """Fill gaps in the primary record from the secondary one, field by field.

    Every fused field ends up tagged in `field_sources`; primary values are
    never overwritten.
    """
    sources: Dict[str, str] = dict(primary.field_sources)
    updates: Dict[str, Any] = {}
    supplemented: List[str] = []

    for name in FUSED_FIELDS:
        ours = getattr(primary, name)
        theirs = getattr(secondary, name) if secondary is not None else None
        if is_missing(ours) and not is_missing(theirs):
            updates[name] = theirs
            sources[name] = "secondary"
            supplemented.append(name)
        else:
            sources.setdefault(name, "primary")

    trend = primary.trend
    other_trend = secondary.trend if secondary is not None else ()
    replaced = False
    if len(trend) < MIN_PRIMARY_TREND_POINTS and len(other_trend) > len(trend):
        trend = other_trend
        replaced = True
        sources["trend"] = "secondary"
        supplemented.append("trend")
    else:
        sources.setdefault("trend", "primary")

    if not replaced and trend and other_trend:
        filled = False
        rows = []
        for i, row in enumerate(trend):
            theirs = other_trend[i].pressure if i < len(other_trend) else None
            if is_missing(row.pressure) and not is_missing(theirs):
                rows.append(replace(row, pressure=theirs))
                filled = True
            else:
                rows.append(row)
        if filled:
            trend = tuple(rows)
            sources["pressure"] = "derived_from_blended_trend"
            supplemented.append("trend_pressure")

    merged = replace(primary, **updates, trend=tuple(trend))

    if merged.cloud_cover is None:
        estimate = cloud_from_text(merged.description)
        if estimate is not None:
            merged.cloud_cover = estimate
            sources["cloud_cover"] = "estimated_from_description"

    merged.field_sources = sources
    merged.source_details = {
        "primary": primary.provider,
        "blended": bool(supplemented),
        "supplemental_sources": [secondary.provider] if supplemented and secondary is not None else [],
        "supplemented_fields": supplemented,
    }
    merged.visibility_risk = build_visibility_risk(merged)
    sources["visibility_risk"] = (
        "derived_from_merged_fields" if supplemented else "derived_from_primary_fields"
    )
    return merged
