from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, TYPE_CHECKING

from backcountry.providers import finite_or_none

if TYPE_CHECKING:
    from backcountry.alerts import AirQualitySignal, AlertsSignal
    from backcountry.weather import WeatherRecord

RISK_LABELS = ["Low", "Guarded", "Elevated", "High", "Extreme"]

FIRE_GUIDANCE = [
    "No strong fire-weather signal from current sources.",
    "Monitor updates; keep route options flexible.",
    "Avoid committing to long, exposed approaches; identify smoke/egress contingencies.",
    "Conservative plan advised: shorter objective, hard turn-around rules, and active monitoring.",
    "Do not commit to exposed objective windows in fire-prone terrain.",
]
HEAT_GUIDANCE = [
    "No notable heat signal from current forecast inputs.",
    "Warm exposure possible. Bring extra water and manage sun/shade transitions.",
    "Heat stress is plausible during sustained movement. Increase hydration and pace control.",
    "High heat-stress risk. Shorten exposed pushes and enforce frequent cooling breaks.",
    "Extreme heat-stress risk. Avoid committing to long, exposed objectives in this window.",
]

_FIRE_EVENT = re.compile(r"red flag|fire weather|wildfire|smoke|air quality", re.IGNORECASE)


# ---------- Fire ----------
@dataclass
class FireRisk:
    source: str = "Derived from NOAA weather, NWS alerts, and air-quality signals"
    status: str = "unavailable"
    level: Optional[int] = None
    label: str = "Unknown"
    guidance: str = "Fire risk signal unavailable."
    reasons: List[str] = field(default_factory=lambda: ["Fire risk signal unavailable."])
    alerts_considered: List[Dict[str, Any]] = field(default_factory=list)
    alerts_used: int = 0

    @classmethod
    def unavailable(cls, status: str = "unavailable") -> "FireRisk":
        return cls(status=status)


def _fmt(v: float) -> str:
    return f"{v:g}"


def build_fire_risk(
    weather: "WeatherRecord | None",
    alerts: "AlertsSignal | None",
    air_quality: "AirQualitySignal | None",
) -> FireRisk:
    """Level 0-4 from fire alerts, hot/dry/windy patterns and smoke signals."""
    description = (getattr(weather, "description", None) or "").lower()
    temp = finite_or_none(getattr(weather, "temp", None))
    humidity = finite_or_none(getattr(weather, "humidity", None))
    wind = finite_or_none(getattr(weather, "wind_speed", None))
    gust = finite_or_none(getattr(weather, "wind_gust", None))
    aqi = finite_or_none(getattr(air_quality, "us_aqi", None))

    relevant = alerts is not None and alerts.status != "future_time_not_supported"
    fire_alerts = [a for a in (alerts.alerts if relevant else []) if _FIRE_EVENT.search(a.event or "")]

    level = 0
    reasons: List[str] = []

    if any(re.search(r"red flag warning", a.event, re.IGNORECASE) for a in fire_alerts):
        level = max(level, 4)
        reasons.append("Red Flag Warning is active.")
    elif any(re.search(r"fire weather watch", a.event, re.IGNORECASE) for a in fire_alerts):
        level = max(level, 3)
        reasons.append("Fire Weather Watch is active.")
    smoke_alert = any(re.search(r"wildfire|smoke|air quality", a.event, re.IGNORECASE) for a in fire_alerts)

    if temp is not None and humidity is not None and wind is not None:
        if temp >= 90 and humidity <= 20 and wind >= 20:
            level = max(level, 4)
            reasons.append(f"Hot/dry/windy pattern ({_fmt(temp)}F, RH {_fmt(humidity)}%, wind {_fmt(wind)} mph).")
        elif temp >= 80 and humidity <= 25 and wind >= 15:
            level = max(level, 3)
            reasons.append(f"Elevated fire-weather pattern ({_fmt(temp)}F, RH {_fmt(humidity)}%, wind {_fmt(wind)} mph).")
        elif temp >= 70 and humidity <= 30 and (wind >= 12 or (gust is not None and gust >= 20)):
            level = max(level, 2)
            reasons.append(f"Dry and breezy conditions support faster fire spread ({_fmt(temp)}F, RH {_fmt(humidity)}%).")

    if re.search(r"smoke|haze", description) or (aqi is not None and aqi >= 101) or smoke_alert:
        level = max(level, 2)
        reasons.append("Smoke/air-quality signal may indicate nearby fire activity or transport.")
    elif aqi is not None and aqi >= 51:
        level = max(level, 1)
        reasons.append("Moderate AQI could affect exertion tolerance in exposed terrain.")

    return FireRisk(
        status="ok",
        level=level,
        label=RISK_LABELS[level],
        guidance=FIRE_GUIDANCE[level],
        reasons=reasons or [FIRE_GUIDANCE[0]],
        alerts_considered=[
            {"event": a.event, "severity": a.severity, "expires": a.expires, "link": a.link}
            for a in fire_alerts[:5]
        ],
        alerts_used=len(fire_alerts),
    )


# ---------- Heat ----------
@dataclass
class HeatRisk:
    source: str = "Derived from forecast temperature, apparent temperature, humidity, and lower-terrain elevation estimates"
    status: str = "unavailable"
    level: int = 0
    label: str = "Low"
    guidance: str = "Heat-risk signal unavailable."
    reasons: List[str] = field(default_factory=lambda: ["Heat-risk signal unavailable."])
    peak_temp_f: Optional[float] = None
    peak_feels_like_f: Optional[float] = None
    lower_terrain_label: Optional[str] = None
    lower_terrain_feels_like_f: Optional[float] = None

    @classmethod
    def unavailable(cls, status: str = "unavailable") -> "HeatRisk":
        return cls(status=status)


def build_heat_risk(weather: "WeatherRecord | None") -> HeatRisk:
    if weather is None:
        return HeatRisk.unavailable()
    temp = finite_or_none(weather.temp)
    feels = finite_or_none(weather.feels_like)
    if feels is None:
        feels = temp
    humidity = finite_or_none(weather.humidity)
    is_daytime = weather.is_daytime

    trend_temps = [t.temp for t in weather.trend if finite_or_none(t.temp) is not None]
    candidates = ([temp] if temp is not None else []) + trend_temps
    peak_temp = max(candidates) if candidates else None
    if feels is not None:
        peak_feels = max(feels, peak_temp) if peak_temp is not None else feels
    else:
        peak_feels = peak_temp

    lower = None
    for band in weather.elevation_bands:
        if band.delta_from_objective_ft < 0 and (lower is None or band.feels_like > lower.feels_like):
            lower = band
    eff_temp = peak_temp
    eff_feels = peak_feels
    if lower is not None:
        eff_temp = lower.temp if eff_temp is None else max(eff_temp, lower.temp)
        eff_feels = lower.feels_like if eff_feels is None else max(eff_feels, lower.feels_like)

    level = 0
    reasons: List[str] = []
    if eff_feels is not None:
        if eff_feels >= 100:
            level = max(level, 4)
            reasons.append(f"Peak apparent temperature in the travel window reaches {round(eff_feels)}F.")
        elif eff_feels >= 92:
            level = max(level, 3)
            reasons.append(f"Peak apparent temperature in the travel window reaches {round(eff_feels)}F.")
        elif eff_feels >= 84:
            level = max(level, 2)
            reasons.append(f"Apparent temperature in the travel window is near {round(eff_feels)}F.")
        elif eff_feels >= 76 and is_daytime is not False:
            level = max(level, 1)
            reasons.append(f"Warm daytime apparent temperature near {round(eff_feels)}F.")

    if eff_temp is not None and humidity is not None:
        if eff_temp >= 92 and humidity >= 55:
            level = max(level, 4)
            reasons.append(f"Heat + humidity pattern ({round(eff_temp)}F, RH {round(humidity)}%).")
        elif eff_temp >= 86 and humidity >= 55:
            level = max(level, 3)
            reasons.append(f"Warm/humid pattern ({round(eff_temp)}F, RH {round(humidity)}%).")
        elif eff_temp >= 80 and humidity >= 45:
            level = max(level, 2)
            reasons.append(f"Moderate humidity can increase heat load ({round(eff_temp)}F, RH {round(humidity)}%).")

    if lower is not None:
        reasons.append(
            f"Lower terrain can run warmer: {lower.label} ({lower.elevation_ft} ft) is estimated near "
            f"{lower.feels_like}F apparent."
        )
    if temp is not None and temp >= 85 and is_daytime is False and level > 0:
        reasons.append("Selected start appears after dark, but daytime heat exposure can still matter later in the window.")

    return HeatRisk(
        status="ok",
        level=level,
        label=RISK_LABELS[level],
        guidance=HEAT_GUIDANCE[level],
        reasons=reasons or [HEAT_GUIDANCE[0]],
        peak_temp_f=peak_temp,
        peak_feels_like_f=peak_feels,
        lower_terrain_label=lower.label if lower is not None else None,
        lower_terrain_feels_like_f=lower.feels_like if lower is not None else None,
    )
