from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from backcountry.alerts import AirQualitySignal, AlertsSignal, normalize_severity
from backcountry.avalanche import UNKNOWN_MESSAGE, AvalancheSignal
from backcountry.hazards import FireRisk, HeatRisk
from backcountry.precipitation import PrecipitationSignal
from backcountry.providers import finite_or_none
from backcountry.timeutil import (
    clamp_travel_window_hours,
    hours_between,
    parse_date,
    parse_time,
    utcnow,
)
from backcountry.weather import WeatherRecord, compute_feels_like_f

GROUP_CAPS = {
    "avalanche": 55,
    "weather": 42,
    "alerts": 24,
    "airQuality": 20,
    "fire": 18,
}
MIN_CONFIDENCE = 20
ALERTS_VALID_LEAD_HOURS = 48
STABLE_EXPLANATION = "Conditions appear stable for the selected plan window."


# ---------- Models ----------
@dataclass(frozen=True)
class HazardFactor:
    hazard: str
    impact: int
    group: str
    message: str
    source: str


@dataclass(frozen=True)
class GroupImpact:
    raw: int
    capped: int
    cap: int


@dataclass(frozen=True)
class SafetyScoreResult:
    score: int
    confidence: int
    primary_hazard: str
    explanations: List[str]
    factors: List[HazardFactor]
    group_impacts: Dict[str, GroupImpact]
    confidence_reasons: List[str]
    sources_used: List[str]
    air_quality_category: str


@dataclass
class SafetySignals:
    """Everything one score composition reads. Missing records mean the feed failed."""
    weather: Optional[WeatherRecord] = None
    avalanche: Optional[AvalancheSignal] = None
    alerts: Optional[AlertsSignal] = None
    air_quality: Optional[AirQualitySignal] = None
    fire: Optional[FireRisk] = None
    heat: Optional[HeatRisk] = None
    precipitation: Optional[PrecipitationSignal] = None
    selected_date: Optional[str] = None
    travel_window_hours: Any = None


def hazard_group(hazard: str) -> str:
    h = hazard.lower()
    if "avalanche" in h:
        return "avalanche"
    if "alert" in h:
        return "alerts"
    if "air quality" in h:
        return "airQuality"
    if "fire" in h:
        return "fire"
    return "weather"


# ---------- Composer ----------
def compose_safety_score(signals: SafetySignals, now: datetime | None = None) -> SafetyScoreResult:
    """Fold every signal into a 0-100 safety score and a 20-100 confidence.

    Notes:
    - Impacts are summed per hazard group and capped per group before
      they are subtracted from 100.
    - Pure given `now`; nothing is fetched or mutated.
    """
    now = now or utcnow()
    weather = signals.weather or WeatherRecord.unavailable(signals.selected_date)
    avalanche = signals.avalanche or AvalancheSignal.unknown("temporarily_unavailable")
    alerts = signals.alerts or AlertsSignal.unavailable()
    air = signals.air_quality or AirQualitySignal.unavailable()
    precip = signals.precipitation or PrecipitationSignal.unavailable()
    fire = signals.fire
    heat = signals.heat

    factors: List[HazardFactor] = []
    explanations: List[str] = []

    def apply(hazard: str, impact: int, message: str, source: str) -> None:
        if impact <= 0:
            return
        factors.append(HazardFactor(hazard, impact, hazard_group(hazard), message, source))
        explanations.append(message)

    description = (weather.description or "").lower()
    wind = finite_or_none(weather.wind_speed)
    gust = finite_or_none(weather.wind_gust)
    precip_chance = finite_or_none(weather.precip_chance)
    temp = finite_or_none(weather.temp)
    feels = finite_or_none(weather.feels_like)
    if feels is None:
        feels = temp
    is_daytime = weather.is_daytime
    vis = weather.visibility_risk
    vis_score = vis.score if vis is not None else None

    risk = (avalanche.risk or "").lower()
    avy_relevant = avalanche.relevant is not False
    avy_unknown = avy_relevant and (avalanche.danger_unknown or "unknown" in risk or "no forecast" in risk)
    avy_level = avalanche.danger_level
    problem_count = len(avalanche.problems or [])

    aqi = finite_or_none(air.us_aqi)
    aq_relevant = air.status != "not_applicable_future_date"

    trend = list(weather.trend)
    n = len(trend)
    window_hours = max(1, n or clamp_travel_window_hours(signals.travel_window_hours, 12))
    trend_temps = [t.temp for t in trend if t.temp is not None]
    trend_gusts = [g for g in ((t.gust if t.gust is not None else t.wind) for t in trend) if g is not None]
    trend_precips = [t.precip_chance for t in trend if t.precip_chance is not None]
    trend_feels = [
        compute_feels_like_f(t.temp, t.wind if t.wind is not None else (t.gust or 0.0))
        for t in trend if t.temp is not None
    ]
    trend_feels = [f for f in trend_feels if f is not None]
    temp_range = max(trend_temps) - min(trend_temps) if trend_temps else 0
    min_feels = min(trend_feels) if trend_feels else feels
    max_feels = max(trend_feels) if trend_feels else feels
    peak_precip = max(trend_precips) if trend_precips else precip_chance
    peak_gust = max(trend_gusts) if trend_gusts else (gust or 0.0)

    def windy(t, sustained: float, gusting: float) -> bool:
        g = t.gust if t.gust is not None else t.wind
        return (t.wind is not None and t.wind >= sustained) or (g is not None and g >= gusting)

    severe_wind_hours = sum(1 for t in trend if windy(t, 30, 45))
    strong_wind_hours = sum(1 for t in trend if windy(t, 20, 30))
    high_precip_hours = sum(1 for p in trend_precips if p >= 60)
    moderate_precip_hours = sum(1 for p in trend_precips if p >= 40)
    cold_hours = sum(1 for f in trend_feels if f <= 15)
    extreme_cold_hours = sum(1 for f in trend_feels if f <= 0)
    heat_hours = sum(1 for f in trend_feels if f >= 85)

    totals = precip.totals
    rain_24h = totals.rain_past_24h_in
    snow_24h = totals.snow_past_24h_in
    expected_rain = precip.expected.rain_window_in
    expected_snow = precip.expected.snow_window_in
    precip_source = precip.source or "Open-Meteo precipitation history"

    lead_hours: Optional[float] = None
    if weather.forecast_start_time is not None:
        lead_hours = hours_between(weather.forecast_start_time, now)
    else:
        day = parse_date(signals.selected_date)
        if day is not None:
            midnight = datetime(day.year, day.month, day.day, tzinfo=timezone.utc)
            lead_hours = hours_between(midnight, now)
    alerts_valid = lead_hours is None or lead_hours <= ALERTS_VALID_LEAD_HOURS

    # ---------- Avalanche ----------
    if avy_relevant:
        if avy_unknown:
            apply("Avalanche Uncertainty", 16, UNKNOWN_MESSAGE, "Avalanche center coverage")
        elif avy_level >= 4 or "high" in risk or "extreme" in risk:
            apply("Avalanche", 52, "High avalanche danger reported. Avoid avalanche terrain and steep loaded slopes.", "Avalanche center forecast")
        elif avy_level == 3 or "considerable" in risk:
            apply("Avalanche", 34, "Considerable avalanche danger. Conservative terrain selection and strict spacing are required.", "Avalanche center forecast")
        elif avy_level == 2 or "moderate" in risk:
            apply("Avalanche", 15, "Moderate avalanche danger. Evaluate snowpack and avoid connected terrain traps.", "Avalanche center forecast")
        elif avy_level == 1:
            apply("Avalanche", 4, "Low avalanche danger still requires basic avalanche precautions in suspect terrain.", "Avalanche center forecast")
        if problem_count >= 3:
            apply("Avalanche", 6, f"{problem_count} avalanche problems are listed by the center, increasing snowpack complexity.", "Avalanche problem list")

    # ---------- Wind ----------
    effective_wind = max(wind or 0.0, gust or 0.0, peak_gust or 0.0)
    start_wind = round(wind or 0)
    start_gust = round(gust if gust is not None else effective_wind)
    if effective_wind >= 50 or (wind is not None and wind >= 35):
        apply("Wind", 20, f"Severe wind exposure expected (start wind {start_wind} mph, gust {start_gust} mph, trend peak {round(effective_wind)} mph).", "NOAA hourly forecast")
    elif effective_wind >= 40 or (wind is not None and wind >= 25):
        apply("Wind", 12, f"Strong winds expected (start wind {start_wind} mph, gust {start_gust} mph, trend peak {round(effective_wind)} mph).", "NOAA hourly forecast")
    elif effective_wind >= 30 or (wind is not None and wind >= 18):
        apply("Wind", 6, f"Moderate wind signal (trend peak {round(effective_wind)} mph) may affect exposed movement.", "NOAA hourly forecast")

    if severe_wind_hours >= 4:
        apply("Wind", 8, f"{severe_wind_hours}/{n} trend hours are severe wind windows (>=30 mph sustained or >=45 mph gust).", "NOAA hourly trend")
    elif severe_wind_hours >= 2:
        apply("Wind", 5, f"{severe_wind_hours}/{n} trend hours show severe wind windows.", "NOAA hourly trend")
    elif strong_wind_hours >= 6:
        apply("Wind", 4, f"{strong_wind_hours}/{n} trend hours are windy (>=20 mph sustained or >=30 mph gust).", "NOAA hourly trend")
    elif strong_wind_hours >= 3:
        apply("Wind", 2, f"{strong_wind_hours}/{n} trend hours are windy and may reduce margin on exposed terrain.", "NOAA hourly trend")

    # ---------- Storm ----------
    if peak_precip is not None and peak_precip >= 40:
        impact = 12 if peak_precip >= 80 else 8 if peak_precip >= 60 else 4
        apply("Storm", impact, f"Peak precipitation chance in the window reaches {round(peak_precip)}%.", "NOAA hourly forecast")

    if high_precip_hours >= 4:
        apply("Storm", 7, f"{high_precip_hours}/{n} trend hours are high precip windows (>=60%).", "NOAA hourly trend")
    elif high_precip_hours >= 2:
        apply("Storm", 4, f"{high_precip_hours}/{n} trend hours are high precip windows.", "NOAA hourly trend")
    elif moderate_precip_hours >= 6:
        apply("Storm", 3, f"{moderate_precip_hours}/{n} trend hours are moderate precip windows (>=40%).", "NOAA hourly trend")

    if re.search(r"thunderstorm|lightning|blizzard", description):
        apply("Storm", 18, f'Convective or severe weather signal in forecast: "{weather.description}".', "NOAA short forecast")
    elif re.search(r"snow|sleet|freezing rain|ice", description):
        apply("Winter Weather", 10, f'Frozen precipitation in forecast ("{weather.description}") increases travel hazard.', "NOAA short forecast")

    # ---------- Visibility ----------
    if vis_score is not None:
        impact = 12 if vis_score >= 80 else 9 if vis_score >= 60 else 6 if vis_score >= 40 else 3 if vis_score >= 20 else 0
        if impact:
            note = f" {round(vis.active_hours)}/{n} trend hours show reduced-visibility signal." if vis.active_hours is not None and n else ""
            apply("Visibility", impact, f"Whiteout/visibility risk is {vis.level or 'elevated'} ({round(vis_score)}/100).{note}", vis.source)
    elif re.search(r"fog|smoke|haze", description):
        apply("Visibility", 6, f'Reduced-visibility weather in forecast ("{weather.description}").', "NOAA short forecast")

    # ---------- Temperature ----------
    if min_feels is not None:
        if min_feels <= -10:
            apply("Cold", 15, f"Minimum apparent temperature in the window is {round(min_feels)}F.", "NOAA temp + windchill")
        elif min_feels <= 0:
            apply("Cold", 10, f"Very cold apparent temperature in the window ({round(min_feels)}F).", "NOAA temp + windchill")
        elif min_feels <= 15:
            apply("Cold", 6, f"Cold apparent temperature in the window ({round(min_feels)}F).", "NOAA temp + windchill")
        elif min_feels <= 25:
            apply("Cold", 3, f"Cool apparent temperatures ({round(min_feels)}F) reduce comfort and dexterity margin.", "NOAA temp + windchill")
    if extreme_cold_hours >= 3:
        apply("Cold", 6, f"{extreme_cold_hours}/{n} trend hours are at or below 0F apparent temperature.", "NOAA hourly trend")
    elif cold_hours >= 5:
        apply("Cold", 4, f"{cold_hours}/{n} trend hours are at or below 15F apparent temperature.", "NOAA hourly trend")

    heat_level = heat.level if heat is not None and heat.status == "ok" else None
    heat_source = heat.source if heat is not None else "Heat risk synthesis"
    if heat_level is not None and heat_level >= 4:
        apply("Heat", 14, f"Heat risk is {heat.label} with significant heat-stress potential in the selected window.", heat_source)
    elif heat_level is not None and heat_level >= 3:
        apply("Heat", 10, f"Heat risk is {heat.label} in the selected window.", heat_source)
    elif heat_level is not None and heat_level >= 2:
        apply("Heat", 6, f"Heat risk is {heat.label} in the selected window.", heat_source)
    elif heat_level is not None and heat_level >= 1:
        apply("Heat", 2, f"Heat risk is {heat.label}; monitor pace and hydration.", heat_source)
    elif max_feels is not None and max_feels >= 90:
        apply("Heat", 6, f"Peak apparent temperature in the window reaches {round(max_feels)}F.", "NOAA temp + humidity")
    elif max_feels is not None and max_feels >= 82 and heat_hours >= 4:
        apply("Heat", 3, f"{heat_hours}/{n} trend hours are warm (>=85F apparent).", "NOAA hourly trend")

    # ---------- Surface and expected precipitation ----------
    if precip.fallback_mode == "zeroed_totals":
        apply("Surface Conditions", 4, "Precipitation data unavailable (upstream outage); surface conditions are unknown, treat as potentially hazardous.", precip_source)
    elif rain_24h is not None and rain_24h >= 0.75:
        apply("Surface Conditions", 7, f"Recent rainfall is heavy ({rain_24h:.2f} in in 24h), increasing slick/trail-softening risk.", precip_source)
    elif rain_24h is not None and rain_24h >= 0.3:
        apply("Surface Conditions", 4, f"Recent rainfall ({rain_24h:.2f} in in 24h) can create slippery or muddy travel.", precip_source)

    if snow_24h is not None and snow_24h >= 6:
        apply("Surface Conditions", 8, f"Recent snowfall is substantial ({snow_24h:.1f} in in 24h), increasing trail and route uncertainty.", precip_source)
    elif snow_24h is not None and snow_24h >= 2:
        apply("Surface Conditions", 4, f"Recent snowfall ({snow_24h:.1f} in in 24h) can hide surface hazards and slow travel.", precip_source)

    if expected_rain is not None and expected_rain >= 0.5:
        apply("Storm", 6, f"Expected rain in selected travel window is {expected_rain:.2f} in.", precip_source)
    elif expected_rain is not None and expected_rain >= 0.2:
        apply("Storm", 3, f"Expected rain in selected travel window is {expected_rain:.2f} in.", precip_source)

    if expected_snow is not None and expected_snow >= 4:
        apply("Winter Weather", 7, f"Expected snowfall in selected travel window is {expected_snow:.1f} in.", precip_source)
    elif expected_snow is not None and expected_snow >= 1.5:
        apply("Winter Weather", 3, f"Expected snowfall in selected travel window is {expected_snow:.1f} in.", precip_source)

    # ---------- Darkness, volatility, lead time ----------
    if is_daytime is False:
        apply("Darkness", 5, "Selected forecast period is nighttime, reducing navigation margin and terrain visibility.", "NOAA isDaytime flag")

    if temp_range >= 18:
        apply("Weather Volatility", 6, f"Large {window_hours}-hour temperature swing ({round(temp_range)}F) suggests unstable conditions.", "NOAA hourly trend")
    if peak_gust >= 45 and (gust is None or gust < 45):
        apply("Wind", 6, f"Peak gusts in the next {window_hours} hours reach {round(peak_gust)} mph.", "NOAA hourly trend")

    if lead_hours is not None and lead_hours > 6:
        impact = 10 if lead_hours >= 96 else 8 if lead_hours >= 72 else 6 if lead_hours >= 48 else 4 if lead_hours >= 24 else 2
        if not alerts_valid:
            impact += 2
        apply(
            "Forecast Uncertainty",
            min(14, impact),
            f"Selected start is {round(lead_hours)}h ahead; confidence is lower because fewer real-time feeds can be projected.",
            "Forecast lead time",
        )

    # ---------- Alerts, air quality, fire ----------
    alert_count = alerts.active_count
    severity = normalize_severity(alerts.highest_severity)
    events: List[str] = []
    for a in alerts.alerts:
        if a.event and a.event not in events:
            events.append(a.event)
    listed = f" ({', '.join(events[:3])})" if events else ""
    if alerts_valid and alert_count > 0:
        if severity == "extreme":
            apply("Official Alert", 24, f"{alert_count} active NWS alert(s){listed} with EXTREME severity.", "NOAA/NWS Active Alerts")
        elif severity == "severe":
            apply("Official Alert", 16, f"{alert_count} active NWS alert(s){listed} with severe impacts possible.", "NOAA/NWS Active Alerts")
        elif severity == "moderate":
            apply("Official Alert", 10, f"{alert_count} active NWS alert(s){listed} indicate moderate hazard.", "NOAA/NWS Active Alerts")
        else:
            apply("Official Alert", 5, f"{alert_count} active NWS alert(s){listed} are in effect.", "NOAA/NWS Active Alerts")

    if aq_relevant and aqi is not None:
        if aqi >= 201:
            apply("Air Quality", 20, f"Air quality is hazardous (US AQI {round(aqi)}).", "Open-Meteo Air Quality")
        elif aqi >= 151:
            apply("Air Quality", 14, f"Air quality is unhealthy (US AQI {round(aqi)}).", "Open-Meteo Air Quality")
        elif aqi >= 101:
            apply("Air Quality", 8, f"Air quality is unhealthy for sensitive groups (US AQI {round(aqi)}).", "Open-Meteo Air Quality")
        elif aqi >= 51:
            apply("Air Quality", 3, f"Air quality is moderate (US AQI {round(aqi)}).", "Open-Meteo Air Quality")

    fire_level = fire.level if fire is not None else None
    fire_source = fire.source if fire is not None else "Fire risk synthesis"
    if fire_level is not None and fire_level >= 4:
        apply("Fire Danger", 16, "Extreme fire-weather/alert signal for this objective window.", fire_source)
    elif fire_level is not None and fire_level >= 3:
        apply("Fire Danger", 10, "High fire-weather signal: elevated spread potential or fire-weather alerts.", fire_source)
    elif fire_level is not None and fire_level >= 2:
        apply("Fire Danger", 5, "Elevated fire risk signal from weather, smoke, or alert context.", fire_source)

    weather_unavailable = weather.is_unavailable
    if weather_unavailable:
        apply(
            "Weather Unavailable",
            20,
            "All weather data is unavailable; wind, precipitation, and temperature conditions are unknown.",
            "System",
        )

    # ---------- Score ----------
    raw_by_group: Dict[str, int] = {}
    for f in factors:
        raw_by_group[f.group] = raw_by_group.get(f.group, 0) + f.impact
    group_impacts = {
        group: GroupImpact(raw=raw, capped=min(raw, GROUP_CAPS.get(group, 100)), cap=GROUP_CAPS.get(group, 100))
        for group, raw in raw_by_group.items()
    }
    score = max(0, round(100 - sum(g.capped for g in group_impacts.values())))

    # ---------- Confidence ----------
    confidence = 100
    reasons: List[str] = []

    def penalize(points: int, reason: str) -> None:
        nonlocal confidence
        confidence -= points
        reasons.append(reason)

    if weather_unavailable:
        penalize(30, "Complete weather data unavailable; do not rely on this report for go/no-go decisions.")
    elif weather.issued_time is None:
        penalize(8, "Weather issue time unavailable.")
    else:
        age = hours_between(now, weather.issued_time)
        if age > 18:
            penalize(12, f"Weather issuance is {round(age)}h old.")
        elif age > 10:
            penalize(7, f"Weather issuance is {round(age)}h old.")
        elif age > 6:
            penalize(4, f"Weather issuance is {round(age)}h old.")

    if n < 6:
        penalize(6, "Limited hourly trend depth (<6 points).")

    if avy_relevant:
        if avy_unknown:
            penalize(20, "Avalanche danger is unknown for this objective.")
        elif avalanche.published_time is None:
            penalize(8, "Avalanche bulletin publish time unavailable.")
        else:
            age = hours_between(now, avalanche.published_time)
            if age > 72:
                penalize(12, f"Avalanche bulletin is {round(age)}h old.")
            elif age > 48:
                penalize(8, f"Avalanche bulletin is {round(age)}h old.")
            elif age > 24:
                penalize(4, f"Avalanche bulletin is {round(age)}h old.")

    if alerts_valid and alerts.status == "unavailable":
        penalize(8, "NWS alerts feed unavailable.")
    elif not alerts_valid:
        penalize(4, "NWS alerts are current-state only and not forecast-valid for the selected start time.")

    if aq_relevant and air.status == "unavailable":
        penalize(6, "Air quality feed unavailable.")
    elif aq_relevant and air.status == "no_data":
        penalize(3, "Air quality point data unavailable.")

    anchor = parse_time(precip.anchor_time)
    if precip.status == "unavailable":
        penalize(5, "Precipitation history feed unavailable.")
    elif precip.status == "no_data":
        penalize(3, "Precipitation history has no usable anchor/sample data.")
    elif precip.fallback_mode == "zeroed_totals":
        penalize(8, "Precipitation totals are fallback estimates due to an upstream feed outage.")
    elif anchor is None:
        penalize(3, "Precipitation anchor time unavailable.")
    else:
        age = hours_between(now, anchor)
        if age > 36:
            penalize(7, f"Precipitation anchor is {round(age)}h old.")
        elif age > 18:
            penalize(4, f"Precipitation anchor is {round(age)}h old.")
        elif age > 10:
            penalize(2, f"Precipitation anchor is {round(age)}h old.")

    if lead_hours is not None and lead_hours >= 24:
        points = 8 if lead_hours >= 72 else 6 if lead_hours >= 48 else 4
        penalize(points, f"Selected start is {round(lead_hours)}h ahead (lower forecast certainty).")

    if fire is None or fire.status == "unavailable":
        penalize(3, "Fire risk synthesis unavailable.")

    confidence = max(MIN_CONFIDENCE, min(100, round(confidence)))

    # sorted() is stable, so equal impacts keep their rule order
    ordered = sorted(factors, key=lambda f: f.impact, reverse=True)

    sources: List[Optional[str]] = [
        None if weather_unavailable else (
            "NOAA/NWS hourly forecast" if weather.provider == "NOAA" else f"{weather.provider} hourly forecast"
        ),
        "Avalanche center forecast" if avy_relevant else None,
        "NOAA/NWS active alerts" if alerts_valid and alerts.status in ("ok", "none", "none_for_selected_start") else None,
        "Open-Meteo air quality" if aq_relevant and air.status in ("ok", "no_data") else None,
        "Open-Meteo precipitation history/forecast"
        if precip.status in ("ok", "partial", "no_data") and precip.fallback_mode != "zeroed_totals" else None,
        "Heat risk synthesis (forecast + lower-terrain adjustment)" if heat is not None and heat.status == "ok" else None,
        "Fire risk synthesis (NOAA + NWS + AQI)" if fire is not None and fire.status == "ok" else None,
    ]

    return SafetyScoreResult(
        score=score,
        confidence=confidence,
        primary_hazard=ordered[0].hazard if ordered else "None",
        explanations=explanations or [STABLE_EXPLANATION],
        factors=ordered,
        group_impacts=group_impacts,
        confidence_reasons=reasons,
        sources_used=[s for s in sources if s is not None],
        air_quality_category=air.category or "Unknown",
    )
