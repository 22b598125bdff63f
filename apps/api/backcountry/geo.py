from __future__ import annotations

import os
import json
import math
import logging
from dataclasses import dataclass, field
from functools import cached_property
from typing import Any, Dict, Iterable, Iterator, List, Literal, Optional, Sequence, Tuple

from shapely.errors import GEOSException
from shapely.geometry import Point, shape

from backcountry.providers import InvalidCoordinateError, ZoneLayerError

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0
DEFAULT_MAX_FALLBACK_KM = 40.0

MatchMode = Literal["polygon", "nearest", "none"]


# ---------- Models ----------
@dataclass(frozen=True)
class Coordinate:
    lat: float
    lon: float

    def validated(self) -> "Coordinate":
        try:
            lat, lon = float(self.lat), float(self.lon)
        except (TypeError, ValueError):
            raise InvalidCoordinateError(f"coordinate is not numeric: {self.lat!r}, {self.lon!r}") from None
        if not (math.isfinite(lat) and math.isfinite(lon)):
            raise InvalidCoordinateError(f"coordinate is not finite: {lat}, {lon}")
        if not (-90.0 <= lat <= 90.0) or not (-180.0 <= lon <= 180.0):
            raise InvalidCoordinateError(f"coordinate out of range: {lat}, {lon}")
        return Coordinate(lat, lon)

    def cache_key(self) -> str:
        return f"{self.lat:.3f},{self.lon:.3f}"


@dataclass
class ZoneFeature:
    """One forecast-zone polygon from the avalanche map layer."""
    geometry: Dict[str, Any]
    properties: Dict[str, Any] = field(default_factory=dict)
    id: Any = None

    @classmethod
    def from_geojson(cls, feature: Dict[str, Any]) -> "ZoneFeature":
        return cls(
            geometry=feature.get("geometry") or {},
            properties=feature.get("properties") or {},
            id=feature.get("id"),
        )

    @property
    def center_id(self) -> str:
        return str(self.properties.get("center_id") or "").strip()

    @property
    def name(self) -> str:
        return str(self.properties.get("name") or "")

    @cached_property
    def polygon(self):
        """Shapely geometry, or None when the payload is not a usable polygon."""
        if self.geometry.get("type") not in ("Polygon", "MultiPolygon"):
            return None
        try:
            geom = shape(self.geometry)
        except (GEOSException, ValueError, TypeError, KeyError, IndexError, AttributeError) as e:
            logger.debug("skipping invalid zone geometry %s: %s", self.id, e)
            return None
        return None if geom.is_empty else geom

    def vertices(self) -> Iterator[Tuple[float, float]]:
        """Every (lon, lat) pair in the geometry, however deeply nested."""
        yield from _walk_coordinates(self.geometry.get("coordinates"))


@dataclass(frozen=True)
class ZoneMatch:
    feature: Optional[ZoneFeature]
    mode: MatchMode
    fallback_distance_km: Optional[float]


@dataclass(frozen=True)
class RegionalFallback:
    """Widened nearest-vertex search for one center whose polygons leave gaps."""
    center_id: str
    lat_min: float
    lat_max: float
    lon_min: float
    lon_max: float
    max_distance_km: float = 90.0

    def contains(self, coord: Coordinate) -> bool:
        return self.lat_min <= coord.lat <= self.lat_max and self.lon_min <= coord.lon <= self.lon_max


def _load_regional_fallbacks() -> Tuple[RegionalFallback, ...]:
    raw = os.environ.get("BACKCOUNTRY_REGIONAL_FALLBACKS")
    if not raw:
        return (RegionalFallback("UAC", 36.8, 42.3, -114.2, -108.8, 90.0),)
    return tuple(RegionalFallback(**item) for item in json.loads(raw))


DEFAULT_REGIONAL_FALLBACKS = _load_regional_fallbacks()


# ---------- Geometry helpers ----------
def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlmb = math.radians(lon2 - lon1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlmb / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def _walk_coordinates(node: Any) -> Iterator[Tuple[float, float]]:
    if not isinstance(node, (list, tuple)) or not node:
        return
    if len(node) >= 2 and all(isinstance(v, (int, float)) and not isinstance(v, bool) for v in node[:2]):
        lon, lat = float(node[0]), float(node[1])
        if math.isfinite(lon) and math.isfinite(lat):
            yield lon, lat
        return
    for child in node:
        yield from _walk_coordinates(child)


def _nearest(coord: Coordinate, features: Iterable[ZoneFeature]) -> Tuple[Optional[ZoneFeature], float]:
    best: Optional[ZoneFeature] = None
    best_km = math.inf
    for feat in features:
        for lon, lat in feat.vertices():
            d = haversine_km(coord.lat, coord.lon, lat, lon)
            if d < best_km:
                best_km = d
                best = feat
    return best, best_km


def parse_zone_layer(payload: Any) -> List[ZoneFeature]:
    """Turn a map-layer FeatureCollection into ZoneFeatures.

    Raises ZoneLayerError when there is no features list at all.
    """
    features = payload.get("features") if isinstance(payload, dict) else None
    if not isinstance(features, list):
        raise ZoneLayerError("map layer payload has no features list")
    return [ZoneFeature.from_geojson(f) for f in features if isinstance(f, dict)]


# ---------- Resolver ----------
def resolve_zone(
    coord: Coordinate,
    features: Sequence[ZoneFeature],
    max_fallback_km: float = DEFAULT_MAX_FALLBACK_KM,
    regional_fallbacks: Sequence[RegionalFallback] = DEFAULT_REGIONAL_FALLBACKS,
) -> ZoneMatch:
    """Match a coordinate to a forecast zone.

    Order: polygon containment (first match), then the nearest polygon vertex
    within `max_fallback_km`, then a widened nearest search restricted to a
    regional center when the coordinate sits in that center's bounding box.
    """
    coord = coord.validated()
    point = Point(coord.lon, coord.lat)

    for feat in features:
        geom = feat.polygon
        if geom is not None and geom.covers(point):
            return ZoneMatch(feature=feat, mode="polygon", fallback_distance_km=0.0)

    nearest, nearest_km = _nearest(coord, features)
    if nearest is not None and nearest_km <= max_fallback_km:
        return ZoneMatch(feature=nearest, mode="nearest", fallback_distance_km=nearest_km)

    for region in regional_fallbacks:
        if not region.contains(coord):
            continue
        wanted = region.center_id.upper()
        scoped = [f for f in features if f.center_id.upper() == wanted]
        regional, regional_km = _nearest(coord, scoped)
        if regional is not None and regional_km <= max(max_fallback_km, region.max_distance_km):
            return ZoneMatch(feature=regional, mode="nearest", fallback_distance_km=regional_km)

    return ZoneMatch(
        feature=None,
        mode="none",
        fallback_distance_km=nearest_km if math.isfinite(nearest_km) else None,
    )
