import math

import pytest

from backcountry.geo import (
    Coordinate,
    RegionalFallback,
    ZoneFeature,
    haversine_km,
    parse_zone_layer,
    resolve_zone,
)
from backcountry.providers import InvalidCoordinateError, ZoneLayerError

from conftest import square, zone


def features(*raw):
    return [ZoneFeature.from_geojson(f) for f in raw]


def test_polygon_match_has_zero_distance():
    feats = features(zone("Wasatch", "UAC", square(-111.8, 40.5)))
    m = resolve_zone(Coordinate(40.55, -111.75), feats)
    assert m.mode == "polygon"
    assert m.fallback_distance_km == 0.0
    assert m.feature.name == "Wasatch"


def test_boundary_point_counts_as_inside():
    feats = features(zone("Edge", "UAC", square(-111.8, 40.5)))
    m = resolve_zone(Coordinate(40.5, -111.75), feats)
    assert m.mode == "polygon"


def test_first_containing_polygon_wins():
    feats = features(
        zone("First", "AAA", square(-111.8, 40.5, 0.2)),
        zone("Second", "BBB", square(-111.8, 40.5, 0.2)),
    )
    assert resolve_zone(Coordinate(40.6, -111.7), feats).feature.name == "First"


def test_nearest_vertex_within_threshold():
    feats = features(zone("Near", "NWAC", square(-121.0, 47.0)))
    # about 11 km south of the polygon's south-west corner
    m = resolve_zone(Coordinate(46.9, -121.0), feats, regional_fallbacks=())
    assert m.mode == "nearest"
    assert m.feature.name == "Near"
    assert 10.0 < m.fallback_distance_km < 12.0


def test_nothing_within_threshold_reports_nearest_distance():
    feats = features(zone("Far", "NWAC", square(-121.0, 47.0)))
    m = resolve_zone(Coordinate(45.0, -121.0), feats, regional_fallbacks=())
    assert m.mode == "none"
    assert m.feature is None
    assert m.fallback_distance_km > 200


def test_empty_layer_has_no_distance():
    m = resolve_zone(Coordinate(45.0, -121.0), [], regional_fallbacks=())
    assert m.mode == "none"
    assert m.fallback_distance_km is None


def test_regional_fallback_widens_search_for_its_center():
    feats = features(
        zone("Other", "XYZ", square(-110.6, 39.0)),
        zone("Moab", "UAC", square(-110.6, 39.0)),
    )
    region = RegionalFallback("uac", 38.0, 40.0, -111.0, -110.0, 90.0)
    # roughly 60 km south of both polygons
    coord = Coordinate(38.45, -110.6)
    assert resolve_zone(coord, feats, regional_fallbacks=()).mode == "none"
    m = resolve_zone(coord, feats, regional_fallbacks=(region,))
    assert m.mode == "nearest"
    assert m.feature.center_id == "UAC"


def test_invalid_geometry_is_skipped_for_containment():
    bad = zone("Broken", "AAA", {"type": "Polygon", "coordinates": [[[0, 0]]]})
    good = zone("Good", "BBB", square(-111.8, 40.5))
    m = resolve_zone(Coordinate(40.55, -111.75), features(bad, good))
    assert m.feature.name == "Good"


def test_vertices_walk_nested_multipolygons():
    geom = {"type": "MultiPolygon", "coordinates": [square(0, 0)["coordinates"], square(5, 5)["coordinates"]]}
    assert len(list(ZoneFeature(geometry=geom).vertices())) == 10


@pytest.mark.parametrize("lat,lon", [(91, 0), (0, -181), (math.nan, 0), ("abc", 1)])
def test_invalid_coordinates_are_fatal(lat, lon):
    with pytest.raises(InvalidCoordinateError):
        resolve_zone(Coordinate(lat, lon), [])


def test_haversine_one_degree_latitude():
    assert haversine_km(0, 0, 1, 0) == pytest.approx(111.19, abs=0.01)


def test_parse_zone_layer_requires_features_list():
    with pytest.raises(ZoneLayerError):
        parse_zone_layer({"type": "FeatureCollection"})
    assert parse_zone_layer({"features": [zone("A", "B", square(0, 0)), "junk"]})[0].name == "A"
