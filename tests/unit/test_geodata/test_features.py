import pytest
from geodata.features import (
    BuildingFeature,
    LanduseFeature,
    PlaceFeature,
    RoadFeature,
    parse_feature,
    parse_feature_collection,
)


def test_parse_road_feature(feature):
    """Layer selects the variant; subtype and distance come from properties."""
    parsed = parse_feature(feature("road", "primary", distance=42.5))
    assert isinstance(parsed, RoadFeature)
    assert parsed.road_class == "primary"
    assert parsed.distance_m == 42.5


def test_subtype_falls_back_to_class(feature):
    parsed = parse_feature(feature("landuse", "residential", key="class"))
    assert isinstance(parsed, LanduseFeature)
    assert parsed.landuse == "residential"


def test_all_variants(feature):
    result = parse_feature_collection({"features": [
        feature("road", "secondary"),
        feature("building", "retail"),
        feature("landuse", "commercial"),
        feature("place", "city"),
    ]})
    assert len(result) == 4
    assert len(result.roads) == 1
    assert isinstance(result.buildings[0], BuildingFeature)
    assert isinstance(result.places[0], PlaceFeature)
    assert result.breakdown() == {"road": 1, "building": 1, "landuse": 1, "place": 1}


def test_unrecognised_features_are_skipped(feature):
    """Unknown layers and malformed entries are counted, never passed through."""
    result = parse_feature_collection({"features": [
        feature("water", "ocean"),
        {"type": "Feature"},
        "garbage",
        feature("road", "primary"),
    ]})
    assert len(result) == 1
    assert result.skipped == 3


def test_unparseable_distance_becomes_none(feature):
    parsed = parse_feature(feature("road", "primary", distance="far"))
    assert parsed.distance_m is None


def test_non_object_payload():
    result = parse_feature_collection(["not", "a", "dict"])
    assert len(result) == 0
    assert result.raw == {}


def test_building_centroid_polygon(feature):
    square = {
        "type": "Polygon",
        "coordinates": [[[13.0, 52.0], [13.2, 52.0], [13.2, 52.2], [13.0, 52.2], [13.0, 52.0]]],
    }
    building = parse_feature(feature("building", "yes", geometry=square))
    lat, lng = building.centroid()
    assert lat == pytest.approx(52.1)
    assert lng == pytest.approx(13.1)


def test_road_nearest_point_on_linestring(feature):
    line = {"type": "LineString", "coordinates": [[13.0, 52.0], [13.0, 52.2]]}
    road = parse_feature(feature("road", "primary", geometry=line))
    lat, lng = road.nearest_point(52.1, 13.01)
    assert lat == pytest.approx(52.1, abs=1e-6)
    assert lng == pytest.approx(13.0, abs=1e-9)


@pytest.mark.parametrize("geometry", [
    {"type": "Point", "coordinates": ["13.4", "52.5"]},
    {"type": "Point", "coordinates": [True, False]},
    {"type": "LineString", "coordinates": [[13.0, float("nan")], [13.1, 52.1]]},
    {"type": "Polygon", "coordinates": [[[13.0]]]},
    {"type": "MultiPolygon", "coordinates": [[13.0, 52.0]]},
])
def test_malformed_geometry_is_cleared(feature, geometry):
    """The feature still counts for suitability, but carries no geometry."""
    parsed = parse_feature(feature("building", "yes", 10, geometry=geometry))
    assert parsed is not None
    assert parsed.geometry == {}
    assert parsed.centroid() is None


def test_unread_geometry_types_pass_through(feature):
    geometry = {"type": "GeometryCollection", "geometries": []}
    assert parse_feature(feature("place", "city", geometry=geometry)).geometry == geometry
