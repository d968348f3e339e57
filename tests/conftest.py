import pytest

from geodata.features import parse_feature_collection


def make_feature(layer, subtype, distance=None, geometry=None, key="type"):
    """Raw Tilequery GeoJSON feature."""
    return {
        "type": "Feature",
        "geometry": geometry or {"type": "Point", "coordinates": [13.3777, 52.5163]},
        "properties": {
            key: subtype,
            "tilequery": {"layer": layer, "distance": distance, "geometry": "point"},
        },
    }


def make_collection(*features):
    return parse_feature_collection({"type": "FeatureCollection", "features": list(features)})


@pytest.fixture
def feature():
    return make_feature


@pytest.fixture
def collection():
    return make_collection
