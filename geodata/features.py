"""
Typed geodata features.

Tilequery responses are loosely-typed GeoJSON. Everything is validated here,
at the ingestion boundary, into one of four feature variants:

- RoadFeature      (layer "road")
- BuildingFeature  (layer "building")
- LanduseFeature   (layer "landuse")
- PlaceFeature     (layer "place")

Features on any other layer, or without usable properties, are logged and
dropped rather than passed downstream. Geometries whose coordinates are not
well-formed GeoJSON positions are logged and cleared; the feature itself is
kept since its layer and class still count for suitability.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, List, Optional, Tuple, Type, Union

from geodata.geometry import nearest_point_on_line, polygon_centroid

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class GeoFeature:
    """Common fields of every recognised feature."""
    layer: ClassVar[str] = ""

    subtype: str                       # properties.type, falling back to properties.class
    distance_m: Optional[float]        # tilequery-reported distance from the query point
    geometry: Dict[str, Any] = field(default_factory=dict, compare=False)
    properties: Dict[str, Any] = field(default_factory=dict, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": "Feature",
            "geometry": self.geometry,
            "properties": self.properties,
        }


@dataclass(frozen=True)
class RoadFeature(GeoFeature):
    layer: ClassVar[str] = "road"

    @property
    def road_class(self) -> str:
        return self.subtype

    def nearest_point(self, lat: float, lng: float) -> Optional[Tuple[float, float]]:
        """Closest point on the road geometry to (lat, lng)."""
        gtype = self.geometry.get("type")
        coords = self.geometry.get("coordinates")
        if not coords:
            return None

        if gtype == "Point":
            return float(coords[1]), float(coords[0])
        if gtype == "LineString":
            return nearest_point_on_line(lat, lng, coords)
        if gtype == "MultiLineString":
            candidates = [nearest_point_on_line(lat, lng, part) for part in coords]
            candidates = [c for c in candidates if c is not None]
            if not candidates:
                return None
            return min(candidates, key=lambda c: (c[0] - lat) ** 2 + (c[1] - lng) ** 2)
        return None


@dataclass(frozen=True)
class BuildingFeature(GeoFeature):
    layer: ClassVar[str] = "building"

    @property
    def building_type(self) -> str:
        return self.subtype or "unknown"

    def centroid(self) -> Optional[Tuple[float, float]]:
        """Centroid of the building footprint as (lat, lng)."""
        gtype = self.geometry.get("type")
        coords = self.geometry.get("coordinates")
        if not coords:
            return None

        if gtype == "Point":
            return float(coords[1]), float(coords[0])
        if gtype == "Polygon":
            return polygon_centroid(coords)
        if gtype == "MultiPolygon":
            return polygon_centroid(coords[0])
        return None


@dataclass(frozen=True)
class LanduseFeature(GeoFeature):
    layer: ClassVar[str] = "landuse"

    @property
    def landuse(self) -> str:
        return self.subtype


@dataclass(frozen=True)
class PlaceFeature(GeoFeature):
    layer: ClassVar[str] = "place"

    @property
    def place_type(self) -> str:
        return self.subtype


Feature = Union[RoadFeature, BuildingFeature, LanduseFeature, PlaceFeature]

FEATURE_TYPES: Dict[str, Type[GeoFeature]] = {
    cls.layer: cls for cls in (RoadFeature, BuildingFeature, LanduseFeature, PlaceFeature)
}


@dataclass
class FeatureCollection:
    """Parsed provider response plus the raw payload kept for caching."""
    features: List[Feature] = field(default_factory=list)
    raw: Dict[str, Any] = field(default_factory=dict)
    skipped: int = 0

    def __len__(self) -> int:
        return len(self.features)

    def of_type(self, feature_type: Type[GeoFeature]) -> List[Any]:
        return [f for f in self.features if isinstance(f, feature_type)]

    @property
    def roads(self) -> List[RoadFeature]:
        return self.of_type(RoadFeature)

    @property
    def buildings(self) -> List[BuildingFeature]:
        return self.of_type(BuildingFeature)

    @property
    def landuses(self) -> List[LanduseFeature]:
        return self.of_type(LanduseFeature)

    @property
    def places(self) -> List[PlaceFeature]:
        return self.of_type(PlaceFeature)

    def breakdown(self) -> Dict[str, int]:
        """Feature counts per layer, for logging."""
        counts: Dict[str, int] = {}
        for f in self.features:
            counts[f.layer] = counts.get(f.layer, 0) + 1
        return counts


# Nesting depth of positions inside "coordinates" for each geometry type
_POSITION_DEPTH = {
    "Point": 0,
    "LineString": 1,
    "MultiPoint": 1,
    "Polygon": 2,
    "MultiLineString": 2,
    "MultiPolygon": 3,
}


def _is_position(value: Any) -> bool:
    if not isinstance(value, (list, tuple)) or len(value) < 2:
        return False
    return all(
        isinstance(v, (int, float)) and not isinstance(v, bool) and math.isfinite(v)
        for v in value[:2]
    )


def _valid_coordinates(coords: Any, depth: int) -> bool:
    if depth == 0:
        return _is_position(coords)
    if not isinstance(coords, (list, tuple)):
        return False
    return all(_valid_coordinates(c, depth - 1) for c in coords)


def validate_geometry(geometry: Any) -> Dict[str, Any]:
    """
    Return the geometry if its coordinates are well-formed, else {}.

    Geometry types we never read (GeometryCollection and friends) pass
    through untouched.
    """
    if not isinstance(geometry, dict):
        return {}
    depth = _POSITION_DEPTH.get(geometry.get("type"))
    if depth is None:
        return geometry
    if not _valid_coordinates(geometry.get("coordinates"), depth):
        log.warning(f"Clearing malformed {geometry.get('type')} geometry")
        return {}
    return geometry


def parse_feature(raw: Any) -> Optional[Feature]:
    """
    Validate one GeoJSON feature into its typed variant.

    Returns None (after logging) for shapes we do not recognise.
    """
    if not isinstance(raw, dict):
        log.warning(f"Dropping non-object feature: {type(raw).__name__}")
        return None

    props = raw.get("properties")
    if not isinstance(props, dict):
        log.warning("Dropping feature without properties")
        return None

    tilequery = props.get("tilequery") or {}
    layer = tilequery.get("layer") if isinstance(tilequery, dict) else None
    feature_cls = FEATURE_TYPES.get(layer or "")
    if feature_cls is None:
        log.debug(f"Dropping feature on unrecognised layer {layer!r}")
        return None

    subtype = props.get("type") or props.get("class") or ""
    distance = tilequery.get("distance")
    try:
        distance_m = float(distance) if distance is not None else None
    except (TypeError, ValueError):
        log.warning(f"Ignoring unparseable distance {distance!r} on {layer} feature")
        distance_m = None

    geometry = validate_geometry(raw.get("geometry"))

    return feature_cls(
        subtype=str(subtype),
        distance_m=distance_m,
        geometry=geometry,
        properties=props,
    )


def parse_feature_collection(payload: Any) -> FeatureCollection:
    """Parse a provider FeatureCollection, dropping unrecognised features."""
    if not isinstance(payload, dict):
        log.warning(f"Provider returned a non-object payload: {type(payload).__name__}")
        return FeatureCollection(raw={})

    raw_features = payload.get("features") or []
    if not isinstance(raw_features, list):
        log.warning("Provider payload 'features' is not a list")
        return FeatureCollection(raw=payload)

    features: List[Feature] = []
    skipped = 0
    for raw in raw_features:
        parsed = parse_feature(raw)
        if parsed is None:
            skipped += 1
        else:
            features.append(parsed)

    if skipped:
        log.info(f"Skipped {skipped} unrecognised features of {len(raw_features)}")

    return FeatureCollection(features=features, raw=payload, skipped=skipped)
