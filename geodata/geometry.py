"""
Geometry helpers for snapping and distance checks.

Coordinates follow GeoJSON ordering inside geometries ([lng, lat]) and
(lat, lng) ordering everywhere else. Planar operations go through shapely;
distances are great-circle.
"""

import math
from typing import List, Optional, Sequence, Tuple

from shapely.affinity import scale
from shapely.errors import ShapelyError
from shapely.geometry import LineString, MultiPoint, Point, Polygon

EARTH_RADIUS_M = 6371000


def haversine_m(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance between two points in meters."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    delta_phi = math.radians(lat2 - lat1)
    delta_lambda = math.radians(lng2 - lng1)

    a = math.sin(delta_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(delta_lambda / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_M * c


def _xy(positions: Sequence[Sequence[float]]) -> List[Tuple[float, float]]:
    return [(float(p[0]), float(p[1])) for p in positions]


def nearest_point_on_line(
    lat: float,
    lng: float,
    line: Sequence[Sequence[float]],
) -> Optional[Tuple[float, float]]:
    """
    Find the point on a polyline closest to (lat, lng).

    Longitudes are scaled by cos(lat) around the query point before
    projecting, so "closest" is measured in roughly equal-area units.

    Args:
        lat: Query latitude
        lng: Query longitude
        line: GeoJSON LineString coordinates, [[lng, lat], ...]

    Returns:
        (lat, lng) of the nearest point, or None for an empty line
    """
    coords = _xy(line)
    if not coords:
        return None
    if len(coords) == 1:
        return coords[0][1], coords[0][0]

    xfact = math.cos(math.radians(lat))
    local = scale(LineString(coords), xfact=xfact, yfact=1.0, origin=(lng, lat))
    nearest = local.interpolate(local.project(Point(lng, lat)))

    return nearest.y, lng + (nearest.x - lng) / xfact


def polygon_centroid(rings: Sequence[Sequence[Sequence[float]]]) -> Optional[Tuple[float, float]]:
    """
    Centroid of a GeoJSON Polygon as (lat, lng).

    Holes are honoured. Rings too short or too flat to enclose any area fall
    back to the mean of their vertices. Returns None when the
    polygon has no coordinates.
    """
    if not rings or not rings[0]:
        return None

    shell = _xy(rings[0])
    try:
        polygon = Polygon(shell, [_xy(hole) for hole in rings[1:] if len(hole) >= 4])
    except (ValueError, ShapelyError):
        # Fewer than four positions once closed
        polygon = None
    if polygon is not None and polygon.area > 0:
        centroid = polygon.centroid
        return centroid.y, centroid.x

    if len(shell) > 1 and shell[0] == shell[-1]:
        shell = shell[:-1]
    centroid = MultiPoint(shell).centroid
    return centroid.y, centroid.x
