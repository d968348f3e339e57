"""
Infrastructure snapping - move a candidate coordinate onto the nearest road
or building so suggestions land on real, reachable places.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from shapely.errors import ShapelyError

from geodata.cache import ResultCache
from geodata.errors import GeodataError, ProviderUnavailable
from geodata.features import GeoFeature
from geodata.geometry import haversine_m
from geodata.tilequery import TilequeryClient

log = logging.getLogger(__name__)

SNAPPABLE_ROAD_TYPES = frozenset({
    "motorway", "trunk", "primary", "secondary", "tertiary", "residential",
})

NO_SNAP_TARGET = "no_snap_target"

# Raised by malformed footprints or lines that survive parsing
GEOMETRY_ERRORS = (ValueError, TypeError, IndexError, ShapelyError)


@dataclass
class SnapTarget:
    type: str                          # "road" | "building"
    distance_m: float
    snapped_lat: float
    snapped_lng: float
    road_class: Optional[str] = None
    building_type: Optional[str] = None
    feature: Optional[Dict[str, Any]] = field(default=None, compare=False, repr=False)  # provider GeoJSON

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "type": self.type,
            "distanceM": self.distance_m,
            "snappedLat": self.snapped_lat,
            "snappedLng": self.snapped_lng,
        }
        if self.road_class is not None:
            data["roadClass"] = self.road_class
        if self.building_type is not None:
            data["buildingType"] = self.building_type
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SnapTarget":
        return cls(
            type=data["type"],
            distance_m=data["distanceM"],
            snapped_lat=data["snappedLat"],
            snapped_lng=data["snappedLng"],
            road_class=data.get("roadClass"),
            building_type=data.get("buildingType"),
        )


@dataclass
class SnappingResult:
    success: bool
    original_lat: float
    original_lng: float
    snapped_lat: Optional[float] = None
    snapped_lng: Optional[float] = None
    snap_target: Optional[SnapTarget] = None
    rejection_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "originalLat": self.original_lat,
            "originalLng": self.original_lng,
            "snappedLat": self.snapped_lat,
            "snappedLng": self.snapped_lng,
            "snapTarget": self.snap_target.to_dict() if self.snap_target else None,
            "rejectionReason": self.rejection_reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SnappingResult":
        target = data.get("snapTarget")
        return cls(
            success=bool(data["success"]),
            original_lat=data["originalLat"],
            original_lng=data["originalLng"],
            snapped_lat=data.get("snappedLat"),
            snapped_lng=data.get("snappedLng"),
            snap_target=SnapTarget.from_dict(target) if target else None,
            rejection_reason=data.get("rejectionReason"),
        )


@dataclass
class BatchSnap:
    location: Dict[str, Any]
    result: Optional[SnappingResult] = None
    error: Optional[str] = None


class InfrastructureSnapper:
    """
    Snaps coordinates to the closest road or building.

    The road and building lookups are independent and run concurrently. The
    closer target wins, with roads preferred on a tie.

    Usage:
        snapper = InfrastructureSnapper(client, ResultCache(table="snapping_cache", ttl_days=90))
        result = snapper.snap_to_infrastructure(52.5163, 13.3777)
        if result.success:
            print(result.snapped_lat, result.snapped_lng)
    """

    def __init__(
        self,
        client: TilequeryClient,
        cache: Optional[ResultCache] = None,
        max_snap_distance_m: int = 1500,
        fail_open: bool = True,
    ):
        self.client = client
        self.cache = cache
        self.max_snap_distance_m = max_snap_distance_m
        self.fail_open = fail_open

        self._stats_lock = threading.Lock()
        self._init_counters()

        log.info(
            f"InfrastructureSnapper initialized: max_snap_distance={self.max_snap_distance_m}m, "
            f"fail_open={self.fail_open}"
        )

    def _init_counters(self):
        self.cache_hits = 0
        self.cache_misses = 0
        self.api_calls = 0
        self.snapped_to_road = 0
        self.snapped_to_building = 0
        self.no_target = 0
        self.provider_errors = 0

    def _bump(self, attr: str, amount: int = 1):
        with self._stats_lock:
            setattr(self, attr, getattr(self, attr) + amount)

    def snap_to_infrastructure(self, lat: float, lng: float) -> SnappingResult:
        """
        Snap a coordinate to nearby infrastructure.

        Raises:
            AuthenticationFailure: provider rejected our credentials
            ProviderUnavailable: provider failed and fail-open is disabled
        """
        if self.cache is not None:
            cached = self.cache.get(lat, lng)
            if cached is not None:
                self._bump("cache_hits")
                return SnappingResult.from_dict(cached)
        self._bump("cache_misses")

        with ThreadPoolExecutor(max_workers=2) as executor:
            road_future = executor.submit(self.find_nearest_road, lat, lng)
            building_future = executor.submit(self.find_nearest_building, lat, lng)

            try:
                road = road_future.result()
                building = building_future.result()
            except ProviderUnavailable as e:
                self._bump("provider_errors")
                if not self.fail_open:
                    raise
                log.warning(f"Geodata provider unavailable for ({lat}, {lng}), keeping original coordinate: {e}")
                return SnappingResult(
                    success=True,
                    original_lat=lat,
                    original_lng=lng,
                    snapped_lat=lat,
                    snapped_lng=lng,
                )

        target = self.choose_target(road, building)
        if target is None:
            self._bump("no_target")
            log.info(f"No road or building within {self.max_snap_distance_m}m of ({lat}, {lng})")
            result = SnappingResult(
                success=False,
                original_lat=lat,
                original_lng=lng,
                rejection_reason=NO_SNAP_TARGET,
            )
        else:
            self._bump("snapped_to_road" if target.type == "road" else "snapped_to_building")
            log.info(
                f"Snapped ({lat}, {lng}) to {target.type} at {target.distance_m:.0f}m "
                f"-> ({target.snapped_lat:.6f}, {target.snapped_lng:.6f})"
            )
            result = SnappingResult(
                success=True,
                original_lat=lat,
                original_lng=lng,
                snapped_lat=target.snapped_lat,
                snapped_lng=target.snapped_lng,
                snap_target=target,
            )

        if self.cache is not None:
            self.cache.set(lat, lng, result.to_dict(), raw_response=target.feature if target else None)

        return result

    @staticmethod
    def choose_target(road: Optional[SnapTarget], building: Optional[SnapTarget]) -> Optional[SnapTarget]:
        if road is None:
            return building
        if building is None:
            return road
        return road if road.distance_m <= building.distance_m else building

    def find_nearest_road(self, lat: float, lng: float) -> Optional[SnapTarget]:
        collection = self.client.query(lat, lng, self.max_snap_distance_m, layers=("road",))
        self._bump("api_calls")

        best: Optional[SnapTarget] = None
        for road in collection.roads:
            if road.road_class not in SNAPPABLE_ROAD_TYPES:
                continue
            try:
                point = road.nearest_point(lat, lng)
            except GEOMETRY_ERRORS as e:
                log.warning(f"Skipping {road.road_class} road with unusable geometry: {e}")
                continue
            candidate = self._target("road", lat, lng, point, road, road_class=road.road_class)
            if candidate is not None and (best is None or candidate.distance_m < best.distance_m):
                best = candidate
        return best

    def find_nearest_building(self, lat: float, lng: float) -> Optional[SnapTarget]:
        collection = self.client.query(lat, lng, self.max_snap_distance_m, layers=("building",))
        self._bump("api_calls")

        best: Optional[SnapTarget] = None
        for building in collection.buildings:
            try:
                point = building.centroid()
            except GEOMETRY_ERRORS as e:
                log.warning(f"Skipping {building.building_type} building with unusable footprint: {e}")
                continue
            candidate = self._target(
                "building", lat, lng, point, building,
                building_type=building.building_type,
            )
            if candidate is not None and (best is None or candidate.distance_m < best.distance_m):
                best = candidate
        return best

    def _target(
        self,
        kind: str,
        lat: float,
        lng: float,
        point: Optional[Tuple[float, float]],
        source: GeoFeature,
        **details: Any,
    ) -> Optional[SnapTarget]:
        if point is None:
            return None
        distance = haversine_m(lat, lng, point[0], point[1])
        if distance > self.max_snap_distance_m:
            return None
        reported = source.distance_m
        if reported is not None and abs(reported - distance) > 1.0:
            log.debug(f"{kind} distance differs from provider: computed {distance:.1f}m, reported {reported:.1f}m")
        return SnapTarget(
            type=kind,
            distance_m=round(distance, 1),
            snapped_lat=point[0],
            snapped_lng=point[1],
            feature=source.to_dict(),
            **details,
        )

    def snap_locations_batch(
        self,
        locations: Sequence[Dict[str, Any]],
        concurrency: int = 16,
    ) -> List[BatchSnap]:
        """Snap many locations in sequential groups of `concurrency`, preserving input order."""
        concurrency = max(1, concurrency)
        results: List[BatchSnap] = []

        def run(location: Dict[str, Any]) -> BatchSnap:
            try:
                return BatchSnap(location=location, result=self.snap_to_infrastructure(location["lat"], location["lng"]))
            except GeodataError as e:
                log.error(f"Snapping failed for {location}: {e}")
                return BatchSnap(location=location, error=str(e))

        with ThreadPoolExecutor(max_workers=concurrency) as executor:
            for start in range(0, len(locations), concurrency):
                results.extend(executor.map(run, locations[start:start + concurrency]))

        snapped = sum(1 for r in results if r.result is not None and r.result.success)
        log.info(f"Batch snapping: {snapped}/{len(results)} locations snapped")
        return results

    def get_cache_stats(self) -> Dict[str, Any]:
        total = self.cache_hits + self.cache_misses
        hit_rate = (self.cache_hits / total) * 100 if total else 0.0
        return {
            "cacheHits": self.cache_hits,
            "cacheMisses": self.cache_misses,
            "hitRate": round(hit_rate, 2),
            "apiCalls": self.api_calls,
        }

    def get_snap_stats(self) -> Dict[str, int]:
        return {
            "snappedToRoad": self.snapped_to_road,
            "snappedToBuilding": self.snapped_to_building,
            "noTarget": self.no_target,
            "providerErrors": self.provider_errors,
        }

    def reset_stats(self):
        with self._stats_lock:
            self._init_counters()
