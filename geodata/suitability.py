"""
Suitability validation for candidate store locations.

Classifies whether the surroundings of a coordinate support a store, using
nearby road, building, place and land-use features from the geodata provider.

Policy summary:
- Empty feature set        -> reject (fail-closed: "no data")
- Excluded land use nearby -> reject
- Provider outage          -> accept with unknown distances (fail-open, configurable)
- Bad credentials          -> raise
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from geodata.cache import ResultCache
from geodata.errors import AuthenticationFailure, GeodataError, ProviderUnavailable
from geodata.features import Feature, FeatureCollection, parse_feature_collection
from geodata.tilequery import ALL_LAYERS, TilequeryClient

log = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# CLASSIFICATION TABLES
# ═══════════════════════════════════════════════════════════════════════════
VALID_LANDUSE = frozenset({"residential", "commercial", "retail", "industrial"})
EXCLUDED_LANDUSE = frozenset({"farmland", "forest", "water", "wetland", "park"})
WATER_LANDUSE = frozenset({"water", "wetland"})

ACCEPTED_ROAD_TYPES = frozenset({
    "motorway", "trunk", "primary", "secondary",
    "tertiary", "residential", "unclassified",
})
ACCEPTED_PLACE_TYPES = frozenset({"city", "town", "village", "locality", "hamlet"})

ADAPTIVE_RADII_M = (800, 1200, 1800)


# ═══════════════════════════════════════════════════════════════════════════
# RESULTS
# ═══════════════════════════════════════════════════════════════════════════
@dataclass
class TilequeryResult:
    """Suitability verdict for one coordinate."""
    is_suitable: bool
    landuse_type: Optional[str] = None
    road_distance_m: Optional[int] = None
    building_distance_m: Optional[int] = None
    urban_density_index: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "isSuitable": self.is_suitable,
            "landuseType": self.landuse_type,
            "roadDistanceM": self.road_distance_m,
            "buildingDistanceM": self.building_distance_m,
            "urbanDensityIndex": self.urban_density_index,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TilequeryResult":
        return cls(
            is_suitable=bool(data["isSuitable"]),
            landuse_type=data.get("landuseType"),
            road_distance_m=data.get("roadDistanceM"),
            building_distance_m=data.get("buildingDistanceM"),
            urban_density_index=data.get("urbanDensityIndex"),
        )


@dataclass
class AdaptiveTilequeryResult(TilequeryResult):
    """
    Result of the radius-escalating check.

    radius is the radius that produced features, 0 when every radius came
    back empty, and None when the provider failed at every radius.
    """
    radius: Optional[int] = 0
    features: List[Feature] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["radius"] = self.radius
        data["featureCount"] = len(self.features)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any], features: Sequence[Feature] = ()) -> "AdaptiveTilequeryResult":
        return cls(
            is_suitable=bool(data["isSuitable"]),
            landuse_type=data.get("landuseType"),
            road_distance_m=data.get("roadDistanceM"),
            building_distance_m=data.get("buildingDistanceM"),
            urban_density_index=data.get("urbanDensityIndex"),
            radius=data.get("radius"),
            features=list(features),
        )


@dataclass
class BatchValidation:
    """One entry of a batch run. error is set only for hard failures."""
    location: Dict[str, Any]
    result: Optional[AdaptiveTilequeryResult] = None
    error: Optional[str] = None


def _fail_open_result() -> TilequeryResult:
    return TilequeryResult(is_suitable=True)


# ═══════════════════════════════════════════════════════════════════════════
# VALIDATOR
# ═══════════════════════════════════════════════════════════════════════════
class SuitabilityValidator:
    """
    Checks candidate coordinates against nearby geodata.

    Fixed-radius and adaptive verdicts apply different rules, so they are
    cached in separate tables. Unless given explicitly, the adaptive table
    is "<cache table>_adaptive" in the same database.

    Usage:
        validator = SuitabilityValidator(client, cache)
        result = validator.validate_location(52.5163, 13.3777)
        if result.is_suitable:
            ...
        print(validator.get_rejection_stats())
    """

    def __init__(
        self,
        client: TilequeryClient,
        cache: Optional[ResultCache] = None,
        radius_m: int = 1500,
        fail_open: bool = True,
        adaptive_radii: Sequence[int] = ADAPTIVE_RADII_M,
        adaptive_cache: Optional[ResultCache] = None,
    ):
        self.client = client
        self.cache = cache
        if adaptive_cache is None and cache is not None:
            adaptive_cache = cache.sibling(f"{cache.table}_adaptive")
        self.adaptive_cache = adaptive_cache
        self.radius_m = radius_m
        self.fail_open = fail_open
        self.adaptive_radii = tuple(adaptive_radii)

        self._stats_lock = threading.Lock()
        self._init_counters()

        log.info(
            f"SuitabilityValidator initialized: radius={self.radius_m}m, "
            f"fail_open={self.fail_open}, adaptive_radii={self.adaptive_radii}"
        )

    def _init_counters(self):
        self.cache_hits = 0
        self.cache_misses = 0
        self.api_calls = 0
        self.rejection_reasons = {
            "no_features": 0,
            "excluded_landuse": 0,
            "no_road": 0,
            "no_building": 0,
            "no_valid_landuse": 0,
            "provider_errors": 0,
            "total_rejected": 0,
            "total_accepted": 0,
        }

    def _bump(self, *reasons: str):
        with self._stats_lock:
            for reason in reasons:
                self.rejection_reasons[reason] += 1

    def _bump_attr(self, attr: str):
        with self._stats_lock:
            setattr(self, attr, getattr(self, attr) + 1)

    # ───────────────────────────────────────────────────────────────────────
    # Single location
    # ───────────────────────────────────────────────────────────────────────
    def validate_location(self, lat: float, lng: float) -> TilequeryResult:
        """
        Classify one coordinate, consulting the cache first.

        Raises:
            AuthenticationFailure: provider rejected our credentials
            ProviderUnavailable: provider failed and fail-open is disabled
        """
        if self.cache is not None:
            cached = self.cache.get(lat, lng)
            if cached is not None:
                self._bump_attr("cache_hits")
                return TilequeryResult.from_dict(cached)
        self._bump_attr("cache_misses")

        try:
            collection = self.client.query(lat, lng, self.radius_m, layers=ALL_LAYERS)
            self._bump_attr("api_calls")
        except ProviderUnavailable as e:
            self._bump("provider_errors")
            if not self.fail_open:
                raise
            log.warning(f"Geodata provider unavailable for ({lat}, {lng}), failing open: {e}")
            return _fail_open_result()

        result = TilequeryResult(
            is_suitable=self.check_suitability(collection),
            landuse_type=self.extract_landuse(collection),
            road_distance_m=_nearest_distance(collection.roads),
            building_distance_m=_nearest_distance(collection.buildings),
            urban_density_index=self.urban_density(collection),
        )

        if self.cache is not None:
            self.cache.set(lat, lng, result.to_dict(), raw_response=collection.raw)

        return result

    def check_suitability(self, collection: FeatureCollection) -> bool:
        """Apply the acceptance rules to a parsed feature set and count the outcome."""
        if len(collection) == 0:
            log.info("No geodata features found - rejecting location")
            self._bump("no_features", "total_rejected")
            return False

        if any(f.landuse in EXCLUDED_LANDUSE for f in collection.landuses):
            self._bump("excluded_landuse", "total_rejected")
            return False

        has_valid_landuse = any(f.landuse in VALID_LANDUSE for f in collection.landuses)
        has_road = any(f.road_class in ACCEPTED_ROAD_TYPES for f in collection.roads)
        has_building = bool(collection.buildings)
        has_place = any(f.place_type in ACCEPTED_PLACE_TYPES for f in collection.places)

        is_suitable = (
            has_valid_landuse
            or (has_road and (has_building or has_place))
            or has_place
        )

        if is_suitable:
            self._bump("total_accepted")
        else:
            reasons = ["total_rejected"]
            if not has_road:
                reasons.append("no_road")
            if not has_building and not has_place:
                reasons.append("no_building")
            if not has_valid_landuse:
                reasons.append("no_valid_landuse")
            self._bump(*reasons)

        return is_suitable

    @staticmethod
    def extract_landuse(collection: FeatureCollection) -> Optional[str]:
        landuses = collection.landuses
        return landuses[0].landuse if landuses else None

    @staticmethod
    def urban_density(collection: FeatureCollection) -> float:
        density = min(1.0, len(collection.buildings) * 0.02 + len(collection.roads) * 0.05)
        return round(density, 2)

    # ───────────────────────────────────────────────────────────────────────
    # Adaptive radius
    # ───────────────────────────────────────────────────────────────────────
    def validate_location_adaptive(self, lat: float, lng: float) -> AdaptiveTilequeryResult:
        """
        Escalate the query radius until features are found.

        Tries each radius in turn (800m, 1200m, 1800m by default) and applies a
        simplified rule to the first non-empty feature set: reject water or
        wetland land use, otherwise accept if any road or building is present.

        Verdicts are cached with the features that produced them; fail-open
        answers are not.
        """
        if self.adaptive_cache is not None:
            cached = self.adaptive_cache.get(lat, lng)
            if cached is not None:
                self._bump_attr("cache_hits")
                raw = self.adaptive_cache.get_raw_response(lat, lng)
                features = parse_feature_collection(raw).features if raw else []
                return AdaptiveTilequeryResult.from_dict(cached, features)
        self._bump_attr("cache_misses")

        errors = 0

        for radius in self.adaptive_radii:
            try:
                collection = self.client.query(lat, lng, radius, layers=ALL_LAYERS)
                self._bump_attr("api_calls")
            except ProviderUnavailable as e:
                errors += 1
                log.warning(f"Tilequery failed at {radius}m radius for ({lat}, {lng}): {e}")
                continue

            if len(collection) > 0:
                log.info(f"Found {len(collection)} features at {radius}m radius")
                return self._store_adaptive(lat, lng, self._classify_adaptive(collection, radius), collection.raw)

            log.info(f"No features at {radius}m radius, trying larger radius...")

        if errors == len(self.adaptive_radii):
            self._bump("provider_errors")
            if not self.fail_open:
                raise ProviderUnavailable(f"Tilequery failed at every radius for ({lat}, {lng})")
            log.warning(f"Geodata provider unavailable for ({lat}, {lng}) at every radius, failing open")
            return AdaptiveTilequeryResult(is_suitable=True, radius=None)

        log.info(f"No features found at any radius for ({lat}, {lng})")
        self._bump("no_features", "total_rejected")
        return self._store_adaptive(lat, lng, AdaptiveTilequeryResult(is_suitable=False, radius=0), None)

    def _store_adaptive(
        self,
        lat: float,
        lng: float,
        result: AdaptiveTilequeryResult,
        raw_response: Optional[Dict[str, Any]],
    ) -> AdaptiveTilequeryResult:
        if self.adaptive_cache is not None:
            self.adaptive_cache.set(lat, lng, result.to_dict(), raw_response=raw_response)
        return result

    def _classify_adaptive(self, collection: FeatureCollection, radius: int) -> AdaptiveTilequeryResult:
        if any(f.landuse in WATER_LANDUSE for f in collection.landuses):
            self._bump("excluded_landuse", "total_rejected")
            return AdaptiveTilequeryResult(
                is_suitable=False,
                landuse_type="water/wetland",
                radius=radius,
                features=list(collection.features),
            )

        has_building = bool(collection.buildings)
        has_road = bool(collection.roads)
        is_suitable = has_building or has_road

        if is_suitable:
            self._bump("total_accepted")
        else:
            self._bump("no_building", "total_rejected")

        return AdaptiveTilequeryResult(
            is_suitable=is_suitable,
            landuse_type=self.extract_landuse(collection),
            road_distance_m=_nearest_distance(collection.roads) if has_road else None,
            building_distance_m=_nearest_distance(collection.buildings) if has_building else None,
            urban_density_index=self.urban_density(collection),
            radius=radius,
            features=list(collection.features),
        )

    # ───────────────────────────────────────────────────────────────────────
    # Batch
    # ───────────────────────────────────────────────────────────────────────
    def validate_locations_batch(
        self,
        locations: Sequence[Dict[str, Any]],
        concurrency: int = 16,
    ) -> List[BatchValidation]:
        """
        Validate many locations with bounded concurrency.

        Locations are processed in groups of `concurrency`; each group runs in
        parallel and must finish before the next starts, so at most
        `concurrency` provider calls are ever in flight.

        Args:
            locations: dicts with "lat", "lng" and optionally "id"
            concurrency: group size

        Returns:
            One BatchValidation per input, in input order
        """
        concurrency = max(1, concurrency)
        results: List[BatchValidation] = []

        def run(location: Dict[str, Any]) -> BatchValidation:
            try:
                result = self.validate_location_adaptive(location["lat"], location["lng"])
                return BatchValidation(location=location, result=result)
            except GeodataError as e:
                # One bad call must not abort the batch
                log.error(f"Validation failed for {location}: {e}")
                return BatchValidation(location=location, error=str(e))

        with ThreadPoolExecutor(max_workers=concurrency) as executor:
            for start in range(0, len(locations), concurrency):
                group = locations[start:start + concurrency]
                results.extend(executor.map(run, group))

        accepted = sum(1 for r in results if r.result is not None and r.result.is_suitable)
        log.info(f"Batch validation: {accepted}/{len(results)} locations suitable")
        return results

    # ───────────────────────────────────────────────────────────────────────
    # Observability
    # ───────────────────────────────────────────────────────────────────────
    def get_cache_stats(self) -> Dict[str, Any]:
        total = self.cache_hits + self.cache_misses
        hit_rate = (self.cache_hits / total) * 100 if total else 0.0
        return {
            "cacheHits": self.cache_hits,
            "cacheMisses": self.cache_misses,
            "hitRate": round(hit_rate, 2),
            "apiCalls": self.api_calls,
        }

    def get_rejection_stats(self) -> Dict[str, Any]:
        stats = dict(self.rejection_reasons)
        decided = stats["total_accepted"] + stats["total_rejected"]
        stats["acceptance_rate"] = round(stats["total_accepted"] / decided * 100) if decided else 0
        return stats

    def reset_stats(self):
        with self._stats_lock:
            self._init_counters()


def _nearest_distance(features: Sequence[Feature]) -> Optional[int]:
    distances = [f.distance_m for f in features if f.distance_m is not None]
    if not distances:
        return None
    return int(round(min(distances)))
