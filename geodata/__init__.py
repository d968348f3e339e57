"""
Geodata layer - provider client, typed features, caching, suitability and snapping.
"""

from geodata.cache import ResultCache, coordinate_hash
from geodata.errors import AuthenticationFailure, GeodataError, ProviderUnavailable
from geodata.features import (
    BuildingFeature,
    FeatureCollection,
    LanduseFeature,
    PlaceFeature,
    RoadFeature,
    parse_feature_collection,
)
from geodata.snapping import InfrastructureSnapper, SnappingResult, SnapTarget
from geodata.suitability import AdaptiveTilequeryResult, SuitabilityValidator, TilequeryResult
from geodata.tilequery import TilequeryClient

__all__ = [
    "AdaptiveTilequeryResult",
    "AuthenticationFailure",
    "BuildingFeature",
    "FeatureCollection",
    "GeodataError",
    "InfrastructureSnapper",
    "LanduseFeature",
    "PlaceFeature",
    "ProviderUnavailable",
    "ResultCache",
    "RoadFeature",
    "SnapTarget",
    "SnappingResult",
    "SuitabilityValidator",
    "TilequeryClient",
    "TilequeryResult",
    "coordinate_hash",
    "parse_feature_collection",
]
