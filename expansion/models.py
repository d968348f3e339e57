"""
Core data models for the expansion engine.

Wire format is camelCase (matching the job params and calculation payloads
exchanged with callers); attributes are snake_case.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


class DataMode:
    """Where the candidate metrics came from."""
    LIVE = "live"
    MODELLED = "modelled"

    ALL = (LIVE, MODELLED)


class ScopeType:
    COUNTRY = "country"
    STATE = "state"
    CUSTOM_AREA = "custom_area"


@dataclass(frozen=True)
class CandidateSite:
    """
    A proposed point for a new store, with the metrics used to score it.

    Distances are in kilometres; indices are expected in 0-1.
    """
    lat: float
    lng: float
    within_scope: bool = True
    subway_density: float = 0.0
    population_density: float = 0.0
    poi_density: float = 0.0
    infrastructure_score: float = 0.0
    nearest_subway_distance: float = 0.0   # km to the nearest existing store
    population: float = 0.0
    footfall_index: float = 0.0
    income_index: float = 0.0
    competitor_idx: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lat": self.lat,
            "lng": self.lng,
            "withinScope": self.within_scope,
            "subwayDensity": self.subway_density,
            "populationDensity": self.population_density,
            "poiDensity": self.poi_density,
            "infrastructureScore": self.infrastructure_score,
            "nearestSubwayDistance": self.nearest_subway_distance,
            "population": self.population,
            "footfallIndex": self.footfall_index,
            "incomeIndex": self.income_index,
            "competitorIdx": self.competitor_idx,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CandidateSite":
        return cls(
            lat=float(data["lat"]),
            lng=float(data["lng"]),
            within_scope=bool(data.get("withinScope", True)),
            subway_density=float(data.get("subwayDensity", 0.0)),
            population_density=float(data.get("populationDensity", 0.0)),
            poi_density=float(data.get("poiDensity", 0.0)),
            infrastructure_score=float(data.get("infrastructureScore", 0.0)),
            nearest_subway_distance=float(data.get("nearestSubwayDistance", 0.0)),
            population=float(data.get("population", 0.0)),
            footfall_index=float(data.get("footfallIndex", 0.0)),
            income_index=float(data.get("incomeIndex", 0.0)),
            competitor_idx=float(data.get("competitorIdx", 0.0)),
        )


@dataclass(frozen=True)
class ScopeSelection:
    """Geographic scope of a calculation: a country, a state, or a drawn area."""
    type: str
    value: str
    polygon: Optional[Dict[str, Any]] = field(default=None, compare=False)
    area: Optional[float] = None  # km²

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"type": self.type, "value": self.value}
        if self.polygon is not None:
            data["polygon"] = self.polygon
        if self.area is not None:
            data["area"] = self.area
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScopeSelection":
        return cls(
            type=data["type"],
            value=data.get("value", ""),
            polygon=data.get("polygon"),
            area=data.get("area"),
        )


@dataclass
class CalculationRequest:
    scope: ScopeSelection
    intensity: float                    # 0-100
    data_mode: str = DataMode.LIVE
    model_version: str = "v1"
    min_distance: float = 0.0           # km, anti-cannibalization
    max_per_city: Optional[int] = None  # accepted for compatibility, not applied
    candidate_sites: List[CandidateSite] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scope": self.scope.to_dict(),
            "intensity": self.intensity,
            "dataMode": self.data_mode,
            "modelVersion": self.model_version,
            "minDistance": self.min_distance,
            "maxPerCity": self.max_per_city,
            "candidateSites": [site.to_dict() for site in self.candidate_sites],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CalculationRequest":
        return cls(
            scope=ScopeSelection.from_dict(data["scope"]),
            intensity=float(data["intensity"]),
            data_mode=data.get("dataMode", DataMode.LIVE),
            model_version=data.get("modelVersion", "v1"),
            min_distance=float(data.get("minDistance", 0.0)),
            max_per_city=data.get("maxPerCity"),
            candidate_sites=[CandidateSite.from_dict(s) for s in data.get("candidateSites", [])],
        )


@dataclass(frozen=True)
class ExpansionSuggestion:
    """A ranked expansion suggestion. Read-only once produced."""
    id: str
    lat: float
    lng: float
    final_score: float
    confidence: float
    data_mode: str
    demand_score: float
    cannibalization_penalty: float
    ops_fit_score: float
    nearest_subway_distance: float
    top_pois: List[str]
    cache_key: str
    model_version: str
    data_snapshot_date: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "lat": self.lat,
            "lng": self.lng,
            "finalScore": self.final_score,
            "confidence": self.confidence,
            "dataMode": self.data_mode,
            "demandScore": self.demand_score,
            "cannibalizationPenalty": self.cannibalization_penalty,
            "opsFitScore": self.ops_fit_score,
            "nearestSubwayDistance": self.nearest_subway_distance,
            "topPOIs": list(self.top_pois),
            "cacheKey": self.cache_key,
            "modelVersion": self.model_version,
            "dataSnapshotDate": self.data_snapshot_date,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExpansionSuggestion":
        return cls(
            id=data["id"],
            lat=data["lat"],
            lng=data["lng"],
            final_score=data["finalScore"],
            confidence=data["confidence"],
            data_mode=data["dataMode"],
            demand_score=data["demandScore"],
            cannibalization_penalty=data["cannibalizationPenalty"],
            ops_fit_score=data["opsFitScore"],
            nearest_subway_distance=data["nearestSubwayDistance"],
            top_pois=list(data.get("topPOIs", [])),
            cache_key=data["cacheKey"],
            model_version=data["modelVersion"],
            data_snapshot_date=data["dataSnapshotDate"],
        )


@dataclass
class CalculationResult:
    suggestions: List[ExpansionSuggestion]
    total_candidates: int
    filtered_candidates: int
    calculation_time_ms: int
    cache_key: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "suggestions": [s.to_dict() for s in self.suggestions],
            "metadata": {
                "totalCandidates": self.total_candidates,
                "filteredCandidates": self.filtered_candidates,
                "calculationTimeMs": self.calculation_time_ms,
                "cacheKey": self.cache_key,
            },
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CalculationResult":
        meta = data["metadata"]
        return cls(
            suggestions=[ExpansionSuggestion.from_dict(s) for s in data["suggestions"]],
            total_candidates=meta["totalCandidates"],
            filtered_candidates=meta["filteredCandidates"],
            calculation_time_ms=meta["calculationTimeMs"],
            cache_key=meta["cacheKey"],
        )
