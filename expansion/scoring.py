"""
Candidate scoring - pure functions shared by the worker and fallback paths.

Scoring model:
- demand           = population/200k * 0.5 + footfall * 0.3 + income * 0.2
- cannibalization  = 3 / nearestSubwayDistance (1.0 when the distance is 0)
- final            = clamp(0.6 * demand - 0.25 * cannibalization - 0.15 * competitor)

Selection keeps the top round(intensity% of filtered) candidates, capped at 300.
"""

import json
import math
import random
import logging
from datetime import datetime, timezone
from typing import Callable, List, Optional, Sequence, Tuple

from expansion.models import (
    CalculationRequest,
    CandidateSite,
    DataMode,
    ExpansionSuggestion,
    ScopeSelection,
    ScopeType,
)

log = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# CONSTANTS
# ═══════════════════════════════════════════════════════════════════════════
POPULATION_NORMALIZER = 200000
DEMAND_WEIGHT = 0.6
CANNIBALIZATION_WEIGHT = 0.25
COMPETITION_WEIGHT = 0.15

MAX_SUGGESTIONS = 300
FALLBACK_CONFIDENCE = 0.7

POI_OPTIONS = (
    "Shopping Center",
    "Transit Hub",
    "University",
    "Hospital",
    "Office Complex",
    "Residential Area",
)
POI_SEED_OFFSET = 1000


# ═══════════════════════════════════════════════════════════════════════════
# HASHING
# ═══════════════════════════════════════════════════════════════════════════
def _to_int32(value: int) -> int:
    value &= 0xFFFFFFFF
    return value - 0x100000000 if value >= 0x80000000 else value


def djb2(text: str) -> int:
    """
    djb2 string hash, non-negative.

    The shift is truncated to 32 bits each round while the running sum is
    not, so keys match those produced by existing browser clients.
    """
    h = 5381
    for ch in text:
        h = _to_int32(_to_int32(h) << 5) + h + ord(ch)
    return abs(h)


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def scope_key(scope: ScopeSelection) -> str:
    if scope.type == ScopeType.CUSTOM_AREA:
        polygon = json.dumps(scope.polygon, separators=(",", ":"), sort_keys=True)
        return f"custom_{djb2(polygon)}"
    return f"{scope.type}_{scope.value}"


def generate_cache_key(scope: ScopeSelection, intensity: float, model_version: str, data_mode: str) -> str:
    return str(djb2(f"{scope_key(scope)}_{_fmt(intensity)}_{model_version}_{data_mode}"))


def suggestion_id(lat: float, lng: float, model_version: str) -> str:
    return f"suggestion_{djb2(f'{_fmt(lat)}_{_fmt(lng)}_{model_version}')}"


def deterministic_seed(lat: float, lng: float, scope: str, model_version: str) -> int:
    return djb2(f"{lat:.6f}_{lng:.6f}_{scope}_{model_version}")


def _fmt(value: float) -> str:
    # Integral floats render without a trailing ".0"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


# ═══════════════════════════════════════════════════════════════════════════
# SCORES
# ═══════════════════════════════════════════════════════════════════════════
def demand_score(site: CandidateSite) -> float:
    return (
        (site.population / POPULATION_NORMALIZER) * 0.5
        + site.footfall_index * 0.3
        + site.income_index * 0.2
    )


def cannibalization_penalty(site: CandidateSite) -> float:
    if site.nearest_subway_distance > 0:
        return 3.0 / site.nearest_subway_distance
    return 1.0


def final_score(site: CandidateSite) -> float:
    raw = (
        DEMAND_WEIGHT * demand_score(site)
        - CANNIBALIZATION_WEIGHT * cannibalization_penalty(site)
        - COMPETITION_WEIGHT * site.competitor_idx
    )
    return max(0.0, min(1.0, raw))


def worker_confidence(site: CandidateSite, data_mode: str) -> float:
    """Confidence from data mode, metric consistency and distance to existing stores."""
    base = 0.85 if data_mode == DataMode.LIVE else 0.75

    variance = abs(site.footfall_index - site.income_index) + abs(site.population_density - site.poi_density)
    variance_penalty = min(0.3, variance / 2)
    distance_bonus = 0.1 if site.nearest_subway_distance > 2 else 0.0

    return max(0.3, min(0.95, base - variance_penalty + distance_bonus))


def fallback_confidence(site: CandidateSite, data_mode: str) -> float:
    return FALLBACK_CONFIDENCE


def top_pois(site: CandidateSite, scope: ScopeSelection, model_version: str, count: int = 3) -> List[str]:
    """Three nearby POI categories, stable for a given site, scope and model."""
    seed = deterministic_seed(site.lat, site.lng, scope.value, model_version) + POI_SEED_OFFSET
    rng = random.Random(seed)
    return [rng.choice(POI_OPTIONS) for _ in range(count)]


# ═══════════════════════════════════════════════════════════════════════════
# SELECTION
# ═══════════════════════════════════════════════════════════════════════════
def filter_candidates(sites: Sequence[CandidateSite], min_distance: float) -> List[CandidateSite]:
    """Keep in-scope sites far enough from existing stores."""
    return [
        site for site in sites
        if site.within_scope and site.nearest_subway_distance >= min_distance
    ]


def target_count(intensity: float, filtered: int) -> int:
    return min(MAX_SUGGESTIONS, round_half_up(intensity / 100 * filtered))


def rank_candidates(sites: Sequence[CandidateSite]) -> List[Tuple[CandidateSite, float]]:
    scored = [(site, final_score(site)) for site in sites]
    # sorted() is stable, so equal scores keep input order
    return sorted(scored, key=lambda item: item[1], reverse=True)


def select_suggestions(
    request: CalculationRequest,
    confidence_fn: Callable[[CandidateSite, str], float] = worker_confidence,
    snapshot_date: Optional[str] = None,
) -> Tuple[List[ExpansionSuggestion], int]:
    """
    Filter, rank and convert candidates into suggestions.

    Args:
        request: The calculation request
        confidence_fn: Confidence model for the execution path
        snapshot_date: ISO timestamp stamped on every suggestion (defaults to now)

    Returns:
        (suggestions, filtered candidate count)
    """
    if request.max_per_city is not None:
        log.debug(f"maxPerCity={request.max_per_city} supplied; per-city limits are not applied")

    filtered = filter_candidates(request.candidate_sites, request.min_distance)
    ranked = rank_candidates(filtered)
    selected = ranked[:target_count(request.intensity, len(filtered))]

    snapshot = snapshot_date or datetime.now(timezone.utc).isoformat()
    cache_key = generate_cache_key(request.scope, request.intensity, request.model_version, request.data_mode)

    suggestions = [
        ExpansionSuggestion(
            id=suggestion_id(site.lat, site.lng, request.model_version),
            lat=site.lat,
            lng=site.lng,
            final_score=round(score, 3),
            confidence=round(confidence_fn(site, request.data_mode), 3),
            data_mode=request.data_mode,
            demand_score=round(demand_score(site), 3),
            cannibalization_penalty=round(cannibalization_penalty(site), 3),
            ops_fit_score=round(site.infrastructure_score, 3),
            nearest_subway_distance=round(site.nearest_subway_distance, 1),
            top_pois=top_pois(site, request.scope, request.model_version),
            cache_key=cache_key,
            model_version=request.model_version,
            data_snapshot_date=snapshot,
        )
        for site, score in selected
    ]

    log.info(
        f"Selected {len(suggestions)} of {len(filtered)} filtered candidates "
        f"({len(request.candidate_sites)} total) at intensity {request.intensity}"
    )
    return suggestions, len(filtered)
