"""
Expansion pipeline - candidates in, ranked suggestions out.

    CandidateGenerator -> SuitabilityValidator -> InfrastructureSnapper
                       -> ExpansionCalculator -> (optional) RationaleService

The generator and rationale service are external collaborators behind
abstract interfaces; the geodata stages only run when infrastructure
filtering is requested.
"""

import json
import time
import logging
from abc import ABC, abstractmethod
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from geodata.snapping import InfrastructureSnapper
from geodata.suitability import SuitabilityValidator

from expansion.calculator import ExpansionCalculator
from expansion.jobs import GenerationParams, rationale_candidates
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
# COLLABORATORS
# ═══════════════════════════════════════════════════════════════════════════
class CandidateGenerator(ABC):
    """Produces raw candidate sites for a generation request."""

    @abstractmethod
    def generate(self, params: GenerationParams) -> List[CandidateSite]:
        raise NotImplementedError


class RationaleService(ABC):
    """Explains a suggestion in plain language. Opaque text service."""

    @abstractmethod
    def explain(self, suggestion: ExpansionSuggestion) -> Tuple[str, int]:
        """Return (rationale text, tokens consumed)."""
        raise NotImplementedError


class JsonCandidateGenerator(CandidateGenerator):
    """
    Reads candidate sites from a JSON file.

    The file holds either a list of site objects or {"candidateSites": [...]}.
    """

    def __init__(self, path: str):
        self.path = Path(path)

    def generate(self, params: GenerationParams) -> List[CandidateSite]:
        with open(self.path) as f:
            data = json.load(f)

        if isinstance(data, dict):
            data = data.get("candidateSites", [])

        sites = [CandidateSite.from_dict(item) for item in data]
        log.info(f"Loaded {len(sites)} candidate sites from {self.path}")
        return sites


# ═══════════════════════════════════════════════════════════════════════════
# PIPELINE
# ═══════════════════════════════════════════════════════════════════════════
def scope_for_region(region: Dict[str, Any]) -> ScopeSelection:
    """Map a generation region onto a calculation scope."""
    if region.get("country"):
        return ScopeSelection(type=ScopeType.COUNTRY, value=str(region["country"]))

    bbox = region.get("boundingBox") or {}
    north, south = bbox.get("north"), bbox.get("south")
    east, west = bbox.get("east"), bbox.get("west")
    polygon = {
        "type": "Polygon",
        "coordinates": [[[west, south], [east, south], [east, north], [west, north], [west, south]]],
    }
    return ScopeSelection(type=ScopeType.CUSTOM_AREA, value="custom", polygon=polygon)


class ExpansionPipeline:
    """
    Runs one generation end to end.

    Usage:
        pipeline = ExpansionPipeline(generator, calculator, validator, snapper)
        result = pipeline.run(params)
        print(result["statistics"])
    """

    def __init__(
        self,
        generator: CandidateGenerator,
        calculator: ExpansionCalculator,
        validator: Optional[SuitabilityValidator] = None,
        snapper: Optional[InfrastructureSnapper] = None,
        rationale: Optional[RationaleService] = None,
        model_version: str = "v1",
        batch_concurrency: int = 16,
        calculation_timeout: float = 60.0,
    ):
        self.generator = generator
        self.calculator = calculator
        self.validator = validator
        self.snapper = snapper
        self.rationale = rationale
        self.model_version = model_version
        self.batch_concurrency = batch_concurrency
        self.calculation_timeout = calculation_timeout

    def filter_by_infrastructure(self, sites: List[CandidateSite]) -> Tuple[List[CandidateSite], Dict[str, int]]:
        """
        Drop unsuitable sites and move the rest onto real infrastructure.

        Returns:
            (surviving sites, counts of what was dropped)
        """
        stats = {"unsuitable": 0, "unsnappable": 0, "errors": 0}
        if self.validator is None and self.snapper is None:
            return sites, stats

        locations = [{"id": i, "lat": s.lat, "lng": s.lng} for i, s in enumerate(sites)]
        survivors = list(sites)

        if self.validator is not None:
            kept = []
            for site, item in zip(survivors, self.validator.validate_locations_batch(locations, self.batch_concurrency)):
                if item.error is not None:
                    stats["errors"] += 1
                elif item.result.is_suitable:
                    kept.append(site)
                else:
                    stats["unsuitable"] += 1
            survivors = kept

        if self.snapper is not None and survivors:
            locations = [{"lat": s.lat, "lng": s.lng} for s in survivors]
            kept = []
            for site, item in zip(survivors, self.snapper.snap_locations_batch(locations, self.batch_concurrency)):
                if item.error is not None:
                    stats["errors"] += 1
                elif not item.result.success:
                    stats["unsnappable"] += 1
                else:
                    kept.append(replace(site, lat=item.result.snapped_lat, lng=item.result.snapped_lng))
            survivors = kept

        log.info(
            f"Infrastructure filtering kept {len(survivors)}/{len(sites)} sites "
            f"(unsuitable={stats['unsuitable']}, unsnappable={stats['unsnappable']}, errors={stats['errors']})"
        )
        return survivors, stats

    def run(self, params: GenerationParams) -> Dict[str, Any]:
        start = time.time()

        sites = self.generator.generate(params)
        total_generated = len(sites)

        filter_stats = {"unsuitable": 0, "unsnappable": 0, "errors": 0}
        if params.enable_infrastructure_filtering:
            sites, filter_stats = self.filter_by_infrastructure(sites)

        request = CalculationRequest(
            scope=scope_for_region(params.region),
            intensity=params.aggression,
            data_mode=DataMode.LIVE,
            model_version=self.model_version,
            min_distance=params.min_distance_m / 1000,
            candidate_sites=sites,
        )
        future = self.calculator.calculate(request)
        try:
            calculation = future.result(timeout=self.calculation_timeout)
        except FuturesTimeout:
            # Free the calculator for the next job before failing this one
            log.error(f"Calculation exceeded {self.calculation_timeout}s, cancelling")
            self.calculator.cancel()
            raise

        rationales: Dict[str, str] = {}
        tokens_used = 0
        if params.enable_ai_rationale and self.rationale is not None:
            for suggestion in calculation.suggestions[:rationale_candidates(params.aggression)]:
                text, tokens = self.rationale.explain(suggestion)
                rationales[suggestion.id] = text
                tokens_used += tokens
            log.info(f"Generated {len(rationales)} rationales using {tokens_used} tokens")

        result = calculation.to_dict()
        result["rationales"] = rationales
        result["statistics"] = {
            "generatedCandidates": total_generated,
            "afterInfrastructureFiltering": len(sites),
            "unsuitable": filter_stats["unsuitable"],
            "unsnappable": filter_stats["unsnappable"],
            "geodataErrors": filter_stats["errors"],
            "tokensUsed": tokens_used,
        }
        result["metadata"]["generationTimeMs"] = int((time.time() - start) * 1000)
        result["metadata"]["seed"] = params.seed
        return result
