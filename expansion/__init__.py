"""
Expansion module - scoring, calculation, jobs and the local store cache.
"""

from expansion.calculator import (
    CalculationCancelled,
    CalculationFailed,
    CalculationInProgress,
    ExpansionCalculator,
)
from expansion.config import Settings
from expansion.jobs import (
    ExpansionJob,
    GenerationParams,
    InvalidJobParams,
    InvalidJobTransition,
    JobOrchestrator,
    JobStatus,
)
from expansion.models import (
    CalculationRequest,
    CalculationResult,
    CandidateSite,
    ExpansionSuggestion,
    ScopeSelection,
)
from expansion.pipeline import CandidateGenerator, ExpansionPipeline, JsonCandidateGenerator, RationaleService
from expansion.runner import JobRunner
from expansion.services import Services, build_services
from expansion.store_cache import CachedStore, CacheNotInitialized, StoreCacheManager

__all__ = [
    "CachedStore",
    "CacheNotInitialized",
    "CalculationCancelled",
    "CalculationFailed",
    "CalculationInProgress",
    "CalculationRequest",
    "CalculationResult",
    "CandidateGenerator",
    "CandidateSite",
    "ExpansionCalculator",
    "ExpansionJob",
    "ExpansionPipeline",
    "ExpansionSuggestion",
    "GenerationParams",
    "InvalidJobParams",
    "InvalidJobTransition",
    "JobOrchestrator",
    "JobRunner",
    "JobStatus",
    "JsonCandidateGenerator",
    "RationaleService",
    "ScopeSelection",
    "Services",
    "Settings",
    "StoreCacheManager",
    "build_services",
]
