"""
Service wiring - builds every long-lived service once from Settings.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from geodata.cache import ResultCache
from geodata.snapping import InfrastructureSnapper
from geodata.suitability import SuitabilityValidator
from geodata.tilequery import TilequeryClient

from expansion.calculator import ExpansionCalculator
from expansion.config import Settings
from expansion.jobs import JobOrchestrator, TokenPricing
from expansion.store_cache import StoreCacheManager

log = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    client: TilequeryClient
    validator: SuitabilityValidator
    snapper: InfrastructureSnapper
    calculator: ExpansionCalculator
    jobs: JobOrchestrator
    store_cache: StoreCacheManager

    def shutdown(self):
        self.calculator.shutdown()
        self.store_cache.close()


def build_services(settings: Optional[Settings] = None) -> Services:
    """Construct the service graph. Call once per process and pass the result around."""
    settings = settings or Settings.from_env()

    if not settings.mapbox_access_token:
        log.warning("MAPBOX_ACCESS_TOKEN not set; geodata checks will report provider errors")

    client = TilequeryClient(
        access_token=settings.mapbox_access_token,
        base_url=settings.tilequery_url,
        timeout=settings.request_timeout_s,
        retry_attempts=settings.retry_attempts,
        min_request_interval=settings.min_request_interval_s,
    )

    validator = SuitabilityValidator(
        client,
        ResultCache(settings.cache_db, table="suitability_cache", ttl_days=settings.suitability_ttl_days),
        radius_m=settings.tilequery_radius_m,
        fail_open=settings.fail_open,
    )
    snapper = InfrastructureSnapper(
        client,
        ResultCache(settings.cache_db, table="snapping_cache", ttl_days=settings.snapping_ttl_days),
        max_snap_distance_m=settings.max_snap_distance_m,
        fail_open=settings.fail_open,
    )

    jobs = JobOrchestrator(
        settings.jobs_db,
        pricing=TokenPricing(
            input_rate_per_million=settings.input_rate_per_million,
            output_rate_per_million=settings.output_rate_per_million,
            currency_factor=settings.currency_factor,
        ),
    )

    store_cache = StoreCacheManager(settings.store_cache_db)
    store_cache.initialize()

    return Services(
        settings=settings,
        client=client,
        validator=validator,
        snapper=snapper,
        calculator=ExpansionCalculator(use_worker=settings.use_worker),
        jobs=jobs,
        store_cache=store_cache,
    )
