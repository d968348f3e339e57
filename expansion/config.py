"""
Runtime settings for the expansion engine, read from the environment.
"""

import os
from dataclasses import asdict, dataclass
from typing import Dict, Mapping, Optional

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def _env_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    value = raw.strip().lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ValueError(f"{name} must be a boolean, got {raw!r}")


def _env_number(env: Mapping[str, str], name: str, default, kind=float):
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return kind(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be a {kind.__name__}, got {raw!r}") from e


@dataclass
class Settings:
    """
    Every tunable of the engine. Defaults are production values.
    """

    # Geodata provider
    mapbox_access_token: Optional[str] = None
    """Tilequery access token. Without it every geodata call is a provider error."""

    tilequery_url: Optional[str] = None
    """Override for the Tilequery endpoint (None = Mapbox streets v8)."""

    tilequery_radius_m: int = 1500
    """Radius of the suitability query in meters."""

    max_snap_distance_m: int = 1500
    """Roads and buildings farther than this are not snap targets."""

    request_timeout_s: float = 10.0
    """Hard timeout on every provider request."""

    retry_attempts: int = 3
    """Total attempts for transient provider failures."""

    min_request_interval_s: float = 0.1
    """Minimum spacing between provider requests across all threads."""

    batch_concurrency: int = 16
    """Group size for batch validation and snapping."""

    fail_open: bool = True
    """Treat provider outages as 'suitable' instead of raising."""

    # Storage
    cache_db: str = "expansion_cache.db"
    """SQLite file holding the suitability and snapping caches."""

    jobs_db: str = "expansion_jobs.db"
    """SQLite file holding expansion jobs."""

    store_cache_db: str = "store_cache.db"
    """SQLite file for the local store cache."""

    suitability_ttl_days: float = 30
    snapping_ttl_days: float = 90

    # Scoring
    use_worker: bool = True
    """Run calculations on the background worker thread."""

    model_version: str = "v1"

    # Pricing (USD per million tokens)
    input_rate_per_million: float = 0.10
    output_rate_per_million: float = 0.40
    currency_factor: float = 0.8
    """USD to billing currency."""

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """
        Build settings from environment variables.

        Raises:
            ValueError: a variable is present but malformed
        """
        env = os.environ if environ is None else environ
        defaults = cls()

        return cls(
            mapbox_access_token=env.get("MAPBOX_ACCESS_TOKEN") or None,
            tilequery_url=env.get("EXPANSION_TILEQUERY_URL") or None,
            tilequery_radius_m=_env_number(env, "EXPANSION_TILEQUERY_RADIUS_M", defaults.tilequery_radius_m, int),
            max_snap_distance_m=_env_number(env, "EXPANSION_MAX_SNAP_DISTANCE_M", defaults.max_snap_distance_m, int),
            request_timeout_s=_env_number(env, "EXPANSION_REQUEST_TIMEOUT_S", defaults.request_timeout_s),
            retry_attempts=_env_number(env, "EXPANSION_RETRY_ATTEMPTS", defaults.retry_attempts, int),
            min_request_interval_s=_env_number(
                env, "EXPANSION_MIN_REQUEST_INTERVAL_S", defaults.min_request_interval_s
            ),
            batch_concurrency=_env_number(env, "EXPANSION_BATCH_CONCURRENCY", defaults.batch_concurrency, int),
            fail_open=_env_bool(env, "EXPANSION_FAIL_OPEN", defaults.fail_open),
            cache_db=env.get("EXPANSION_CACHE_DB") or defaults.cache_db,
            jobs_db=env.get("EXPANSION_JOBS_DB") or defaults.jobs_db,
            store_cache_db=env.get("EXPANSION_STORE_CACHE_DB") or defaults.store_cache_db,
            use_worker=_env_bool(env, "EXPANSION_USE_WORKER", defaults.use_worker),
            model_version=env.get("EXPANSION_MODEL_VERSION") or defaults.model_version,
            input_rate_per_million=_env_number(
                env, "EXPANSION_INPUT_RATE_PER_MILLION", defaults.input_rate_per_million
            ),
            output_rate_per_million=_env_number(
                env, "EXPANSION_OUTPUT_RATE_PER_MILLION", defaults.output_rate_per_million
            ),
            currency_factor=_env_number(env, "EXPANSION_CURRENCY_FACTOR", defaults.currency_factor),
        )

    def to_dict(self) -> Dict:
        data = asdict(self)
        if data["mapbox_access_token"]:
            data["mapbox_access_token"] = "***"
        return data
