"""
Job Orchestrator - SQLite-backed, idempotent expansion generation jobs.

Jobs are created by callers with an idempotency key and processed later by a
JobRunner. A key maps to at most one job: concurrent submissions with the
same key converge on the same row.

Lifecycle:
    queued -> running -> completed | failed
    queued -> failed
Terminal rows are never modified again.
"""

import hashlib
import json
import math
import sqlite3
import threading
import uuid
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

log = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# ERRORS
# ═══════════════════════════════════════════════════════════════════════════
class InvalidJobParams(ValueError):
    """Submitted generation parameters failed validation."""

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__("; ".join(self.errors))


class InvalidJobTransition(Exception):
    """A status change that the job's current state does not allow."""


# ═══════════════════════════════════════════════════════════════════════════
# JOB STATUS
# ═══════════════════════════════════════════════════════════════════════════
class JobStatus:
    """Job lifecycle states."""
    QUEUED = "queued"          # Waiting for a runner
    RUNNING = "running"        # Claimed by a runner
    COMPLETED = "completed"    # Result stored
    FAILED = "failed"          # Error stored

    TERMINAL = (COMPLETED, FAILED)


# ═══════════════════════════════════════════════════════════════════════════
# GENERATION PARAMS
# ═══════════════════════════════════════════════════════════════════════════
def _generate_seed(region: Dict[str, Any], aggression: int, population_bias: float,
                   proximity_bias: float, turnover_bias: float) -> int:
    """Derive a stable seed from the request so identical requests replay identically."""
    region_str = json.dumps(region, separators=(",", ":"))
    key = f"{region_str}-{aggression}-{population_bias}-{proximity_bias}-{turnover_bias}"
    digest = hashlib.md5(key.encode()).hexdigest()
    return int(digest[:8], 16)


@dataclass
class GenerationParams:
    """
    Parameters of one expansion generation run.

    Attributes:
        region: {"country": "DE"} or {"boundingBox": {...}}
        aggression: 0-100, drives how many stores are targeted
        population_bias: Weight of population in candidate generation (0-1)
        proximity_bias: Weight of proximity to existing stores (0-1)
        turnover_bias: Weight of nearby store turnover (0-1)
        min_distance_m: Minimum distance between suggestions in meters (>= 100)
        seed: Deterministic seed; derived from the fields above when not given
        enable_ai_rationale: Ask the rationale service to explain top picks
        enable_infrastructure_filtering: Run suitability and snapping checks
        model: Rationale model identifier
    """
    region: Dict[str, Any]
    aggression: int
    population_bias: float = 0.5
    proximity_bias: float = 0.3
    turnover_bias: float = 0.2
    min_distance_m: int = 800
    seed: Optional[int] = None
    enable_ai_rationale: bool = False
    enable_infrastructure_filtering: bool = False
    model: Optional[str] = None

    def __post_init__(self):
        if self.seed is None:
            self.seed = _generate_seed(
                self.region, self.aggression,
                self.population_bias, self.proximity_bias, self.turnover_bias,
            )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GenerationParams":
        """
        Validate a raw request body.

        Raises:
            InvalidJobParams: listing every problem found
        """
        errors: List[str] = []

        region = data.get("region")
        if not isinstance(region, dict) or not (region.get("country") or region.get("boundingBox")):
            errors.append("Region filter is required (country or boundingBox)")

        aggression = _parse_number(data.get("aggression"), int)
        if aggression is None or not 0 <= aggression <= 100:
            errors.append("Aggression must be between 0 and 100")

        biases = {}
        for key, label, default in (
            ("populationBias", "Population bias", 0.5),
            ("proximityBias", "Proximity bias", 0.3),
            ("turnoverBias", "Turnover bias", 0.2),
        ):
            value = _parse_number(data.get(key, default), float)
            if value is None or not 0 <= value <= 1:
                errors.append(f"{label} must be between 0 and 1")
            biases[key] = value

        min_distance_m = _parse_number(data.get("minDistanceM", 800), int)
        if min_distance_m is None or min_distance_m < 100:
            errors.append("Minimum distance must be at least 100 meters")

        seed = None
        if data.get("seed") is not None:
            seed = _parse_number(data["seed"], int)
            if seed is None:
                errors.append("Seed must be an integer")

        if errors:
            raise InvalidJobParams(errors)

        infra = data.get("enableInfrastructureFiltering", data.get("enableMapboxFiltering", False))
        return cls(
            region=region,
            aggression=aggression,
            population_bias=biases["populationBias"],
            proximity_bias=biases["proximityBias"],
            turnover_bias=biases["turnoverBias"],
            min_distance_m=min_distance_m,
            seed=seed,
            enable_ai_rationale=bool(data.get("enableAIRationale", False)),
            enable_infrastructure_filtering=bool(infra),
            model=data.get("model"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "region": self.region,
            "aggression": self.aggression,
            "populationBias": self.population_bias,
            "proximityBias": self.proximity_bias,
            "turnoverBias": self.turnover_bias,
            "minDistanceM": self.min_distance_m,
            "seed": self.seed,
            "enableAIRationale": self.enable_ai_rationale,
            "enableInfrastructureFiltering": self.enable_infrastructure_filtering,
            "model": self.model,
        }


def _parse_number(value: Any, kind: type) -> Optional[Union[int, float]]:
    """Finite number, or None. Integer fields reject fractions rather than truncating."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    if kind is int:
        return int(number) if number.is_integer() else None
    return number


# ═══════════════════════════════════════════════════════════════════════════
# ESTIMATES
# ═══════════════════════════════════════════════════════════════════════════
BASE_TOKENS = 100
TOKENS_PER_RATIONALE = 150
MAX_RATIONALE_CANDIDATES = 60
RATIONALE_SHARE = 0.2
INFRASTRUCTURE_FILTER_TOKENS = 50


def target_stores(aggression: int) -> int:
    if aggression <= 20:
        return 50
    if aggression <= 40:
        return 100
    if aggression <= 60:
        return 150
    if aggression <= 80:
        return 200
    return 300


def rationale_candidates(aggression: int) -> int:
    """Only the top 20% of targeted stores get a rationale, capped at 60."""
    return min(math.ceil(target_stores(aggression) * RATIONALE_SHARE), MAX_RATIONALE_CANDIDATES)


def estimate_tokens(params: GenerationParams) -> int:
    estimate = BASE_TOKENS
    if params.enable_ai_rationale:
        estimate += rationale_candidates(params.aggression) * TOKENS_PER_RATIONALE
    if params.enable_infrastructure_filtering:
        estimate += INFRASTRUCTURE_FILTER_TOKENS
    return estimate


@dataclass(frozen=True)
class TokenPricing:
    """Per-million-token rates in USD and the conversion to the billing currency."""
    input_rate_per_million: float = 0.10
    output_rate_per_million: float = 0.40
    input_share: float = 0.7
    currency_factor: float = 0.8

    def cost(self, tokens: int) -> float:
        input_tokens = tokens * self.input_share
        output_tokens = tokens * (1 - self.input_share)
        usd = (
            input_tokens * self.input_rate_per_million / 1_000_000
            + output_tokens * self.output_rate_per_million / 1_000_000
        )
        return round(usd * self.currency_factor, 6)


# ═══════════════════════════════════════════════════════════════════════════
# JOB
# ═══════════════════════════════════════════════════════════════════════════
@dataclass
class ExpansionJob:
    """A generation job row."""
    id: str
    idempotency_key: str
    user_id: str
    params: Dict[str, Any]
    status: str = JobStatus.QUEUED
    result: Optional[Any] = None
    error: Optional[str] = None
    token_estimate: Optional[int] = None
    tokens_used: Optional[int] = None
    cost_estimate: Optional[float] = None
    actual_cost: Optional[float] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in JobStatus.TERMINAL

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "ExpansionJob":
        data = dict(row)
        data["params"] = json.loads(data["params"])
        if data.get("result") is not None:
            data["result"] = json.loads(data["result"])
        return cls(**data)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "idempotencyKey": self.idempotency_key,
            "status": self.status,
            "userId": self.user_id,
            "params": self.params,
            "result": self.result,
            "error": self.error,
            "tokenEstimate": self.token_estimate,
            "tokensUsed": self.tokens_used,
            "costEstimate": self.cost_estimate,
            "actualCost": self.actual_cost,
            "startedAt": self.started_at,
            "completedAt": self.completed_at,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ═══════════════════════════════════════════════════════════════════════════
# ORCHESTRATOR
# ═══════════════════════════════════════════════════════════════════════════
class JobOrchestrator:
    """
    Idempotent job store for expansion generation.

    Usage:
        jobs = JobOrchestrator("expansion_jobs.db")
        job_id, reused = jobs.create_job("req-123", "user-1", {"region": {"country": "DE"}, "aggression": 40})
        job = jobs.claim_next()
        jobs.mark_completed(job.id, {"suggestions": []}, tokens_used=120)
    """

    DEFAULT_DB_PATH = "expansion_jobs.db"

    def __init__(
        self,
        db_path: str = None,
        pricing: Optional[TokenPricing] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.db_path = db_path or self.DEFAULT_DB_PATH
        self.pricing = pricing or TokenPricing()
        self.clock = clock
        self._lock = threading.RLock()
        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=10.0, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _now(self) -> str:
        return self.clock().isoformat()

    def _init_db(self):
        with self._lock:
            conn = self._get_connection()
            try:
                conn.execute("""
                    CREATE TABLE IF NOT EXISTS expansion_jobs (
                        id TEXT PRIMARY KEY,
                        idempotency_key TEXT NOT NULL UNIQUE,
                        status TEXT NOT NULL DEFAULT 'queued',
                        user_id TEXT NOT NULL,
                        params TEXT NOT NULL,
                        result TEXT,
                        error TEXT,
                        token_estimate INTEGER,
                        tokens_used INTEGER,
                        cost_estimate REAL,
                        actual_cost REAL,
                        started_at TEXT,
                        completed_at TEXT,
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL
                    )
                """)
                conn.execute(
                    "CREATE INDEX IF NOT EXISTS idx_expansion_jobs_status_created "
                    "ON expansion_jobs(status, created_at)"
                )
                conn.execute("CREATE INDEX IF NOT EXISTS idx_expansion_jobs_user ON expansion_jobs(user_id)")
                conn.commit()
                log.info(f"Expansion job store initialized at {self.db_path}")
            finally:
                conn.close()

    # ───────────────────────────────────────────────────────────────────────
    # Estimates
    # ───────────────────────────────────────────────────────────────────────
    def estimate_tokens(self, params: GenerationParams) -> int:
        return estimate_tokens(params)

    def estimate_cost(self, tokens: int) -> float:
        return self.pricing.cost(tokens)

    # ───────────────────────────────────────────────────────────────────────
    # Submission
    # ───────────────────────────────────────────────────────────────────────
    def create_job(
        self,
        idempotency_key: str,
        user_id: str,
        params: Union[GenerationParams, Dict[str, Any]],
    ) -> Tuple[str, bool]:
        """
        Create a job, or return the existing one for this idempotency key.

        Args:
            idempotency_key: Caller-supplied deduplication token
            user_id: Owner of the job
            params: GenerationParams or a raw request body to validate

        Returns:
            (job_id, is_reused)

        Raises:
            InvalidJobParams: params (or the key) failed validation
        """
        if not idempotency_key:
            raise InvalidJobParams(["Idempotency key is required"])

        existing = self._find_by_key(idempotency_key)
        if existing is not None:
            log.info(f"Reusing job {existing} for idempotency key {idempotency_key}")
            return existing, True

        if not isinstance(params, GenerationParams):
            params = GenerationParams.from_dict(params)

        token_estimate = self.estimate_tokens(params)
        cost_estimate = self.estimate_cost(token_estimate)
        job_id = str(uuid.uuid4())
        now = self._now()

        with self._lock:
            conn = self._get_connection()
            try:
                cursor = conn.execute(
                    """
                    INSERT INTO expansion_jobs
                        (id, idempotency_key, status, user_id, params,
                         token_estimate, cost_estimate, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(idempotency_key) DO NOTHING
                    """,
                    (job_id, idempotency_key, JobStatus.QUEUED, user_id,
                     json.dumps(params.to_dict()), token_estimate, cost_estimate, now, now)
                )
                conn.commit()
                inserted = cursor.rowcount == 1
            finally:
                conn.close()

        if not inserted:
            # Lost the race to a concurrent submission with the same key
            winner = self._find_by_key(idempotency_key)
            log.info(f"Concurrent submission for {idempotency_key}; reusing job {winner}")
            return winner, True

        log.info(
            f"Created job {job_id} for user {user_id}: "
            f"~{token_estimate} tokens, est. cost {cost_estimate}"
        )
        return job_id, False

    def _find_by_key(self, idempotency_key: str) -> Optional[str]:
        conn = self._get_connection()
        try:
            row = conn.execute(
                "SELECT id FROM expansion_jobs WHERE idempotency_key = ?", (idempotency_key,)
            ).fetchone()
            return row["id"] if row else None
        finally:
            conn.close()

    # ───────────────────────────────────────────────────────────────────────
    # Queries
    # ───────────────────────────────────────────────────────────────────────
    def get_job(self, job_id: str) -> Optional[ExpansionJob]:
        conn = self._get_connection()
        try:
            row = conn.execute("SELECT * FROM expansion_jobs WHERE id = ?", (job_id,)).fetchone()
            return ExpansionJob.from_row(row) if row else None
        finally:
            conn.close()

    def get_user_jobs(self, user_id: str, limit: int = 10) -> List[ExpansionJob]:
        """Most recent jobs for a user, newest first."""
        conn = self._get_connection()
        try:
            rows = conn.execute(
                "SELECT * FROM expansion_jobs WHERE user_id = ? ORDER BY created_at DESC, rowid DESC LIMIT ?",
                (user_id, limit)
            ).fetchall()
            return [ExpansionJob.from_row(row) for row in rows]
        finally:
            conn.close()

    def get_queue_stats(self) -> Dict[str, int]:
        """Get counts of jobs by status."""
        conn = self._get_connection()
        try:
            rows = conn.execute(
                "SELECT status, COUNT(*) as count FROM expansion_jobs GROUP BY status"
            ).fetchall()
            return {row["status"]: row["count"] for row in rows}
        finally:
            conn.close()

    # ───────────────────────────────────────────────────────────────────────
    # Transitions
    # ───────────────────────────────────────────────────────────────────────
    def _transition(self, job_id: str, allowed_from: Tuple[str, ...], to_status: str, **fields):
        """Compare-and-set the status; raises if the current state does not allow it."""
        now = self._now()
        fields["updated_at"] = now
        assignments = ", ".join(f"{name} = ?" for name in fields)
        placeholders = ", ".join("?" for _ in allowed_from)

        with self._lock:
            conn = self._get_connection()
            try:
                cursor = conn.execute(
                    f"""
                    UPDATE expansion_jobs SET status = ?, {assignments}
                    WHERE id = ? AND status IN ({placeholders})
                    """,
                    (to_status, *fields.values(), job_id, *allowed_from)
                )
                conn.commit()
                if cursor.rowcount == 1:
                    return
                row = conn.execute("SELECT status FROM expansion_jobs WHERE id = ?", (job_id,)).fetchone()
            finally:
                conn.close()

        if row is None:
            raise InvalidJobTransition(f"Job {job_id} not found")
        raise InvalidJobTransition(f"Job {job_id} cannot move from {row['status']} to {to_status}")

    def claim_next(self) -> Optional[ExpansionJob]:
        """
        Claim the oldest queued job, moving it to running.

        Returns:
            The claimed job, or None if nothing is queued
        """
        with self._lock:
            while True:
                conn = self._get_connection()
                try:
                    row = conn.execute(
                        """
                        SELECT id FROM expansion_jobs
                        WHERE status = ?
                        ORDER BY created_at ASC, rowid ASC
                        LIMIT 1
                        """,
                        (JobStatus.QUEUED,)
                    ).fetchone()
                finally:
                    conn.close()

                if row is None:
                    return None

                try:
                    self.mark_running(row["id"])
                except InvalidJobTransition:
                    # Another process claimed it first
                    continue

                job = self.get_job(row["id"])
                log.info(f"Claimed job {job.id}")
                return job

    def mark_running(self, job_id: str):
        self._transition(job_id, (JobStatus.QUEUED,), JobStatus.RUNNING, started_at=self._now())

    def mark_completed(self, job_id: str, result: Any, tokens_used: int = 0) -> bool:
        """
        Store a job's result.

        A result that cannot be serialized fails the job instead.

        Returns:
            True if the job completed, False if it was failed for serialization
        """
        try:
            serialized = json.dumps(result)
        except (TypeError, ValueError) as e:
            message = f"Result serialization failed: {e}"
            log.error(f"Job {job_id}: {message}")
            self.mark_failed(job_id, message)
            return False

        self._transition(
            job_id, (JobStatus.RUNNING,), JobStatus.COMPLETED,
            result=serialized,
            tokens_used=tokens_used,
            actual_cost=self.estimate_cost(tokens_used),
            completed_at=self._now(),
        )
        log.info(f"Job {job_id} completed ({tokens_used} tokens)")
        return True

    def mark_failed(self, job_id: str, error: str):
        self._transition(
            job_id, (JobStatus.QUEUED, JobStatus.RUNNING), JobStatus.FAILED,
            error=error or "Unknown error",
            completed_at=self._now(),
        )
        log.error(f"Job {job_id} failed: {error}")

    # ───────────────────────────────────────────────────────────────────────
    # Maintenance
    # ───────────────────────────────────────────────────────────────────────
    def cleanup_old_jobs(self, older_than_hours: float = 24) -> int:
        """
        Delete terminal jobs that finished before the cutoff.

        Returns:
            Number of jobs deleted
        """
        cutoff = (self.clock() - timedelta(hours=older_than_hours)).isoformat()
        with self._lock:
            conn = self._get_connection()
            try:
                cursor = conn.execute(
                    """
                    DELETE FROM expansion_jobs
                    WHERE status IN (?, ?) AND completed_at IS NOT NULL AND completed_at < ?
                    """,
                    (JobStatus.COMPLETED, JobStatus.FAILED, cutoff)
                )
                conn.commit()
                removed = cursor.rowcount
            finally:
                conn.close()

        if removed:
            log.info(f"Cleaned up {removed} jobs older than {older_than_hours}h")
        return removed
