import sqlite3
import threading
import pytest
from datetime import datetime, timedelta, timezone
from expansion.jobs import (
    ExpansionJob,
    GenerationParams,
    InvalidJobParams,
    InvalidJobTransition,
    JobOrchestrator,
    JobStatus,
    TokenPricing,
    estimate_tokens,
    rationale_candidates,
    target_stores,
)


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def jobs(tmp_path, clock):
    return JobOrchestrator(db_path=str(tmp_path / "test_jobs.db"), clock=clock)


def _params(**overrides):
    body = {"region": {"country": "DE"}, "aggression": 40}
    body.update(overrides)
    return body


def _row_count(jobs):
    conn = sqlite3.connect(jobs.db_path)
    try:
        return conn.execute("SELECT COUNT(*) FROM expansion_jobs").fetchone()[0]
    finally:
        conn.close()


# ═══════════════════════════════════════════════════════════════════════════
# PARAMS
# ═══════════════════════════════════════════════════════════════════════════
def test_params_defaults():
    params = GenerationParams.from_dict(_params())
    assert params.population_bias == 0.5
    assert params.proximity_bias == 0.3
    assert params.turnover_bias == 0.2
    assert params.min_distance_m == 800
    assert params.enable_ai_rationale is False


def test_params_collects_every_error():
    with pytest.raises(InvalidJobParams) as exc:
        GenerationParams.from_dict({
            "aggression": 150,
            "populationBias": 2,
            "proximityBias": -1,
            "turnoverBias": "abc",
            "minDistanceM": 50,
        })

    errors = exc.value.errors
    assert len(errors) == 6
    assert "Region filter is required (country or boundingBox)" in errors
    assert "Aggression must be between 0 and 100" in errors
    assert "Minimum distance must be at least 100 meters" in errors


def test_bounding_box_region_is_accepted():
    box = {"boundingBox": {"north": 53, "south": 52, "east": 14, "west": 13}}
    assert GenerationParams.from_dict(_params(region=box)).region == box


def test_fractional_integer_fields_rejected():
    """Whole-number fields are never silently truncated."""
    with pytest.raises(InvalidJobParams) as exc:
        GenerationParams.from_dict(_params(aggression=40.9, minDistanceM=800.5, seed=1.5))

    errors = exc.value.errors
    assert "Aggression must be between 0 and 100" in errors
    assert "Minimum distance must be at least 100 meters" in errors
    assert "Seed must be an integer" in errors


def test_integral_floats_and_strings_accepted():
    params = GenerationParams.from_dict(_params(aggression=40.0, minDistanceM="1200", seed=7.0))
    assert (params.aggression, params.min_distance_m, params.seed) == (40, 1200, 7)


def test_legacy_filtering_flag():
    params = GenerationParams.from_dict(_params(enableMapboxFiltering=True))
    assert params.enable_infrastructure_filtering is True


def test_seed_is_deterministic():
    first = GenerationParams.from_dict(_params())
    second = GenerationParams.from_dict(_params())
    other = GenerationParams.from_dict(_params(aggression=41))

    assert first.seed == second.seed
    assert first.seed != other.seed
    assert 0 <= first.seed < 2 ** 32
    assert GenerationParams.from_dict(_params(seed=42)).seed == 42


# ═══════════════════════════════════════════════════════════════════════════
# ESTIMATES
# ═══════════════════════════════════════════════════════════════════════════
@pytest.mark.parametrize("aggression, stores", [
    (0, 50), (20, 50), (21, 100), (40, 100), (60, 150), (80, 200), (100, 300),
])
def test_target_stores(aggression, stores):
    assert target_stores(aggression) == stores


def test_rationale_candidates_are_capped():
    assert rationale_candidates(40) == 20
    assert rationale_candidates(100) == 60


def test_token_estimate():
    """Aggression 40 with rationale: 100 + 20 * 150 = 3100, plus 50 for filtering."""
    with_rationale = GenerationParams.from_dict(_params(enableAIRationale=True))
    assert estimate_tokens(with_rationale) == 3100

    with_both = GenerationParams.from_dict(_params(enableAIRationale=True, enableInfrastructureFiltering=True))
    assert estimate_tokens(with_both) == 3150

    assert estimate_tokens(GenerationParams.from_dict(_params())) == 100


def test_cost():
    # (2170 * 0.10 + 930 * 0.40) / 1e6 * 0.8
    assert TokenPricing().cost(3100) == pytest.approx(0.000471)
    assert TokenPricing().cost(0) == 0


# ═══════════════════════════════════════════════════════════════════════════
# SUBMISSION
# ═══════════════════════════════════════════════════════════════════════════
def test_create_job(jobs):
    job_id, reused = jobs.create_job("req-1", "user-1", _params(enableAIRationale=True))

    assert reused is False
    job = jobs.get_job(job_id)
    assert job.status == JobStatus.QUEUED
    assert job.user_id == "user-1"
    assert job.token_estimate == 3100
    assert job.cost_estimate == pytest.approx(0.000471)
    assert job.params["region"] == {"country": "DE"}


def test_same_key_reuses_job(jobs):
    first_id, first_reused = jobs.create_job("req-1", "user-1", _params())
    second_id, second_reused = jobs.create_job("req-1", "user-1", _params(aggression=90))

    assert first_id == second_id
    assert (first_reused, second_reused) == (False, True)
    assert _row_count(jobs) == 1


def test_concurrent_submissions_create_one_job(tmp_path, clock):
    """Racing submissions with one key, split across two orchestrators on one database."""
    db_path = str(tmp_path / "test_race_jobs.db")
    orchestrators = [JobOrchestrator(db_path=db_path, clock=clock) for _ in range(2)]
    barrier = threading.Barrier(8)
    outcomes = []
    outcomes_lock = threading.Lock()

    def submit(i):
        barrier.wait(5)
        outcome = orchestrators[i % 2].create_job("race-1", f"user-{i}", _params())
        with outcomes_lock:
            outcomes.append(outcome)

    threads = [threading.Thread(target=submit, args=(i,)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(10)

    assert len(outcomes) == 8
    assert len({job_id for job_id, _ in outcomes}) == 1
    assert [reused for _, reused in outcomes].count(False) == 1
    assert _row_count(orchestrators[0]) == 1


def test_reuse_skips_validation(jobs):
    """A retried submission returns the original job even with a broken body."""
    job_id, _ = jobs.create_job("req-1", "user-1", _params())
    assert jobs.create_job("req-1", "user-1", {}) == (job_id, True)


def test_invalid_params_create_nothing(jobs):
    with pytest.raises(InvalidJobParams):
        jobs.create_job("req-1", "user-1", {"aggression": 500})
    assert _row_count(jobs) == 0


def test_missing_key_rejected(jobs):
    with pytest.raises(InvalidJobParams):
        jobs.create_job("", "user-1", _params())


# ═══════════════════════════════════════════════════════════════════════════
# LIFECYCLE
# ═══════════════════════════════════════════════════════════════════════════
def test_claim_runs_oldest_first(jobs, clock):
    first, _ = jobs.create_job("a", "u", _params())
    clock.advance(seconds=1)
    jobs.create_job("b", "u", _params())

    claimed = jobs.claim_next()
    assert claimed.id == first
    assert claimed.status == JobStatus.RUNNING
    assert claimed.started_at is not None


def test_claim_empty_queue(jobs):
    assert jobs.claim_next() is None


def test_complete_job(jobs):
    job_id, _ = jobs.create_job("a", "u", _params())
    jobs.claim_next()

    assert jobs.mark_completed(job_id, {"suggestions": [1, 2]}, tokens_used=3100) is True

    job = jobs.get_job(job_id)
    assert job.status == JobStatus.COMPLETED
    assert job.result == {"suggestions": [1, 2]}
    assert job.tokens_used == 3100
    assert job.actual_cost == pytest.approx(0.000471)
    assert job.is_terminal


def test_unserializable_result_fails_job(jobs):
    job_id, _ = jobs.create_job("a", "u", _params())
    jobs.claim_next()

    assert jobs.mark_completed(job_id, {"bad": object()}) is False

    job = jobs.get_job(job_id)
    assert job.status == JobStatus.FAILED
    assert job.error.startswith("Result serialization failed")


def test_fail_queued_job(jobs):
    job_id, _ = jobs.create_job("a", "u", _params())
    jobs.mark_failed(job_id, "cancelled by operator")
    assert jobs.get_job(job_id).error == "cancelled by operator"


def test_terminal_job_is_immutable(jobs):
    job_id, _ = jobs.create_job("a", "u", _params())
    jobs.claim_next()
    jobs.mark_completed(job_id, {"ok": True})

    with pytest.raises(InvalidJobTransition):
        jobs.mark_running(job_id)
    with pytest.raises(InvalidJobTransition):
        jobs.mark_failed(job_id, "late failure")
    assert jobs.get_job(job_id).status == JobStatus.COMPLETED


def test_complete_requires_running(jobs):
    job_id, _ = jobs.create_job("a", "u", _params())
    with pytest.raises(InvalidJobTransition):
        jobs.mark_completed(job_id, {"ok": True})


def test_unknown_job(jobs):
    assert jobs.get_job("missing") is None
    with pytest.raises(InvalidJobTransition, match="not found"):
        jobs.mark_running("missing")


# ═══════════════════════════════════════════════════════════════════════════
# QUERIES AND MAINTENANCE
# ═══════════════════════════════════════════════════════════════════════════
def test_user_jobs_newest_first(jobs, clock):
    for i in range(4):
        jobs.create_job(f"k{i}", "user-1", _params())
        clock.advance(seconds=1)
    jobs.create_job("other", "user-2", _params())

    recent = jobs.get_user_jobs("user-1", limit=3)
    assert [j.idempotency_key for j in recent] == ["k3", "k2", "k1"]
    assert all(isinstance(j, ExpansionJob) for j in recent)


def test_queue_stats(jobs):
    a, _ = jobs.create_job("a", "u", _params())
    jobs.create_job("b", "u", _params())
    jobs.claim_next()
    jobs.mark_failed(a, "boom")

    assert jobs.get_queue_stats() == {"queued": 1, "failed": 1}


def test_cleanup_removes_only_old_terminal_jobs(jobs, clock):
    done, _ = jobs.create_job("a", "u", _params())
    jobs.claim_next()
    jobs.mark_completed(done, {"ok": True})
    pending, _ = jobs.create_job("b", "u", _params())

    clock.advance(hours=25)
    assert jobs.cleanup_old_jobs(older_than_hours=24) == 1

    assert jobs.get_job(done) is None
    assert jobs.get_job(pending) is not None


def test_to_dict_uses_api_names(jobs):
    job_id, _ = jobs.create_job("a", "u", _params())
    data = jobs.get_job(job_id).to_dict()
    assert data["idempotencyKey"] == "a"
    assert data["tokenEstimate"] == 100
