import threading
import time
import pytest
from unittest.mock import MagicMock
from geodata.cache import ResultCache
from geodata.errors import AuthenticationFailure, ProviderUnavailable
from geodata.suitability import SuitabilityValidator
from geodata.tilequery import TilequeryClient


@pytest.fixture
def client():
    return MagicMock(spec=TilequeryClient)


@pytest.fixture
def validator(client, tmp_path):
    cache = ResultCache(str(tmp_path / "test_suitability.db"), table="suitability_cache")
    return SuitabilityValidator(client, cache)


def test_empty_feature_set_rejects(validator, client, feature, collection):
    """No data fails closed."""
    client.query.return_value = collection()
    result = validator.validate_location(52.5, 13.4)
    assert result.is_suitable is False
    assert validator.get_rejection_stats()["no_features"] == 1


def test_provider_error_fails_open(validator, client, feature, collection):
    """Provider errors fail open, distinct from an empty result."""
    client.query.side_effect = ProviderUnavailable("down")
    result = validator.validate_location(52.5, 13.4)
    assert result.is_suitable is True
    assert result.landuse_type is None
    assert result.road_distance_m is None
    assert result.urban_density_index is None
    assert validator.get_rejection_stats()["provider_errors"] == 1
    # Degraded answers are not cached
    assert validator.cache.size() == 0


def test_provider_error_propagates_when_fail_closed(client, tmp_path):
    validator = SuitabilityValidator(client, fail_open=False)
    client.query.side_effect = ProviderUnavailable("down")
    with pytest.raises(ProviderUnavailable):
        validator.validate_location(52.5, 13.4)


def test_auth_failure_always_propagates(validator, client, feature, collection):
    client.query.side_effect = AuthenticationFailure("bad token", status_code=401)
    with pytest.raises(AuthenticationFailure):
        validator.validate_location(52.5, 13.4)


def test_water_only_rejects(validator, client, feature, collection):
    client.query.return_value = collection(feature("landuse", "water"))
    result = validator.validate_location(52.5, 13.4)
    assert result.is_suitable is False
    assert result.landuse_type == "water"
    assert validator.get_rejection_stats()["excluded_landuse"] == 1


def test_excluded_landuse_beats_valid_signals(validator, client, feature, collection):
    client.query.return_value = collection(
        feature("landuse", "commercial"),
        feature("landuse", "park"),
        feature("road", "primary", 10),
        feature("place", "city"),
    )
    assert validator.validate_location(52.5, 13.4).is_suitable is False


@pytest.mark.parametrize("features, expected", [
    ([("landuse", "retail")], True),
    ([("road", "primary", 20), ("building", "yes", 40)], True),
    ([("place", "village")], True),
    ([("road", "primary", 20)], False),
    ([("building", "yes", 40)], False),
    ([("road", "service", 20), ("building", "yes", 40)], False),
    ([("landuse", "grass")], False),
])
def test_acceptance_rule(validator, client, features, expected, feature, collection):
    client.query.return_value = collection(*(feature(*f) for f in features))
    assert validator.validate_location(52.5, 13.4).is_suitable is expected


def test_result_fields(validator, client, feature, collection):
    client.query.return_value = collection(
        feature("landuse", "residential"),
        feature("road", "primary", 120.4),
        feature("road", "secondary", 55.6),
        feature("building", "yes", 80.2),
        feature("building", "yes", 30.0),
    )
    result = validator.validate_location(52.5, 13.4)
    assert result.is_suitable is True
    assert result.landuse_type == "residential"
    assert result.road_distance_m == 56
    assert result.building_distance_m == 30
    # 2 buildings * 0.02 + 2 roads * 0.05
    assert result.urban_density_index == 0.14


def test_cache_hit_skips_provider(validator, client, feature, collection):
    client.query.return_value = collection(feature("landuse", "commercial"))
    first = validator.validate_location(52.5, 13.4)
    second = validator.validate_location(52.5, 13.4)

    assert first == second
    assert client.query.call_count == 1
    stats = validator.get_cache_stats()
    assert stats["cacheHits"] == 1
    assert stats["cacheMisses"] == 1


def test_adaptive_escalates_radius(validator, client, feature, collection):
    client.query.side_effect = [
        collection(),
        collection(feature("road", "residential", 900)),
    ]
    result = validator.validate_location_adaptive(52.5, 13.4)
    assert result.is_suitable is True
    assert result.radius == 1200
    assert [c[0][2] for c in client.query.call_args_list] == [800, 1200]


def test_adaptive_water_rejects(validator, client, feature, collection):
    client.query.return_value = collection(
        feature("landuse", "wetland"),
        feature("road", "primary", 10),
    )
    result = validator.validate_location_adaptive(52.5, 13.4)
    assert result.is_suitable is False
    assert result.landuse_type == "water/wetland"
    assert result.radius == 800


def test_adaptive_all_empty_rejects(validator, client, feature, collection):
    client.query.return_value = collection()
    result = validator.validate_location_adaptive(52.5, 13.4)
    assert result.is_suitable is False
    assert result.radius == 0
    assert client.query.call_count == 3


def test_adaptive_all_errors_fail_open(validator, client, feature, collection):
    client.query.side_effect = ProviderUnavailable("down")
    result = validator.validate_location_adaptive(52.5, 13.4)
    assert result.is_suitable is True
    assert result.radius is None


def test_adaptive_skips_failed_radius(validator, client, feature, collection):
    client.query.side_effect = [
        ProviderUnavailable("blip"),
        collection(feature("building", "yes", 500)),
    ]
    result = validator.validate_location_adaptive(52.5, 13.4)
    assert result.is_suitable is True
    assert result.radius == 1200


def test_batch_preserves_order_and_isolates_failures(validator, client, feature, collection):
    """An auth failure on one item leaves the others validated."""
    def query(lat, lng, radius, layers=None):
        if lat == 2:
            raise AuthenticationFailure("bad token")
        if lat == 3:
            return collection()
        return collection(feature("road", "primary", 10))

    client.query.side_effect = query
    locations = [{"id": i, "lat": i, "lng": 0} for i in range(1, 6)]

    results = validator.validate_locations_batch(locations, concurrency=2)

    assert [r.location["id"] for r in results] == [1, 2, 3, 4, 5]
    assert results[1].error is not None and results[1].result is None
    assert results[2].result.is_suitable is False
    assert all(results[i].result.is_suitable for i in (0, 3, 4))


def test_reset_stats(validator, client, feature, collection):
    client.query.return_value = collection()
    validator.validate_location(52.5, 13.4)
    validator.reset_stats()
    assert validator.get_rejection_stats()["total_rejected"] == 0
    assert validator.get_cache_stats()["cacheMisses"] == 0


def test_adaptive_cache_hit_skips_provider(validator, client, feature, collection):
    client.query.side_effect = [
        collection(),
        collection(feature("road", "residential", 900), feature("building", "yes", 950)),
    ]
    first = validator.validate_location_adaptive(52.5, 13.4)
    second = validator.validate_location_adaptive(52.5, 13.4)

    assert client.query.call_count == 2
    assert second.radius == 1200
    assert second.is_suitable is True
    assert second.road_distance_m == 900
    assert [type(f) for f in second.features] == [type(f) for f in first.features]
    assert validator.get_cache_stats()["cacheHits"] == 1


def test_adaptive_cache_is_separate_from_fixed_radius(validator, client, feature, collection):
    """The two checks apply different rules, so neither answers for the other."""
    client.query.return_value = collection(feature("road", "service", 10))
    fixed = validator.validate_location(52.5, 13.4)
    adaptive = validator.validate_location_adaptive(52.5, 13.4)

    assert fixed.is_suitable is False
    assert adaptive.is_suitable is True
    assert client.query.call_count == 2
    assert validator.adaptive_cache.table == "suitability_cache_adaptive"


def test_adaptive_fail_open_is_not_cached(validator, client, feature, collection):
    client.query.side_effect = ProviderUnavailable("down")
    validator.validate_location_adaptive(52.5, 13.4)
    assert validator.adaptive_cache.size() == 0


def test_batch_never_exceeds_concurrency(validator, client, feature, collection):
    """Groups run one after another with at most `concurrency` calls in flight."""
    lock = threading.Lock()
    in_flight = [0]
    peak = [0]
    events = []

    def query(lat, lng, radius, layers=None):
        with lock:
            in_flight[0] += 1
            peak[0] = max(peak[0], in_flight[0])
            events.append(("start", lat))
        time.sleep(0.02)
        with lock:
            in_flight[0] -= 1
            events.append(("end", lat))
        return collection(feature("road", "primary", 10))

    client.query.side_effect = query
    locations = [{"id": i, "lat": i, "lng": 0} for i in range(1, 8)]

    results = validator.validate_locations_batch(locations, concurrency=2)

    assert len(results) == 7
    assert peak[0] <= 2
    # Every call of a group ends before any call of the next group starts
    groups = [(1, 2), (3, 4), (5, 6), (7,)]
    for earlier, later in zip(groups, groups[1:]):
        last_end = max(events.index(("end", lat)) for lat in earlier)
        first_start = min(events.index(("start", lat)) for lat in later)
        assert last_end < first_start
