"""
Tests for the cohort result cache.
"""

from datetime import datetime

import pytest

from cohort_engine.cache import InMemoryCacheBackend, ResultCache, make_cache_key
from cohort_engine.collaborators import OlapSlicer
from cohort_engine.models import CohortQuery, CohortResult
from cohort_engine.service import CohortService
from cohort_engine.records import OlapRollupRecord


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class BrokenBackend(InMemoryCacheBackend):
    def get(self, key):
        raise ConnectionError("cache down")

    def set(self, key, value, ttl_seconds):
        raise ConnectionError("cache down")


QUERY = "select patient_id where concept = 'blood-glucose'"


class TestCacheKey:

    def test_format(self):
        key = make_cache_key("acme", QUERY, 10, ["patient_id"])
        assert key.startswith("cohort:acme:")
        assert len(key.split(":")[-1]) == 40

    def test_field_order_ignored(self):
        assert make_cache_key("t", QUERY, 0, ["b", "a"]) == make_cache_key("t", QUERY, 0, ["a", "b"])

    def test_tenant_defaults_to_public(self):
        assert make_cache_key(None, QUERY, 0, []) == make_cache_key("public", QUERY, 0, [])

    @pytest.mark.parametrize("other", [
        ("other", QUERY, 0, []),
        ("t", QUERY + " limit 5", 0, []),
        ("t", QUERY, 5, []),
        ("t", QUERY, 0, ["concept"]),
    ])
    def test_inputs_change_key(self, other):
        assert make_cache_key("t", QUERY, 0, []) != make_cache_key(*other)


class TestInMemoryBackend:

    def test_ttl_expiry(self):
        clock = FakeClock()
        backend = InMemoryCacheBackend(clock=clock)
        backend.set("k", "v", ttl_seconds=120)

        clock.now += 119
        assert backend.get("k") == "v"
        clock.now += 2
        assert backend.get("k") is None

    def test_lru_eviction(self):
        backend = InMemoryCacheBackend(max_entries=2)
        backend.set("a", "1", 60)
        backend.set("b", "2", 60)
        backend.get("a")
        backend.set("c", "3", 60)

        assert backend.get("b") is None
        assert backend.get("a") == "1"
        assert backend.stats.evictions == 1


class TestResultCache:

    @pytest.fixture
    def service(self, executor):
        return CohortService(executor, cache=ResultCache(InMemoryCacheBackend(), ttl_seconds=120))

    def test_round_trip(self, service):
        """First call misses, identical second call hits with the same sample."""
        first = service.execute(CohortQuery(dsl=QUERY, tenant_id="acme"))
        second = service.execute(CohortQuery(dsl=QUERY, tenant_id="acme"))

        assert first.metadata["cacheHit"] is False
        assert second.metadata["cacheHit"] is True
        assert second.patient_ids == first.patient_ids
        assert second.count == first.count
        assert second.cohort_id == first.cohort_id

    def test_tenants_do_not_share_entries(self, service):
        service.execute(CohortQuery(dsl=QUERY, tenant_id="acme"))
        other = service.execute(CohortQuery(dsl=QUERY, tenant_id="globex"))
        assert other.metadata["cacheHit"] is False

    def test_backend_failure_is_a_miss(self, executor):
        service = CohortService(executor, cache=ResultCache(BrokenBackend()))
        first = service.execute(CohortQuery(dsl=QUERY))
        second = service.execute(CohortQuery(dsl=QUERY))

        assert first.count == 2
        assert second.metadata["cacheHit"] is False

    def test_disabled_cache_always_executes(self, executor):
        service = CohortService(executor)
        service.execute(CohortQuery(dsl=QUERY))
        assert service.execute(CohortQuery(dsl=QUERY)).metadata["cacheHit"] is False

    def test_caller_query_left_untouched(self, executor):
        service = CohortService(executor)
        query = CohortQuery(dsl=QUERY, tenant_id="")

        first = service.execute(query)
        assert query.id is None
        assert query.tenant_id == ""
        assert first.tenant_id == "public"
        assert first.cohort_id.startswith("cohort-")

    def test_unreadable_entry_discarded(self):
        backend = InMemoryCacheBackend()
        backend.set("k", "not json", 60)
        assert ResultCache(backend).get("k") is None

    def test_result_serialization(self):
        result = CohortResult("c-1", "t", 3, ["a"], 5, {"records": []})
        assert CohortResult.from_dict(result.to_dict()) == result


class TestSlices:

    @pytest.fixture
    def rollup(self, seeded_session_factory):
        db = seeded_session_factory()
        db.add(OlapRollupRecord(
            id="r-1",
            master_id="m-1",
            patient_id="p-001",
            metric="glucose_daily_mean",
            value={"mean": 15},
            event_time=datetime(2024, 1, 2),
        ))
        db.commit()
        db.close()
        return seeded_session_factory

    def test_slices_attached_when_filtered(self, executor, rollup):
        service = CohortService(executor, slicer=OlapSlicer(rollup))
        result = service.execute(CohortQuery(dsl=QUERY))
        assert result.metadata["slices"][0]["metric"] == "glucose_daily_mean"

    def test_no_slices_without_filters(self, executor, rollup):
        service = CohortService(executor, slicer=OlapSlicer(rollup))
        result = service.execute(CohortQuery(dsl="select patient_id"))
        assert "slices" not in result.metadata

    def test_slicer_failure_omitted(self, executor):
        class BrokenSlicer:
            def query(self, filters):
                raise RuntimeError("olap down")

        service = CohortService(executor, slicer=BrokenSlicer())
        result = service.execute(CohortQuery(dsl=QUERY))
        assert result.count == 2
        assert "slices" not in result.metadata
