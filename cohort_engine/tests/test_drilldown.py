"""
Tests for the drilldown assembler.
"""

import json
from datetime import datetime

import pytest

from cohort_engine.cache import InMemoryCacheBackend
from cohort_engine.collaborators import LinkageRepository, SqlFeatureStore, SqlLinkageRepository
from cohort_engine.drilldown import DrilldownAssembler
from cohort_engine.errors import ExecutionError, ValidationError
from cohort_engine.models import DrilldownRequest
from cohort_engine.records import PatientLinkRecord


GLUCOSE = "select patient_id, value where concept = 'blood-glucose'"


def request(patient_id="p-001", dsl=GLUCOSE, **kwargs):
    return DrilldownRequest(cohort_id="cohort-1", patient_id=patient_id, dsl=dsl, **kwargs)


@pytest.fixture
def links(seeded_session_factory):
    db = seeded_session_factory()
    db.add_all([
        PatientLinkRecord(
            id="l-1", master_id="m-old", patient_id="p-001", score=0.71, method="probabilistic",
            created_at=datetime(2024, 1, 1),
        ),
        PatientLinkRecord(
            id="l-2", master_id="m-1", patient_id="p-001", score=0.98, method="deterministic",
            attributes={"source": "ehr"}, created_at=datetime(2024, 2, 1),
        ),
    ])
    db.commit()
    db.close()
    return SqlLinkageRepository(seeded_session_factory)


class FailingLinkage(LinkageRepository):
    def find_links_by_patient(self, patient_id, limit=25):
        raise ConnectionError("linkage service down")


class TestTimeline:

    def test_absent_collaborators_succeed(self, executor):
        """No feature store and no linkage: empty sections, not an error."""
        result = DrilldownAssembler(executor).assemble(request())

        assert result.features == {}
        assert result.linkage is None
        assert len(result.timeline) == 2

    def test_timeline_is_chronological_and_scoped(self, executor):
        result = DrilldownAssembler(executor).assemble(request())

        assert [e.id for e in result.timeline] == ["f-001", "f-002"]
        assert all(e.patient_id == "p-001" for e in result.timeline)
        assert result.timeline[0].concept == "blood-glucose"
        assert result.timeline[0].value == 10

    def test_predicate_applies(self, executor):
        result = DrilldownAssembler(executor).assemble(request(patient_id="p-003"))
        assert result.timeline == []

    def test_request_limit(self, executor):
        result = DrilldownAssembler(executor).assemble(request(limit=1))
        # newest fact survives the scan limit
        assert [e.id for e in result.timeline] == ["f-002"]
        assert result.metadata["limit"] == 1

    def test_master_id_from_facts_without_linkage(self, executor):
        result = DrilldownAssembler(executor).assemble(request())
        assert result.master_patient_id == "m-1"

    def test_metadata(self, executor):
        result = DrilldownAssembler(executor).assemble(request(tenant_id="acme"))
        assert result.metadata["tenant"] == "acme"
        assert result.metadata["fields"] == ["patient_id", "value"]
        assert result.metadata["filters"] == {"concept": "blood-glucose"}

    def test_to_dict_is_json_serializable(self, executor, links):
        result = DrilldownAssembler(executor, linkage=links).assemble(request())
        data = json.loads(json.dumps(result.to_dict()))
        assert data["timeline"][0]["timestamp"] == "2024-01-01T08:00:00"
        assert data["linkage"]["master_id"] == "m-1"


class TestValidation:

    def test_dsl_required(self, executor):
        with pytest.raises(ValidationError, match="dsl is required"):
            DrilldownAssembler(executor).assemble(request(dsl="  "))

    def test_patient_required(self, executor):
        with pytest.raises(ValidationError, match="patient_id is required"):
            DrilldownAssembler(executor).assemble(request(patient_id=""))

    def test_scan_failure_is_fatal(self, executor):
        class BrokenStore:
            def stream_records(self, *args, **kwargs):
                raise ExecutionError("scan failed")

        executor.fact_store = BrokenStore()
        with pytest.raises(ExecutionError):
            DrilldownAssembler(executor).assemble(request())


class TestEnrichment:

    def test_linkage_primary_is_newest(self, executor, links):
        result = DrilldownAssembler(executor, linkage=links).assemble(request())

        assert result.linkage.master_id == "m-1"
        assert result.linkage.primary_score == 0.98
        assert result.linkage.method == "deterministic"
        assert [link.patient_id for link in result.linkage.links] == ["p-001", "p-001"]
        assert result.master_patient_id == "m-1"

    def test_online_features_first(self, executor, seeded_session_factory):
        online = InMemoryCacheBackend()
        features = SqlFeatureStore(seeded_session_factory, online=online)
        features.write_offline("p-001", {"source": "offline"}, version=1)
        features.write_online("p-001", {"source": "online"})

        result = DrilldownAssembler(executor, features=features).assemble(request())
        assert result.features == {"source": "online"}

    def test_offline_fallback(self, executor, seeded_session_factory):
        features = SqlFeatureStore(seeded_session_factory, online=InMemoryCacheBackend())
        features.write_offline("p-001", {"version": "old"}, version=1)
        features.write_offline("p-001", {"version": "new"}, version=2)

        result = DrilldownAssembler(executor, features=features).assemble(request())
        assert result.features == {"version": "new"}

    def test_enrichment_failures_are_not_fatal(self, executor, seeded_session_factory):
        class BrokenOnline(InMemoryCacheBackend):
            def get(self, key):
                raise ConnectionError("redis down")

        features = SqlFeatureStore(seeded_session_factory, online=BrokenOnline())
        features.write_offline("p-001", {"version": "offline"}, version=1)

        result = DrilldownAssembler(executor, features=features, linkage=FailingLinkage()).assemble(request())
        assert result.features == {"version": "offline"}
        assert result.linkage is None
        assert len(result.timeline) == 2
