"""
Shared pytest fixtures: a file-backed SQLite database per test with the full
cohort schema and a small seeded fact set.

Seeded cohort:
    p-001  Observation blood-glucose value 10 (2024-01-01 08:00), value 20 (2024-01-02 08:00)
    p-002  Observation blood-glucose value "95.5" (2024-01-03 09:30)
    p-003  Observation heart-rate value 72 (2024-01-04 12:00)
    p-004  Condition   Diabetes, no value (2023-12-01 00:00), code E11
"""

from datetime import datetime

import pytest
from sqlalchemy.orm import sessionmaker

from cohort_engine.catalog import default_field_catalog
from cohort_engine.execution import QueryExecutor, SqlFactStore
from cohort_engine.records import Base, FactRecord
from cohort_service.db import build_engine


SEED_FACTS = [
    {
        "id": "f-001",
        "master_patient_id": "m-1",
        "patient_id": "p-001",
        "resource_type": "Observation",
        "canonical": {"concept": "blood-glucose", "value": 10, "unit": "mg/dL"},
        "codes": {"system": "loinc", "code": "2339-0"},
        "event_time": datetime(2024, 1, 1, 8, 0),
    },
    {
        "id": "f-002",
        "master_patient_id": "m-1",
        "patient_id": "p-001",
        "resource_type": "Observation",
        "canonical": {"concept": "blood-glucose", "value": 20, "unit": "mg/dL"},
        "codes": {"system": "loinc", "code": "2339-0"},
        "event_time": datetime(2024, 1, 2, 8, 0),
    },
    {
        "id": "f-003",
        "master_patient_id": "m-2",
        "patient_id": "p-002",
        "resource_type": "Observation",
        "canonical": {"concept": "blood-glucose", "value": "95.5", "unit": "mg/dL"},
        "codes": {"system": "loinc", "code": "2339-0"},
        "event_time": datetime(2024, 1, 3, 9, 30),
    },
    {
        "id": "f-004",
        "master_patient_id": None,
        "patient_id": "p-003",
        "resource_type": "Observation",
        "canonical": {"concept": "heart-rate", "value": 72, "unit": "bpm"},
        "codes": {"system": "loinc", "code": "8867-4"},
        "event_time": datetime(2024, 1, 4, 12, 0),
    },
    {
        "id": "f-005",
        "master_patient_id": "m-4",
        "patient_id": "p-004",
        "resource_type": "Condition",
        "canonical": {"concept": "Diabetes", "status": "active"},
        "codes": {"system": "icd10", "code": "E11"},
        "event_time": datetime(2023, 12, 1, 0, 0),
    },
]


@pytest.fixture
def engine(tmp_path):
    """Fresh SQLite database with the cohort schema."""
    engine = build_engine(f"sqlite:///{tmp_path / 'cohort.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def seeded_session_factory(session_factory):
    """Session factory over a database holding SEED_FACTS."""
    db = session_factory()
    try:
        for fact in SEED_FACTS:
            db.add(FactRecord(**fact, ingested_at=datetime(2024, 2, 1)))
        db.commit()
    finally:
        db.close()
    return session_factory


@pytest.fixture
def catalog():
    return default_field_catalog()


@pytest.fixture
def fact_store(seeded_session_factory):
    return SqlFactStore(seeded_session_factory)


@pytest.fixture
def executor(fact_store, catalog):
    return QueryExecutor(fact_store, catalog)
