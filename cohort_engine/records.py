"""
SQLAlchemy models for the cohort engine.

The fact table is append-only: rows are written by the ingestion pipeline and
only ever read here. The service layer owns engines and sessions; these models
carry no connection state.
"""

import uuid
from datetime import datetime

from sqlalchemy import (
    Column, String, Text, Integer, Float, DateTime, JSON,
    Index,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base


# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")

Base = declarative_base()


def _new_id() -> str:
    return str(uuid.uuid4())


class FactRecord(Base):
    """Immutable clinical event landed by ingestion."""

    __tablename__ = "cohort_facts"

    id = Column(String(64), primary_key=True, default=_new_id)
    master_patient_id = Column(String(128), nullable=True)
    patient_id = Column(String(128), nullable=False)
    resource_type = Column(String(64), nullable=False)
    canonical = Column(JSONType, nullable=False, default=dict)  # concept, value, unit, ...
    codes = Column(JSONType, nullable=False, default=dict)  # code system -> code
    event_time = Column(DateTime, nullable=False)
    ingested_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class CohortMaterializationRecord(Base):
    """Materialization job tracking."""

    __tablename__ = "cohort_materializations"

    id = Column(String(64), primary_key=True, default=_new_id)
    cohort_id = Column(String(128), nullable=False)
    tenant_id = Column(String(128), nullable=True)
    dsl = Column(Text, nullable=False)
    fields = Column(JSONType, nullable=True)
    filters = Column(JSONType, nullable=True)
    query_limit = Column(Integer, default=0)
    status = Column(String(32), nullable=False, default="queued")  # queued, running, completed, failed
    result_count = Column(Integer, default=0)
    error_message = Column(Text, nullable=True)
    requested_by = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)


class CohortTemplateRecord(Base):
    """Saved cohort definitions."""

    __tablename__ = "cohort_templates"

    id = Column(String(64), primary_key=True, default=_new_id)
    tenant_id = Column(String(128), nullable=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    dsl = Column(Text, nullable=False)
    tags = Column(JSONType, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class OfflineFeatureRecord(Base):
    """Versioned offline feature rows (append-only)."""

    __tablename__ = "feature_offline_store"

    id = Column(String(160), primary_key=True)  # "<patient_id>:<version>"
    patient_id = Column(String(128), nullable=False)
    features = Column(JSONType, nullable=False)
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)


class PatientLinkRecord(Base):
    """Record-linkage output: source patient id -> master patient id."""

    __tablename__ = "patient_links"

    id = Column(String(64), primary_key=True, default=_new_id)
    master_id = Column(String(128), nullable=False)
    patient_id = Column(String(128), nullable=False)
    deterministic_key = Column(String(255), nullable=True)
    score = Column(Float, default=0.0)
    method = Column(String(64), nullable=True)
    attributes = Column(JSONType, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class OlapRollupRecord(Base):
    """Pre-aggregated rollups read by the analytical slicer."""

    __tablename__ = "olap_rollups"

    id = Column(String(64), primary_key=True, default=_new_id)
    master_id = Column(String(128), nullable=True)
    patient_id = Column(String(128), nullable=True)
    metric = Column(String(128), nullable=False)
    value = Column(JSONType, nullable=True)
    event_time = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)


# Indexes
Index("idx_cohort_facts_patient_id", FactRecord.patient_id)
Index("idx_cohort_facts_event_time", FactRecord.event_time)
Index("idx_cohort_materializations_tenant", CohortMaterializationRecord.tenant_id)
Index("idx_cohort_materializations_status", CohortMaterializationRecord.status)
Index("idx_cohort_templates_tenant", CohortTemplateRecord.tenant_id)
Index("idx_feature_offline_patient", OfflineFeatureRecord.patient_id)
Index("idx_patient_links_patient", PatientLinkRecord.patient_id)
Index("idx_olap_rollups_metric", OlapRollupRecord.metric)

