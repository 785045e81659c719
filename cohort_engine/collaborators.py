"""
External collaborators consumed by the cohort engine.

- FeatureStore: offline (SQL, versioned) + online (cache, TTL) feature sets
- LinkageRepository: record-linkage rows for a patient
- OlapSlicer: best-effort rollup rows from the analytical store

Feature store and linkage are optional. When absent they are represented by
Disabled* stand-ins whose `available` flag is False, so callers branch on the
flag instead of checking for None at every call site.
"""

import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from .cache import CacheBackend
from .errors import CollaboratorUnavailable, ExecutionError
from .models import LinkedPatient
from .records import OfflineFeatureRecord, OlapRollupRecord, PatientLinkRecord

logger = logging.getLogger(__name__)


# =============================================================================
# FEATURE STORE
# =============================================================================

class FeatureStore(ABC):
    available = True

    @abstractmethod
    def get_online(self, patient_id: str) -> Dict[str, Any]:
        """Hot features for a patient, {} when absent."""
        ...

    @abstractmethod
    def get_latest_offline(self, patient_id: str) -> Dict[str, Any]:
        """Newest offline feature version for a patient, {} when absent."""
        ...

    @abstractmethod
    def write_offline(self, patient_id: str, features: Dict[str, Any], version: int) -> None:
        ...

    @abstractmethod
    def write_online(self, patient_id: str, features: Dict[str, Any], ttl_seconds: Optional[int] = None) -> None:
        ...


class SqlFeatureStore(FeatureStore):
    """
    Offline rows in feature_offline_store, online entries in a cache backend.

    Without an online backend, online reads are empty and online writes are no-ops.
    """

    def __init__(
        self,
        session_factory,
        online: Optional[CacheBackend] = None,
        key_prefix: str = "features:",
        ttl_seconds: int = 300,
    ):
        self._session_factory = session_factory
        self._online = online
        self.key_prefix = key_prefix
        self.ttl_seconds = ttl_seconds if ttl_seconds > 0 else 300

    def _key(self, patient_id: str) -> str:
        return f"{self.key_prefix}{patient_id}"

    def get_online(self, patient_id: str) -> Dict[str, Any]:
        if self._online is None:
            return {}
        payload = self._online.get(self._key(patient_id))
        if not payload:
            return {}
        return json.loads(payload)

    def get_latest_offline(self, patient_id: str) -> Dict[str, Any]:
        stmt = (
            select(OfflineFeatureRecord)
            .where(OfflineFeatureRecord.patient_id == patient_id)
            .order_by(OfflineFeatureRecord.version.desc(), OfflineFeatureRecord.created_at.desc())
            .limit(1)
        )
        with self._session_factory() as session:
            row = session.execute(stmt).scalars().first()
            return dict(row.features or {}) if row else {}

    def write_offline(self, patient_id: str, features: Dict[str, Any], version: int) -> None:
        record = OfflineFeatureRecord(
            id=f"{patient_id}:{version}",
            patient_id=patient_id,
            features=features or {},
            version=version,
            created_at=datetime.utcnow(),
        )
        with self._session_factory() as session:
            # same patient and version from a concurrent job overwrites
            session.merge(record)
            session.commit()

    def write_online(self, patient_id: str, features: Dict[str, Any], ttl_seconds: Optional[int] = None) -> None:
        if self._online is None:
            return
        self._online.set(self._key(patient_id), json.dumps(features, default=str), ttl_seconds or self.ttl_seconds)


class DisabledFeatureStore(FeatureStore):
    """Absent feature store: reads are empty, writes are refused."""

    available = False

    def get_online(self, patient_id: str) -> Dict[str, Any]:
        return {}

    def get_latest_offline(self, patient_id: str) -> Dict[str, Any]:
        return {}

    def write_offline(self, patient_id, features, version) -> None:
        raise CollaboratorUnavailable("feature store not configured")

    def write_online(self, patient_id, features, ttl_seconds=None) -> None:
        raise CollaboratorUnavailable("feature store not configured")


# =============================================================================
# LINKAGE
# =============================================================================

class LinkageRepository(ABC):
    available = True

    @abstractmethod
    def find_links_by_patient(self, patient_id: str, limit: int = 25) -> List[LinkedPatient]:
        """Links for a patient, newest first."""
        ...


class SqlLinkageRepository(LinkageRepository):

    def __init__(self, session_factory):
        self._session_factory = session_factory

    def find_links_by_patient(self, patient_id: str, limit: int = 25) -> List[LinkedPatient]:
        limit = limit if limit > 0 else 25
        stmt = (
            select(PatientLinkRecord)
            .where(PatientLinkRecord.patient_id == patient_id)
            .order_by(PatientLinkRecord.created_at.desc())
            .limit(limit)
        )
        with self._session_factory() as session:
            return [
                LinkedPatient(
                    master_id=row.master_id,
                    patient_id=row.patient_id,
                    score=row.score or 0.0,
                    method=row.method,
                    attributes=dict(row.attributes or {}),
                    created_at=row.created_at,
                )
                for row in session.execute(stmt).scalars()
            ]


class DisabledLinkage(LinkageRepository):
    available = False

    def find_links_by_patient(self, patient_id: str, limit: int = 25) -> List[LinkedPatient]:
        return []


# =============================================================================
# ANALYTICAL SLICER
# =============================================================================

class OlapSlicer:
    """Reads newest rollup rows filtered by metric and/or patient_id."""

    ROW_LIMIT = 200

    def __init__(self, session_factory):
        self._session_factory = session_factory

    def query(self, filters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        stmt = select(OlapRollupRecord)
        filters = filters or {}
        metric = filters.get("metric")
        if isinstance(metric, str) and metric:
            stmt = stmt.where(OlapRollupRecord.metric == metric)
        patient = filters.get("patient_id")
        if isinstance(patient, str) and patient:
            stmt = stmt.where(OlapRollupRecord.patient_id == patient)
        stmt = stmt.order_by(OlapRollupRecord.event_time.desc()).limit(self.ROW_LIMIT)

        try:
            with self._session_factory() as session:
                rows = session.execute(stmt).scalars().all()
        except SQLAlchemyError as exc:
            raise ExecutionError(f"rollup query failed: {exc}") from exc

        return [
            {
                "master_id": r.master_id,
                "patient_id": r.patient_id,
                "metric": r.metric,
                "value": r.value,
                "event_time": r.event_time.isoformat() if r.event_time else None,
            }
            for r in rows
        ]
