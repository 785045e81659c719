"""
Fact Store adapters

Abstract contract for the append-only fact store plus the SQLAlchemy-backed
implementation used in production and tests. Every call opens a short-lived
session and closes it; storage failures surface as ExecutionError.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Iterator, List, Optional, Sequence

from sqlalchemy import distinct, func, select
from sqlalchemy.exc import SQLAlchemyError

from ..errors import ExecutionError
from ..models import Fact
from ..predicates import Predicate
from ..records import FactRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QueryScope:
    """Optional explicit narrowing by patient ids and/or fact ids."""
    patient_ids: Sequence[str] = field(default_factory=tuple)
    fact_ids: Sequence[str] = field(default_factory=tuple)

    @classmethod
    def for_patient(cls, patient_id: str) -> "QueryScope":
        return cls(patient_ids=(patient_id,))

    @property
    def is_empty(self) -> bool:
        return not self.patient_ids and not self.fact_ids


class FactStore(ABC):
    """Read contract of the fact store."""

    @abstractmethod
    def count(self, predicates: Sequence[Predicate], scope: Optional[QueryScope] = None) -> int:
        """Exact number of distinct patients matching the predicates."""
        ...

    @abstractmethod
    def list_distinct_patient_ids(
        self,
        predicates: Sequence[Predicate],
        scope: Optional[QueryScope] = None,
        cap: int = 500,
    ) -> List[str]:
        """Up to `cap` distinct matching patient ids, ascending."""
        ...

    @abstractmethod
    def sample_records(
        self,
        predicates: Sequence[Predicate],
        scope: Optional[QueryScope] = None,
        cap: int = 200,
    ) -> List[Fact]:
        """Up to `cap` most recent matching facts."""
        ...

    @abstractmethod
    def stream_records(
        self,
        predicates: Sequence[Predicate],
        scope: Optional[QueryScope] = None,
        limit: int = 5000,
        chunk_size: int = 500,
    ) -> Iterator[Fact]:
        """Iterate matching facts most recent first, at most `limit` rows."""
        ...


def to_fact(row: FactRecord) -> Fact:
    return Fact(
        id=row.id,
        patient_id=row.patient_id,
        resource_type=row.resource_type,
        event_time=row.event_time,
        master_patient_id=row.master_patient_id,
        canonical=dict(row.canonical or {}),
        codes=dict(row.codes or {}),
        ingested_at=row.ingested_at,
    )


class SqlFactStore(FactStore):
    """Fact store over the cohort_facts table."""

    def __init__(self, session_factory):
        self._session_factory = session_factory

    def _conditions(self, session, predicates: Sequence[Predicate], scope: Optional[QueryScope]) -> list:
        dialect = session.get_bind().dialect.name
        conditions = [p.to_clause(FactRecord, dialect) for p in predicates]
        if scope is not None:
            if scope.patient_ids:
                conditions.append(FactRecord.patient_id.in_(list(scope.patient_ids)))
            if scope.fact_ids:
                conditions.append(FactRecord.id.in_(list(scope.fact_ids)))
        return conditions

    def count(self, predicates, scope=None) -> int:
        session = self._session_factory()
        try:
            stmt = select(func.count(distinct(FactRecord.patient_id))).where(
                *self._conditions(session, predicates, scope)
            )
            return int(session.execute(stmt).scalar() or 0)
        except SQLAlchemyError as exc:
            raise ExecutionError(f"fact store count failed: {exc}") from exc
        finally:
            session.close()

    def list_distinct_patient_ids(self, predicates, scope=None, cap=500) -> List[str]:
        session = self._session_factory()
        try:
            stmt = (
                select(FactRecord.patient_id)
                .where(*self._conditions(session, predicates, scope))
                .distinct()
                .order_by(FactRecord.patient_id.asc())
                .limit(cap)
            )
            return [row[0] for row in session.execute(stmt)]
        except SQLAlchemyError as exc:
            raise ExecutionError(f"fact store patient listing failed: {exc}") from exc
        finally:
            session.close()

    def sample_records(self, predicates, scope=None, cap=200) -> List[Fact]:
        session = self._session_factory()
        try:
            stmt = (
                select(FactRecord)
                .where(*self._conditions(session, predicates, scope))
                .order_by(FactRecord.event_time.desc(), FactRecord.id.desc())
                .limit(cap)
            )
            return [to_fact(row) for row in session.execute(stmt).scalars()]
        except SQLAlchemyError as exc:
            raise ExecutionError(f"fact store sample failed: {exc}") from exc
        finally:
            session.close()

    def stream_records(self, predicates, scope=None, limit=5000, chunk_size=500) -> Iterator[Fact]:
        session = self._session_factory()
        try:
            stmt = (
                select(FactRecord)
                .where(*self._conditions(session, predicates, scope))
                .order_by(FactRecord.event_time.desc(), FactRecord.id.desc())
                .limit(limit)
                .execution_options(yield_per=chunk_size)
            )
            for row in session.execute(stmt).scalars():
                yield to_fact(row)
        except SQLAlchemyError as exc:
            raise ExecutionError(f"fact store scan failed: {exc}") from exc
        finally:
            session.close()
