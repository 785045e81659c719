"""
Materialization job persistence.

Status moves forward only:
    queued  -> running | failed
    running -> completed | failed
Each transition is a conditional UPDATE on the current status, so a terminal
job can never be moved again and concurrent writers cannot regress a job.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import or_

from ..errors import JobNotFound
from ..models import JobStatus, MaterializationJob, MaterializeRequest, resolve_tenant
from ..records import CohortMaterializationRecord

logger = logging.getLogger(__name__)


_ALLOWED_SOURCES: Dict[JobStatus, Tuple[JobStatus, ...]] = {
    JobStatus.RUNNING: (JobStatus.QUEUED,),
    JobStatus.COMPLETED: (JobStatus.RUNNING,),
    JobStatus.FAILED: (JobStatus.QUEUED, JobStatus.RUNNING),
}


def to_job(row: CohortMaterializationRecord) -> MaterializationJob:
    return MaterializationJob(
        id=row.id,
        cohort_id=row.cohort_id,
        tenant_id=row.tenant_id,
        dsl=row.dsl,
        status=JobStatus(row.status),
        fields=list(row.fields or []),
        filters=dict(row.filters or {}),
        limit=row.query_limit or 0,
        result_count=row.result_count or 0,
        error_message=row.error_message,
        requested_by=row.requested_by,
        created_at=row.created_at,
        started_at=row.started_at,
        completed_at=row.completed_at,
    )


class MaterializationRepository:

    def __init__(self, session_factory):
        self._session_factory = session_factory

    def create(self, request: MaterializeRequest, cohort_id: str) -> MaterializationJob:
        db = self._session_factory()
        try:
            row = CohortMaterializationRecord(
                cohort_id=cohort_id,
                tenant_id=resolve_tenant(request.tenant_id),
                dsl=request.dsl,
                fields=list(request.fields or []),
                filters=dict(request.filters or {}),
                query_limit=request.limit or 0,
                status=JobStatus.QUEUED.value,
                requested_by=request.requested_by,
                created_at=datetime.utcnow(),
            )
            db.add(row)
            db.commit()
            db.refresh(row)
            return to_job(row)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def get(self, job_id: str) -> MaterializationJob:
        db = self._session_factory()
        try:
            row = db.query(CohortMaterializationRecord).filter(CohortMaterializationRecord.id == job_id).first()
            if row is None:
                raise JobNotFound(f"materialization job {job_id} not found", field="job_id")
            return to_job(row)
        finally:
            db.close()

    def list(self, tenant_id: Optional[str] = None, limit: int = 50) -> List[MaterializationJob]:
        """Newest first; a tenant filter also includes global (null-tenant) jobs."""
        limit = limit if limit and limit > 0 else 50
        db = self._session_factory()
        try:
            query = db.query(CohortMaterializationRecord)
            if tenant_id:
                query = query.filter(or_(
                    CohortMaterializationRecord.tenant_id == tenant_id,
                    CohortMaterializationRecord.tenant_id.is_(None),
                ))
            rows = query.order_by(CohortMaterializationRecord.created_at.desc()).limit(limit).all()
            return [to_job(row) for row in rows]
        finally:
            db.close()

    def transition(self, job_id: str, target: JobStatus, updates: Optional[Dict[str, Any]] = None) -> bool:
        """
        Move a job to `target` if its current status allows it.

        Returns:
            True if the row was updated, False if the job is missing or the
            transition is not allowed from its current status.
        """
        sources = [s.value for s in _ALLOWED_SOURCES[target]]
        values = {"status": target.value}
        values.update(updates or {})
        db = self._session_factory()
        try:
            updated = (
                db.query(CohortMaterializationRecord)
                .filter(
                    CohortMaterializationRecord.id == job_id,
                    CohortMaterializationRecord.status.in_(sources),
                )
                .update(values, synchronize_session=False)
            )
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        if not updated:
            logger.warning(f"Job {job_id}: transition to {target.value} rejected")
            return False
        logger.info(f"Job {job_id}: -> {target.value}")
        return True

    def mark_running(self, job_id: str) -> bool:
        return self.transition(job_id, JobStatus.RUNNING, {"started_at": datetime.utcnow()})

    def mark_completed(self, job_id: str, result_count: int) -> bool:
        return self.transition(job_id, JobStatus.COMPLETED, {
            "result_count": result_count,
            "error_message": None,
            "completed_at": datetime.utcnow(),
        })

    def mark_failed(self, job_id: str, error_message: str) -> bool:
        return self.transition(job_id, JobStatus.FAILED, {
            "error_message": error_message,
            "completed_at": datetime.utcnow(),
        })
