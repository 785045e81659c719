"""
Materialization Scheduler

Asynchronous cohort materialization with bounded concurrency.

Flow:
1. submit() persists a queued job and dispatches a daemon thread, then returns
2. The thread waits for one of N worker slots (BoundedSemaphore)
3. queued -> running, re-run the cohort query through the executor
4. Aggregate the fact sample per patient and push features offline + online
5. running -> completed (result count) or -> failed (error message)

The slot is released on every exit path. Jobs are not resumed after a process
restart: rows left in queued stay queued.
"""

import logging
import threading
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional

from ..collaborators import DisabledFeatureStore, FeatureStore
from ..errors import CohortEngineError, CollaboratorUnavailable, ValidationError
from ..execution.executor import QueryExecutor, QueryRun
from ..models import CohortQuery, MaterializationJob, MaterializeRequest, generate_cohort_id, resolve_tenant
from .features import build_materialized_features, group_facts_by_patient
from .repository import MaterializationRepository

logger = logging.getLogger(__name__)


class MaterializationScheduler:

    def __init__(
        self,
        repository: MaterializationRepository,
        executor: QueryExecutor,
        features: Optional[FeatureStore] = None,
        workers: int = 1,
        feature_ttl_seconds: Optional[int] = None,
    ):
        self.repository = repository
        self.executor = executor
        self.features = features or DisabledFeatureStore()
        self.workers = workers if workers > 0 else 1
        self.feature_ttl_seconds = feature_ttl_seconds
        self._slots = threading.BoundedSemaphore(self.workers)

        # Registry of dispatched job threads (thread-safe)
        self._lock = threading.Lock()
        self._threads: Dict[str, threading.Thread] = {}
        self._closed = False

    def submit(self, request: MaterializeRequest) -> MaterializationJob:
        """Persist a queued job and dispatch it. Never waits for execution."""
        if not (request.dsl or "").strip():
            raise ValidationError("dsl is required", field="dsl")
        if self._closed:
            raise CohortEngineError("materialization scheduler is shut down")

        cohort_id = request.cohort_id or generate_cohort_id()
        request = replace(request, cohort_id=cohort_id, tenant_id=resolve_tenant(request.tenant_id))
        job = self.repository.create(request, cohort_id)

        thread = threading.Thread(
            target=self._run,
            args=(job.id, request),
            name=f"materialize-{job.id[:8]}",
            daemon=True,
        )
        with self._lock:
            self._threads[job.id] = thread
        thread.start()
        logger.info(f"Queued materialization job {job.id} for cohort {cohort_id}")
        return job

    def get(self, job_id: str) -> MaterializationJob:
        return self.repository.get(job_id)

    def list(self, tenant_id: Optional[str] = None, limit: int = 50) -> List[MaterializationJob]:
        return self.repository.list(tenant_id, limit)

    def active_jobs(self) -> List[str]:
        with self._lock:
            return [job_id for job_id, t in self._threads.items() if t.is_alive()]

    def wait(self, job_id: str, timeout: Optional[float] = None) -> bool:
        """Block until the job's thread exits. True if it is no longer running."""
        with self._lock:
            thread = self._threads.get(job_id)
        if thread is None:
            return True
        thread.join(timeout)
        return not thread.is_alive()

    def shutdown(self, wait: bool = True, timeout: Optional[float] = None) -> None:
        """Refuse new submissions and optionally wait for dispatched jobs."""
        self._closed = True
        if not wait:
            return
        with self._lock:
            threads = list(self._threads.values())
        for thread in threads:
            thread.join(timeout)

    def _run(self, job_id: str, request: MaterializeRequest) -> None:
        try:
            with self._slots:
                self._execute(job_id, request)
        finally:
            with self._lock:
                self._threads.pop(job_id, None)

    def _execute(self, job_id: str, request: MaterializeRequest) -> None:
        try:
            if not self.repository.mark_running(job_id):
                return
        except Exception as e:
            logger.error(f"Job {job_id}: could not mark running: {e}", exc_info=True)
            self._fail(job_id, e)
            return

        try:
            run = self.executor.run(CohortQuery(
                id=request.cohort_id,
                tenant_id=request.tenant_id,
                dsl=request.dsl,
                fields=list(request.fields or []),
                filters=dict(request.filters or {}),
                limit=request.limit,
            ))
            self._push_features(request.cohort_id, run)
        except Exception as e:
            logger.error(f"Cohort materialization failed for job {job_id}: {e}", exc_info=True)
            self._fail(job_id, e)
            return

        try:
            self.repository.mark_completed(job_id, run.result.count)
        except Exception as e:
            logger.error(f"Job {job_id}: could not mark completed: {e}", exc_info=True)
            self._fail(job_id, e)

    def _fail(self, job_id: str, error: Exception) -> None:
        message = getattr(error, "message", None) or str(error) or type(error).__name__
        try:
            self.repository.mark_failed(job_id, message)
        except Exception as e:
            logger.error(f"Job {job_id}: could not record failure: {e}")

    def _push_features(self, cohort_id: str, run: QueryRun) -> None:
        if not self.features.available:
            raise CollaboratorUnavailable("feature store not configured")

        grouped = group_facts_by_patient(run.sample)
        now = datetime.utcnow()
        version = int((now - datetime(1970, 1, 1)).total_seconds())
        for patient_id in run.result.patient_ids:
            features = build_materialized_features(patient_id, cohort_id, grouped.get(patient_id, []), now)
            self.features.write_offline(patient_id, features, version)
            self.features.write_online(patient_id, features, self.feature_ttl_seconds)
        logger.info(f"Pushed features for {len(run.result.patient_ids)} patients (version {version})")
