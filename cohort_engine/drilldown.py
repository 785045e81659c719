"""
Drilldown Assembler

Builds one patient's enriched timeline for a cohort definition. Only the
fact store scan is fatal; the feature snapshot and linkage summary are
best-effort and come back empty when the collaborator is absent or fails.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, Optional

from .collaborators import DisabledFeatureStore, DisabledLinkage, FeatureStore, LinkageRepository
from .errors import ValidationError
from .execution.executor import QueryExecutor
from .execution.fact_store import QueryScope
from .models import Drilldown, DrilldownRequest, LinkageSummary, TimelineEvent, resolve_tenant

logger = logging.getLogger(__name__)


class DrilldownAssembler:

    def __init__(
        self,
        executor: QueryExecutor,
        features: Optional[FeatureStore] = None,
        linkage: Optional[LinkageRepository] = None,
        timeline_limit: int = 200,
        linkage_limit: int = 25,
    ):
        self.executor = executor
        self.features = features or DisabledFeatureStore()
        self.linkage = linkage or DisabledLinkage()
        self.timeline_limit = timeline_limit
        self.linkage_limit = linkage_limit

    def assemble(self, request: DrilldownRequest) -> Drilldown:
        """
        Raises:
            ValidationError: dsl or patient_id missing.
            DSLSyntaxError: malformed DSL.
            ExecutionError: fact store scan failed.
        """
        if not (request.dsl or "").strip():
            raise ValidationError("dsl is required", field="dsl")
        patient_id = (request.patient_id or "").strip()
        if not patient_id:
            raise ValidationError("patient_id is required", field="patient_id")

        prepared = self.executor.prepare(request.dsl)
        requested = request.limit if request.limit and request.limit > 0 else self.timeline_limit
        limit = min(requested, self.executor.limits.max_limit)

        facts = list(self.executor.fact_store.stream_records(
            prepared.compiled.predicates, QueryScope.for_patient(patient_id), limit=limit
        ))
        # scan is newest first; timeline reads oldest first
        facts.sort(key=lambda f: (f.event_time, f.id))
        timeline = [TimelineEvent.from_fact(fact) for fact in facts]

        with ThreadPoolExecutor(max_workers=2) as pool:
            features_future = pool.submit(self._feature_snapshot, patient_id)
            linkage_future = pool.submit(self._linkage_summary, patient_id)
            features = features_future.result()
            linkage = linkage_future.result()

        master_id = linkage.master_id if linkage else None
        if master_id is None:
            master_id = next((f.master_patient_id for f in facts if f.master_patient_id), None)

        metadata: Dict[str, Any] = {
            "fields": prepared.fields,
            "filters": prepared.filters,
            "tenant": resolve_tenant(request.tenant_id),
            "limit": limit,
            "droppedClauses": prepared.dropped,
        }
        logger.info(f"Drilldown {request.cohort_id}/{patient_id}: {len(timeline)} events")
        return Drilldown(
            cohort_id=request.cohort_id,
            patient_id=patient_id,
            master_patient_id=master_id,
            timeline=timeline,
            features=features,
            linkage=linkage,
            metadata=metadata,
        )

    def _feature_snapshot(self, patient_id: str) -> Dict[str, Any]:
        if not self.features.available:
            return {}
        try:
            features = self.features.get_online(patient_id)
        except Exception as e:
            logger.warning(f"Online feature lookup failed for {patient_id}: {e}")
            features = {}
        if features:
            return features
        try:
            return self.features.get_latest_offline(patient_id)
        except Exception as e:
            logger.warning(f"Offline feature lookup failed for {patient_id}: {e}")
            return {}

    def _linkage_summary(self, patient_id: str) -> Optional[LinkageSummary]:
        if not self.linkage.available:
            return None
        try:
            links = self.linkage.find_links_by_patient(patient_id, self.linkage_limit)
        except Exception as e:
            logger.warning(f"Linkage lookup failed for {patient_id}: {e}")
            return None
        if not links:
            return None
        primary = links[0]
        return LinkageSummary(
            master_id=primary.master_id,
            primary_score=primary.score,
            method=primary.method,
            links=list(links),
        )
