"""
Cohort Service

Facade over the engine components; this is the surface the HTTP layer calls.

    execute            DSL (+ tenant, fields, filters, limit) -> CohortResult (cached)
    verify_dsl         DSL -> None | DSLSyntaxError
    export / stream    DSL (+ tenant) -> CSV
    drilldown          cohort id + patient id + DSL -> Drilldown
    materialize        DSL + fields/filters -> queued MaterializationJob
    list_materializations / get_materialization
    list_templates / create_template
"""

import logging
from dataclasses import replace
from typing import Iterator, List, Optional, TextIO

from .cache import ResultCache, make_cache_key
from .collaborators import OlapSlicer
from .drilldown import DrilldownAssembler
from .dsl import verify
from .errors import CollaboratorUnavailable
from .execution.executor import QueryExecutor
from .export import CsvExporter
from .materialization.scheduler import MaterializationScheduler
from .models import (
    CohortQuery,
    CohortResult,
    CohortTemplate,
    Drilldown,
    DrilldownRequest,
    MaterializationJob,
    MaterializeRequest,
    generate_cohort_id,
    resolve_tenant,
)
from .templates import TemplateRepository

logger = logging.getLogger(__name__)


class CohortService:

    def __init__(
        self,
        executor: QueryExecutor,
        cache: Optional[ResultCache] = None,
        exporter: Optional[CsvExporter] = None,
        drilldown: Optional[DrilldownAssembler] = None,
        scheduler: Optional[MaterializationScheduler] = None,
        templates: Optional[TemplateRepository] = None,
        slicer: Optional[OlapSlicer] = None,
    ):
        self.executor = executor
        self.cache = cache or ResultCache(None)
        self.exporter = exporter or CsvExporter(executor)
        self.drilldown_assembler = drilldown or DrilldownAssembler(executor)
        self.scheduler = scheduler
        self.templates = templates
        self.slicer = slicer

    # ------------------------------------------------------------------
    # Interactive queries
    # ------------------------------------------------------------------

    def execute(self, query: CohortQuery) -> CohortResult:
        """Run a cohort query through the result cache."""
        query = replace(query, tenant_id=resolve_tenant(query.tenant_id))
        key = make_cache_key(query.tenant_id, query.dsl, query.limit, query.fields, query.filters)
        result = self.cache.get_or_execute(key, lambda: self.run_query(query))
        if query.id and result.cohort_id != query.id:
            result.cohort_id = query.id
        return result

    def run_query(self, query: CohortQuery) -> CohortResult:
        """Run a cohort query without the cache."""
        if not query.id:
            query = replace(query, id=generate_cohort_id())
        run = self.executor.run(query)
        result = run.result
        if run.prepared.clauses and self.slicer is not None:
            try:
                slices = self.slicer.query(run.prepared.filters)
            except Exception as e:
                logger.warning(f"Analytical slicer unavailable for {result.cohort_id}: {e}")
                slices = None
            if slices:
                result.metadata["slices"] = slices
        return result

    def verify_dsl(self, text: str) -> None:
        verify(text)

    # ------------------------------------------------------------------
    # Export / drilldown
    # ------------------------------------------------------------------

    def export(self, query: CohortQuery, out: TextIO) -> int:
        return self.exporter.export(query, out)

    def export_stream(self, query: CohortQuery) -> Iterator[str]:
        return self.exporter.stream(query)

    def drilldown(self, request: DrilldownRequest) -> Drilldown:
        return self.drilldown_assembler.assemble(request)

    # ------------------------------------------------------------------
    # Materialization
    # ------------------------------------------------------------------

    def materialize(self, request: MaterializeRequest) -> MaterializationJob:
        return self._require_scheduler().submit(request)

    def list_materializations(self, tenant_id: Optional[str] = None, limit: int = 50) -> List[MaterializationJob]:
        return self._require_scheduler().list(tenant_id, limit)

    def get_materialization(self, job_id: str) -> MaterializationJob:
        return self._require_scheduler().get(job_id)

    def _require_scheduler(self) -> MaterializationScheduler:
        if self.scheduler is None:
            raise CollaboratorUnavailable("materialization is not configured")
        return self.scheduler

    # ------------------------------------------------------------------
    # Templates
    # ------------------------------------------------------------------

    def list_templates(self, tenant_id: Optional[str] = None, limit: int = 25) -> List[CohortTemplate]:
        if self.templates is None:
            return []
        return self.templates.list(tenant_id, limit)

    def create_template(self, template: CohortTemplate) -> CohortTemplate:
        if self.templates is None:
            raise CollaboratorUnavailable("template storage is not configured")
        return self.templates.create(template)
