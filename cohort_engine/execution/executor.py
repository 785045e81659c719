"""
Query Executor

Runs a cohort query against the fact store:
1. Compile the DSL text (plus explicit overrides) into predicates
2. Exact distinct-patient count
3. Capped, ascending sample of distinct patient ids
4. Capped sample of the most recent matching facts, projected onto the
   requested fields

The patient id list is a SAMPLE of membership. When count exceeds the id cap
the list does not contain every match; callers needing full membership must
page through the fact store themselves.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from ..catalog import FieldCatalog
from ..dsl import Clause, ParsedQuery, normalize_filters, parse
from ..models import DEFAULT_FIELDS, CohortQuery, CohortResult, Fact, generate_cohort_id, resolve_tenant
from ..predicates import CompiledFilters, PredicateCompiler, clauses_from_filters
from .fact_store import FactStore, QueryScope

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QueryLimits:
    """Scan and sample caps."""
    default_limit: int = 500
    max_limit: int = 5000
    patient_id_cap: int = 500
    record_cap: int = 200

    @classmethod
    def from_settings(cls, settings) -> "QueryLimits":
        return cls(
            default_limit=settings.default_query_limit,
            max_limit=settings.max_query_limit,
            patient_id_cap=settings.patient_id_sample_cap,
            record_cap=settings.record_sample_cap,
        )

    def effective(self, requested: int) -> int:
        limit = requested if requested and requested > 0 else self.default_limit
        return min(limit, self.max_limit)


@dataclass
class PreparedQuery:
    """Compiled form of a cohort query, ready for any scan."""
    parsed: ParsedQuery
    fields: List[str]
    clauses: Tuple[Clause, ...]
    compiled: CompiledFilters
    limit: int

    @property
    def filters(self) -> Dict[str, Any]:
        return normalize_filters(self.clauses)

    @property
    def dropped(self) -> List[Dict[str, Any]]:
        return [d.to_dict() for d in self.compiled.dropped]


@dataclass
class QueryRun:
    """Executor output: the result plus the raw fact sample behind it."""
    result: CohortResult
    prepared: PreparedQuery
    sample: List[Fact] = field(default_factory=list)


def json_safe(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [json_safe(v) for v in value]
    return value


def resolve_fields(requested: Optional[List[str]], selected: Tuple[str, ...]) -> List[str]:
    """Explicit fields win over the DSL select list; default when neither is usable."""
    for candidate in (requested or [], list(selected)):
        fields = [f.strip().lower() for f in candidate if f and f.strip() and f.strip() != "*"]
        if fields:
            return fields
    return list(DEFAULT_FIELDS)


class QueryExecutor:
    """Compile-and-run path shared by interactive queries, export, drilldown and materialization."""

    def __init__(
        self,
        fact_store: FactStore,
        catalog: FieldCatalog,
        compiler: Optional[PredicateCompiler] = None,
        limits: Optional[QueryLimits] = None,
    ):
        self.fact_store = fact_store
        self.catalog = catalog
        self.compiler = compiler or PredicateCompiler(catalog)
        self.limits = limits or QueryLimits()

    def prepare(
        self,
        dsl: str,
        fields: Optional[List[str]] = None,
        filters: Optional[Dict[str, Any]] = None,
        limit: int = 0,
    ) -> PreparedQuery:
        """Parse and compile. Raises DSLSyntaxError, or ValidationError in strict mode."""
        parsed = parse(dsl)
        clauses = tuple(parsed.clauses) + tuple(clauses_from_filters(filters))
        compiled = self.compiler.compile(clauses)
        requested = limit if limit and limit > 0 else parsed.limit
        return PreparedQuery(
            parsed=parsed,
            fields=resolve_fields(fields, parsed.select_fields),
            clauses=clauses,
            compiled=compiled,
            limit=self.limits.effective(requested),
        )

    def run(self, query: CohortQuery, scope: Optional[QueryScope] = None) -> QueryRun:
        """
        Execute a cohort query.

        Raises:
            DSLSyntaxError: malformed DSL text.
            ValidationError: unresolvable clause with strict filters on.
            ExecutionError: fact store failure.
        """
        start = time.monotonic()
        prepared = self.prepare(query.dsl, query.fields, query.filters, query.limit)
        predicates = prepared.compiled.predicates

        count = self.fact_store.count(predicates, scope)
        patient_ids = self.fact_store.list_distinct_patient_ids(
            predicates, scope, cap=min(prepared.limit, self.limits.patient_id_cap)
        )
        sample = self.fact_store.sample_records(
            predicates, scope, cap=min(prepared.limit, self.limits.record_cap)
        )
        records = [json_safe(self.catalog.project(fact, prepared.fields)) for fact in sample]

        elapsed_ms = int((time.monotonic() - start) * 1000)
        result = CohortResult(
            cohort_id=query.id or generate_cohort_id(),
            tenant_id=resolve_tenant(query.tenant_id),
            count=count,
            patient_ids=patient_ids,
            query_time_ms=elapsed_ms,
            metadata={
                "records": records,
                "fields": prepared.fields,
                "filters": prepared.filters,
                "limit": prepared.limit,
                "tenant": resolve_tenant(query.tenant_id),
                "droppedClauses": prepared.dropped,
            },
        )
        logger.info(
            f"Cohort {result.cohort_id}: count={count}, ids={len(patient_ids)}, "
            f"records={len(records)}, {elapsed_ms}ms"
        )
        return QueryRun(result=result, prepared=prepared, sample=sample)
