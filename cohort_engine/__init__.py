"""
Cohort Engine

Compiles the cohort DSL into type-aware predicates and runs them against the
append-only fact store.

Key Components:
- dsl: tokenizer and recursive-descent parser
- catalog / predicates: field catalog and predicate compiler
- execution: fact store adapters and the query executor
- cache: result cache (Redis or in-memory)
- export: CSV exporter
- drilldown: per-patient enriched timeline
- materialization: bounded worker pool and feature aggregation
- records: SQLAlchemy models (sessions are owned by the caller)
- service: facade used by the HTTP layer
"""

from .dsl import Clause, ParsedQuery, parse, verify
from .errors import (
    CohortEngineError,
    CollaboratorUnavailable,
    DSLSyntaxError,
    ExecutionError,
    JobNotFound,
    ValidationError,
)

__all__ = [
    "Clause",
    "ParsedQuery",
    "parse",
    "verify",
    "CohortEngineError",
    "CollaboratorUnavailable",
    "DSLSyntaxError",
    "ExecutionError",
    "JobNotFound",
    "ValidationError",
]
