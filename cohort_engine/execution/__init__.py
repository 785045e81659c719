"""
Cohort Execution

Key Components:
- fact_store: FactStore contract and the SQL implementation
- executor: compile-and-run path producing CohortResult
"""

from .fact_store import (
    FactStore,
    QueryScope,
    SqlFactStore,
)

from .executor import (
    PreparedQuery,
    QueryExecutor,
    QueryLimits,
    QueryRun,
)

__all__ = [
    "FactStore",
    "QueryScope",
    "SqlFactStore",
    "PreparedQuery",
    "QueryExecutor",
    "QueryLimits",
    "QueryRun",
]
