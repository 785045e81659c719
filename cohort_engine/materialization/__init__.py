"""
Cohort Materialization

Key Components:
- scheduler: bounded worker pool driving the job state machine
- repository: persisted job rows with forward-only transitions
- features: per-patient feature aggregation
"""

from .features import (
    build_materialized_features,
    group_facts_by_patient,
)

from .repository import (
    MaterializationRepository,
)

from .scheduler import (
    MaterializationScheduler,
)

__all__ = [
    "build_materialized_features",
    "group_facts_by_patient",
    "MaterializationRepository",
    "MaterializationScheduler",
]
