"""
Error taxonomy for the cohort engine.

- DSLSyntaxError: malformed query text (caller-facing, never retried)
- ValidationError: missing or unusable request input (caller-facing)
- ExecutionError: fact store failure (surfaced; retry is the caller's job)
- CollaboratorUnavailable: write attempted against an absent collaborator
- JobNotFound: unknown materialization job id
"""

from typing import Any, Dict, Optional


class CohortEngineError(Exception):
    """Base error with optional field and details."""

    def __init__(self, message: str, field: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.field = field
        self.details = details or {}


class DSLSyntaxError(CohortEngineError):
    """Cohort query text could not be parsed."""


class ValidationError(CohortEngineError):
    """Required input missing or rejected."""


class ExecutionError(CohortEngineError):
    """Fact store scan or count failed."""


class CollaboratorUnavailable(CohortEngineError):
    """Optional collaborator is not configured."""


class JobNotFound(CohortEngineError):
    """Materialization job does not exist."""
