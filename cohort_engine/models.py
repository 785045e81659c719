"""
Data models for the cohort engine.

Plain dataclasses shared by the executor, cache, exporter, drilldown assembler
and materialization scheduler. Timestamps are naive UTC datetimes.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


DEFAULT_TENANT = "public"

DEFAULT_FIELDS: Tuple[str, ...] = ("patient_id", "resource_type", "concept", "value", "timestamp")


def generate_cohort_id(now: Optional[datetime] = None) -> str:
    """Cohort id of the form cohort-YYYYMMDD-HHMMSS.mmm (UTC)."""
    now = now or datetime.utcnow()
    return f"cohort-{now.strftime('%Y%m%d-%H%M%S')}.{now.microsecond // 1000:03d}"


def resolve_tenant(tenant_id: Optional[str]) -> str:
    tenant = (tenant_id or "").strip()
    return tenant or DEFAULT_TENANT


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class JobStatus(str, Enum):
    """Materialization job states. Terminal: completed, failed."""
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


@dataclass(frozen=True)
class Fact:
    """Immutable clinical event as read from the fact store."""
    id: str
    patient_id: str
    resource_type: str
    event_time: datetime
    master_patient_id: Optional[str] = None
    canonical: Dict[str, Any] = field(default_factory=dict)
    codes: Dict[str, Any] = field(default_factory=dict)
    ingested_at: Optional[datetime] = None


@dataclass
class CohortQuery:
    """
    Cohort request as received from a caller.

    fields/filters/limit are explicit overrides of what the DSL text says.
    """
    dsl: str
    tenant_id: str = DEFAULT_TENANT
    id: Optional[str] = None
    fields: List[str] = field(default_factory=list)
    filters: Dict[str, Any] = field(default_factory=dict)
    limit: int = 0
    description: Optional[str] = None


@dataclass
class CohortResult:
    """
    Outcome of one cohort query.

    count is exact. patient_ids is a capped, ascending sample of membership and
    does not list every match when count exceeds the cap.
    """
    cohort_id: str
    tenant_id: str
    count: int
    patient_ids: List[str] = field(default_factory=list)
    query_time_ms: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CohortResult":
        return cls(
            cohort_id=data.get("cohort_id", ""),
            tenant_id=data.get("tenant_id", DEFAULT_TENANT),
            count=int(data.get("count", 0)),
            patient_ids=list(data.get("patient_ids") or []),
            query_time_ms=int(data.get("query_time_ms", 0)),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass
class TimelineEvent:
    id: str
    patient_id: str
    resource_type: str
    timestamp: datetime
    concept: Any = None
    unit: Any = None
    value: Any = None
    attributes: Dict[str, Any] = field(default_factory=dict)
    codes: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_fact(cls, fact: Fact) -> "TimelineEvent":
        canonical = dict(fact.canonical or {})
        return cls(
            id=fact.id,
            patient_id=fact.patient_id,
            resource_type=fact.resource_type,
            timestamp=fact.event_time,
            concept=canonical.get("concept"),
            unit=canonical.get("unit"),
            value=canonical.get("value"),
            attributes=canonical,
            codes=dict(fact.codes or {}),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "patient_id": self.patient_id,
            "resource_type": self.resource_type,
            "concept": self.concept,
            "unit": self.unit,
            "value": self.value,
            "timestamp": _iso(self.timestamp),
            "attributes": self.attributes,
            "codes": self.codes,
        }


@dataclass
class LinkedPatient:
    """One record-linkage row."""
    master_id: str
    patient_id: str
    score: float = 0.0
    method: Optional[str] = None
    attributes: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None


@dataclass
class LinkageSummary:
    master_id: str
    primary_score: float
    method: Optional[str]
    links: List[LinkedPatient] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "master_id": self.master_id,
            "primary_score": self.primary_score,
            "method": self.method,
            "links": [
                {
                    "master_id": link.master_id,
                    "patient_id": link.patient_id,
                    "score": link.score,
                    "method": link.method,
                    "attributes": link.attributes,
                    "created_at": _iso(link.created_at),
                }
                for link in self.links
            ],
        }


@dataclass
class DrilldownRequest:
    cohort_id: str
    patient_id: str
    dsl: str
    tenant_id: str = DEFAULT_TENANT
    limit: int = 0


@dataclass
class Drilldown:
    """Single patient's enriched timeline for one cohort definition."""
    cohort_id: str
    patient_id: str
    master_patient_id: Optional[str] = None
    timeline: List[TimelineEvent] = field(default_factory=list)
    features: Dict[str, Any] = field(default_factory=dict)
    linkage: Optional[LinkageSummary] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cohort_id": self.cohort_id,
            "patient_id": self.patient_id,
            "master_patient_id": self.master_patient_id,
            "timeline": [event.to_dict() for event in self.timeline],
            "features": self.features,
            "linkage": self.linkage.to_dict() if self.linkage else None,
            "metadata": self.metadata,
        }


@dataclass
class MaterializeRequest:
    dsl: str
    cohort_id: Optional[str] = None
    tenant_id: str = DEFAULT_TENANT
    fields: List[str] = field(default_factory=list)
    filters: Dict[str, Any] = field(default_factory=dict)
    limit: int = 0
    requested_by: Optional[str] = None


@dataclass
class MaterializationJob:
    """Materialization job descriptor (mirror of the persisted row)."""
    id: str
    cohort_id: str
    tenant_id: Optional[str]
    dsl: str
    status: JobStatus
    fields: List[str] = field(default_factory=list)
    filters: Dict[str, Any] = field(default_factory=dict)
    limit: int = 0
    result_count: int = 0
    error_message: Optional[str] = None
    requested_by: Optional[str] = None
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "cohort_id": self.cohort_id,
            "tenant_id": self.tenant_id,
            "dsl": self.dsl,
            "status": self.status.value,
            "fields": self.fields,
            "filters": self.filters,
            "limit": self.limit,
            "result_count": self.result_count,
            "error_message": self.error_message,
            "requested_by": self.requested_by,
            "created_at": _iso(self.created_at),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
        }


@dataclass
class CohortTemplate:
    name: str
    dsl: str
    id: Optional[str] = None
    tenant_id: Optional[str] = None
    description: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    created_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "name": self.name,
            "description": self.description,
            "dsl": self.dsl,
            "tags": self.tags,
            "created_at": _iso(self.created_at),
        }
