"""
Cohort router.

Endpoints:
- POST /query                  - Run a cohort query (cached)
- POST /verify                 - Validate DSL text
- POST /export                 - Stream matching records as CSV
- GET  /templates              - List saved cohort templates
- POST /templates              - Save a cohort template
- POST /materialize            - Queue a materialization job
- GET  /materialize            - List materialization jobs
- GET  /materialize/{job_id}   - Get one materialization job
- POST /{cohort_id}            - Patient drilldown

Tenant resolution: X-Tenant-ID header, then request body, then "public".
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from cohort_engine.errors import (
    CohortEngineError,
    DSLSyntaxError,
    ExecutionError,
    JobNotFound,
    ValidationError,
)
from cohort_engine.export import sanitize_filename
from cohort_engine.models import (
    CohortQuery,
    CohortTemplate,
    DrilldownRequest,
    MaterializeRequest,
    generate_cohort_id,
    resolve_tenant,
)
from cohort_engine.service import CohortService
from cohort_service.dependencies import get_cohort_service

logger = logging.getLogger(__name__)

router = APIRouter()


# =============================================================================
# REQUEST MODELS
# =============================================================================

class CohortQueryBody(BaseModel):
    """Cohort query request."""
    dsl: str
    id: Optional[str] = None
    tenant_id: Optional[str] = None
    fields: List[str] = Field(default_factory=list)
    filters: Dict[str, Any] = Field(default_factory=dict)
    limit: int = 0
    description: Optional[str] = None


class VerifyBody(BaseModel):
    dsl: str


class DrilldownBody(BaseModel):
    """Drilldown request for one patient."""
    patient_id: str
    dsl: str
    tenant_id: Optional[str] = None
    limit: int = 0


class MaterializeBody(BaseModel):
    """Materialization request."""
    dsl: str
    cohort_id: Optional[str] = None
    tenant_id: Optional[str] = None
    fields: List[str] = Field(default_factory=list)
    filters: Dict[str, Any] = Field(default_factory=dict)
    limit: int = 0
    requested_by: Optional[str] = None


class TemplateBody(BaseModel):
    name: str
    dsl: str
    description: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    tenant_id: Optional[str] = None


# =============================================================================
# HELPERS
# =============================================================================

def _tenant(header_value: Optional[str], body_value: Optional[str] = None) -> str:
    return resolve_tenant(header_value or body_value)


def _http_error(exc: CohortEngineError) -> HTTPException:
    """Map engine errors to HTTP status codes."""
    if isinstance(exc, (DSLSyntaxError, ValidationError)):
        status_code = 400
    elif isinstance(exc, JobNotFound):
        status_code = 404
    elif isinstance(exc, ExecutionError):
        status_code = 502
        logger.error(f"Fact store failure: {exc.message}")
    else:
        status_code = 500
        logger.error(f"Cohort engine error: {exc.message}")
    detail: Dict[str, Any] = {"error": exc.message}
    if exc.field:
        detail["field"] = exc.field
    if exc.details:
        detail["details"] = exc.details
    return HTTPException(status_code=status_code, detail=detail)


def _to_query(body: CohortQueryBody, tenant_id: str) -> CohortQuery:
    return CohortQuery(
        dsl=body.dsl,
        tenant_id=tenant_id,
        id=body.id,
        fields=body.fields,
        filters=body.filters,
        limit=body.limit,
        description=body.description,
    )


# =============================================================================
# QUERY / VERIFY / EXPORT
# =============================================================================

@router.post("/query")
def run_cohort_query(
    body: CohortQueryBody,
    x_tenant_id: Optional[str] = Header(default=None),
    service: CohortService = Depends(get_cohort_service),
):
    """Run a cohort query. patient_ids is a capped sample; count is exact."""
    try:
        result = service.execute(_to_query(body, _tenant(x_tenant_id, body.tenant_id)))
    except CohortEngineError as e:
        raise _http_error(e)
    return result.to_dict()


@router.post("/verify")
def verify_dsl(
    body: VerifyBody,
    service: CohortService = Depends(get_cohort_service),
):
    """Validate DSL text without running it."""
    try:
        service.verify_dsl(body.dsl)
    except CohortEngineError as e:
        raise _http_error(e)
    return {"valid": True, "message": "DSL is valid"}


@router.post("/export")
def export_cohort(
    body: CohortQueryBody,
    x_tenant_id: Optional[str] = Header(default=None),
    service: CohortService = Depends(get_cohort_service),
):
    """Stream the cohort's matching records as CSV."""
    query = _to_query(body, _tenant(x_tenant_id, body.tenant_id))
    try:
        chunks = service.export_stream(query)
    except CohortEngineError as e:
        raise _http_error(e)

    filename = sanitize_filename(body.id or generate_cohort_id())
    return StreamingResponse(
        chunks,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}.csv"'},
    )


# =============================================================================
# TEMPLATES
# =============================================================================

@router.get("/templates")
def list_templates(
    limit: int = Query(default=25, ge=1, le=500),
    x_tenant_id: Optional[str] = Header(default=None),
    service: CohortService = Depends(get_cohort_service),
):
    """List saved cohort templates (tenant and global)."""
    templates = service.list_templates(_tenant(x_tenant_id), limit)
    return {"templates": [t.to_dict() for t in templates]}


@router.post("/templates", status_code=201)
def create_template(
    body: TemplateBody,
    x_tenant_id: Optional[str] = Header(default=None),
    service: CohortService = Depends(get_cohort_service),
):
    """Save a cohort template. The DSL must parse."""
    tenant = x_tenant_id or body.tenant_id
    try:
        template = service.create_template(CohortTemplate(
            name=body.name,
            dsl=body.dsl,
            description=body.description,
            tags=body.tags,
            tenant_id=tenant,
        ))
    except CohortEngineError as e:
        raise _http_error(e)
    return template.to_dict()


# =============================================================================
# MATERIALIZATION
# =============================================================================

@router.post("/materialize", status_code=202)
def submit_materialization(
    body: MaterializeBody,
    x_tenant_id: Optional[str] = Header(default=None),
    service: CohortService = Depends(get_cohort_service),
):
    """Queue a materialization job. Poll GET /materialize/{job_id} for status."""
    try:
        job = service.materialize(MaterializeRequest(
            dsl=body.dsl,
            cohort_id=body.cohort_id,
            tenant_id=_tenant(x_tenant_id, body.tenant_id),
            fields=body.fields,
            filters=body.filters,
            limit=body.limit,
            requested_by=body.requested_by,
        ))
    except CohortEngineError as e:
        raise _http_error(e)
    return {"job": job.to_dict()}


@router.get("/materialize")
def list_materializations(
    limit: int = Query(default=50, ge=1, le=500),
    x_tenant_id: Optional[str] = Header(default=None),
    service: CohortService = Depends(get_cohort_service),
):
    """List materialization jobs, newest first."""
    try:
        jobs = service.list_materializations(_tenant(x_tenant_id), limit)
    except CohortEngineError as e:
        raise _http_error(e)
    return {"jobs": [job.to_dict() for job in jobs]}


@router.get("/materialize/{job_id}")
def get_materialization(
    job_id: str,
    service: CohortService = Depends(get_cohort_service),
):
    """Get one materialization job."""
    try:
        job = service.get_materialization(job_id)
    except CohortEngineError as e:
        raise _http_error(e)
    return {"job": job.to_dict()}


# =============================================================================
# DRILLDOWN
# =============================================================================

@router.post("/{cohort_id}")
def drilldown(
    cohort_id: str,
    body: DrilldownBody,
    x_tenant_id: Optional[str] = Header(default=None),
    service: CohortService = Depends(get_cohort_service),
):
    """Enriched timeline for one patient of a cohort."""
    try:
        result = service.drilldown(DrilldownRequest(
            cohort_id=cohort_id,
            patient_id=body.patient_id,
            dsl=body.dsl,
            tenant_id=_tenant(x_tenant_id, body.tenant_id),
            limit=body.limit,
        ))
    except CohortEngineError as e:
        raise _http_error(e)
    return result.to_dict()
