"""
Saved cohort definitions (templates).
"""

import logging
import uuid
from datetime import datetime
from typing import List, Optional

from sqlalchemy import or_

from .dsl import verify
from .errors import ValidationError
from .models import CohortTemplate
from .records import CohortTemplateRecord

logger = logging.getLogger(__name__)


def to_template(row: CohortTemplateRecord) -> CohortTemplate:
    return CohortTemplate(
        id=row.id,
        tenant_id=row.tenant_id,
        name=row.name,
        description=row.description,
        dsl=row.dsl,
        tags=list(row.tags or []),
        created_at=row.created_at,
    )


class TemplateRepository:

    def __init__(self, session_factory):
        self._session_factory = session_factory

    def list(self, tenant_id: Optional[str] = None, limit: int = 25) -> List[CohortTemplate]:
        """Newest first; tenant rows plus global (null-tenant) rows."""
        limit = limit if limit and limit > 0 else 25
        db = self._session_factory()
        try:
            query = db.query(CohortTemplateRecord)
            if tenant_id:
                query = query.filter(or_(
                    CohortTemplateRecord.tenant_id == tenant_id,
                    CohortTemplateRecord.tenant_id.is_(None),
                ))
            rows = query.order_by(CohortTemplateRecord.created_at.desc()).limit(limit).all()
            return [to_template(row) for row in rows]
        finally:
            db.close()

    def create(self, template: CohortTemplate) -> CohortTemplate:
        """
        Save a template. The DSL must parse.

        Raises:
            ValidationError: name or dsl missing.
            DSLSyntaxError: dsl does not parse.
        """
        if not (template.name or "").strip():
            raise ValidationError("name is required", field="name")
        if not (template.dsl or "").strip():
            raise ValidationError("dsl is required", field="dsl")
        verify(template.dsl)

        db = self._session_factory()
        try:
            row = CohortTemplateRecord(
                id=template.id or str(uuid.uuid4()),
                tenant_id=template.tenant_id or None,
                name=template.name.strip(),
                description=template.description,
                dsl=template.dsl,
                tags=list(template.tags or []),
                created_at=datetime.utcnow(),
            )
            db.add(row)
            db.commit()
            db.refresh(row)
            logger.info(f"Saved cohort template {row.id} ({row.name})")
            return to_template(row)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
