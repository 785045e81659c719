"""
CSV Exporter

Streams projected cohort facts as CSV. The scan is bounded by the executor's
effective limit (at most max_query_limit rows), not by the record sample cap.

Value formatting:
- absent -> ""
- datetime -> RFC3339 UTC ("2024-01-01T10:30:00Z")
- float -> fixed 6 decimals
- int -> decimal digits
- bool -> "true" / "false"
- dict/list/other -> JSON text, falling back to str()
"""

import csv
import io
import json
import logging
import re
from datetime import datetime, timezone
from typing import Any, Iterator, List, Optional, TextIO

from .execution.executor import PreparedQuery, QueryExecutor
from .execution.fact_store import QueryScope
from .models import CohortQuery

logger = logging.getLogger(__name__)


def stringify_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value.strftime("%Y-%m-%dT%H:%M:%SZ")
    if isinstance(value, float):
        return f"{value:.6f}"
    if isinstance(value, int):
        return str(value)
    try:
        return json.dumps(value, sort_keys=True)
    except (TypeError, ValueError):
        return str(value)


def sanitize_filename(name: str) -> str:
    """Lowercase [a-z0-9_-] file stem; spaces become dashes."""
    stem = re.sub(r"[^a-z0-9_-]", "", (name or "").strip().lower().replace(" ", "-"))
    return stem or "cohort-export"


class CsvExporter:

    def __init__(self, executor: QueryExecutor, chunk_rows: int = 500):
        self.executor = executor
        self.chunk_rows = chunk_rows

    def _rows(self, prepared: PreparedQuery, scope: Optional[QueryScope] = None) -> Iterator[List[str]]:
        facts = self.executor.fact_store.stream_records(
            prepared.compiled.predicates, scope, limit=prepared.limit, chunk_size=self.chunk_rows
        )
        for fact in facts:
            projection = self.executor.catalog.project(fact, prepared.fields)
            yield [stringify_value(projection.get(name)) for name in prepared.fields]

    def export(self, query: CohortQuery, out: TextIO) -> int:
        """
        Write the cohort as CSV to `out`.

        Output is flushed before returning, including when a row or write
        fails; the failure is then raised to the caller.

        Returns:
            Number of data rows written.
        """
        prepared = self.executor.prepare(query.dsl, query.fields, query.filters, query.limit)
        writer = csv.writer(out)
        written = 0
        try:
            writer.writerow(prepared.fields)
            for row in self._rows(prepared):
                writer.writerow(row)
                written += 1
        finally:
            flush = getattr(out, "flush", None)
            if flush is not None:
                flush()
        logger.info(f"Exported {written} rows for tenant {query.tenant_id}")
        return written

    def stream(self, query: CohortQuery) -> Iterator[str]:
        """
        CSV text chunks for a streaming response.

        The query is compiled before the first chunk is produced, so syntax
        and validation errors are raised here rather than mid-stream.
        """
        prepared = self.executor.prepare(query.dsl, query.fields, query.filters, query.limit)
        return self._stream_chunks(prepared)

    def _stream_chunks(self, prepared: PreparedQuery) -> Iterator[str]:
        buffer = io.StringIO()
        writer = csv.writer(buffer)
        writer.writerow(prepared.fields)
        pending = 0
        for row in self._rows(prepared):
            writer.writerow(row)
            pending += 1
            if pending >= self.chunk_rows:
                yield buffer.getvalue()
                buffer.seek(0)
                buffer.truncate(0)
                pending = 0
        tail = buffer.getvalue()
        if tail:
            yield tail
