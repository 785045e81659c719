"""
Field Catalog

Maps logical DSL field names to physical fact locations and value kinds.
The catalog is immutable once built and is handed to the predicate compiler,
the executor and the exporter, so clause compilation and record projection
read attributes through the same typed accessor.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

from .models import Fact

logger = logging.getLogger(__name__)


class ValueKind(str, Enum):
    STRING = "string"
    NUMERIC = "numeric"
    TIME = "time"


class Container(str, Enum):
    COLUMN = "column"
    CANONICAL = "canonical"
    CODES = "codes"


# Accepted time literal formats, tried in order (first match wins)
TIME_FORMATS: Tuple[str, ...] = (
    "%Y-%m-%dT%H:%M:%S%z",
    "%Y-%m-%dT%H:%M:%S.%f%z",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%d %H:%M",
    "%Y-%m-%d",
)


def parse_time(text: str) -> Optional[datetime]:
    """Parse a time literal; aware values are converted to naive UTC."""
    raw = text.strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    for fmt in TIME_FORMATS:
        try:
            parsed = datetime.strptime(raw, fmt)
        except ValueError:
            continue
        if parsed.tzinfo is not None:
            parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
        return parsed
    return None


def parse_number(text: Any) -> Optional[float]:
    if isinstance(text, bool):
        return None
    if isinstance(text, (int, float)):
        return float(text)
    try:
        return float(str(text).strip())
    except (TypeError, ValueError):
        return None


@dataclass(frozen=True)
class AttributeValue:
    """
    Tagged value read from a fact.

    kind is the catalog kind the value was read as; raw is the untouched
    container value. value is the typed form (str/float/datetime) or None when
    the raw value is absent or cannot be read as that kind.
    """
    kind: ValueKind
    raw: Any
    value: Any

    @property
    def present(self) -> bool:
        return self.raw is not None


@dataclass(frozen=True)
class FieldSpec:
    name: str
    container: Container
    key: str
    kind: ValueKind = ValueKind.STRING

    def read(self, fact: Fact) -> AttributeValue:
        """Read this field from a fact as a tagged value."""
        if self.container == Container.COLUMN:
            raw = getattr(fact, self.key, None)
        elif self.container == Container.CANONICAL:
            raw = (fact.canonical or {}).get(self.key)
        else:
            raw = (fact.codes or {}).get(self.key)
        return AttributeValue(kind=self.kind, raw=raw, value=coerce(raw, self.kind))


def coerce(raw: Any, kind: ValueKind) -> Any:
    if raw is None:
        return None
    if kind == ValueKind.NUMERIC:
        return parse_number(raw)
    if kind == ValueKind.TIME:
        if isinstance(raw, datetime):
            return raw
        return parse_time(str(raw))
    if isinstance(raw, str):
        return raw
    return raw


class FieldCatalog:
    """Read-only registry of logical fields."""

    def __init__(self, specs: Iterable[FieldSpec]):
        self._specs: Mapping[str, FieldSpec] = MappingProxyType({s.name.lower(): s for s in specs})

    def lookup(self, name: str) -> Optional[FieldSpec]:
        return self._specs.get((name or "").strip().lower())

    def __contains__(self, name: str) -> bool:
        return self.lookup(name) is not None

    def __len__(self) -> int:
        return len(self._specs)

    @property
    def names(self) -> Tuple[str, ...]:
        return tuple(self._specs.keys())

    def project(self, fact: Fact, fields: Iterable[str]) -> Dict[str, Any]:
        """
        Project a fact onto the requested fields.

        Catalog fields are read through their spec; anything else falls back to
        the canonical container so free-form attributes still show up.
        """
        row: Dict[str, Any] = {}
        for name in fields:
            spec = self.lookup(name)
            if spec is None:
                row[name] = (fact.canonical or {}).get(name)
                continue
            attr = spec.read(fact)
            if not attr.present:
                row[name] = None
            elif attr.value is None:
                # unreadable as declared kind, keep what is stored
                row[name] = attr.raw
            else:
                row[name] = attr.value
        return row


def default_field_catalog() -> FieldCatalog:
    """The standard field mapping for the cohort fact table."""
    return FieldCatalog([
        FieldSpec("id", Container.COLUMN, "id"),
        FieldSpec("patient_id", Container.COLUMN, "patient_id"),
        FieldSpec("master_patient_id", Container.COLUMN, "master_patient_id"),
        FieldSpec("resource_type", Container.COLUMN, "resource_type"),
        FieldSpec("timestamp", Container.COLUMN, "event_time", ValueKind.TIME),
        FieldSpec("event_time", Container.COLUMN, "event_time", ValueKind.TIME),
        FieldSpec("ingested_at", Container.COLUMN, "ingested_at", ValueKind.TIME),
        FieldSpec("concept", Container.CANONICAL, "concept"),
        FieldSpec("value", Container.CANONICAL, "value", ValueKind.NUMERIC),
        FieldSpec("unit", Container.CANONICAL, "unit"),
        FieldSpec("status", Container.CANONICAL, "status"),
        FieldSpec("code", Container.CODES, "code"),
        FieldSpec("system", Container.CODES, "system"),
    ])
