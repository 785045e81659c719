"""
Predicate Compiler

Turns parsed clauses into type-aware predicates using the field catalog.
Clauses that cannot be resolved (unknown field, unreadable literal) are
dropped and reported, or rejected with ValidationError in strict mode. A
compiled predicate is always safe to hand to the fact store.
"""

import logging
import operator as op
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import Float, and_, case, cast, not_, null

from .catalog import Container, FieldCatalog, FieldSpec, ValueKind, parse_number, parse_time
from .dsl import Clause
from .errors import ValidationError

logger = logging.getLogger(__name__)


# DSL operator -> storage operator
_NORMALIZED = {"=": "=", "!=": "<>", ">": ">", "<": "<", ">=": ">=", "<=": "<=", "in": "in"}

# Unsigned or signed decimal, optional exponent
_NUMERIC_PATTERN = r"^\s*[-+]?([0-9]+\.?[0-9]*|\.[0-9]+)([eE][-+]?[0-9]+)?\s*$"


def numeric_or_null(element, dialect: str):
    """
    Read a JSON attribute as a float where its text is numeric, NULL otherwise.

    Stored values such as "positive" read as NULL and match no comparison.
    """
    if dialect == "sqlite":
        # GLOB has no quantifiers: leading sign/digit/dot, at least one digit,
        # nothing outside the numeric alphabet
        looks_numeric = and_(
            element.op("GLOB")("[0-9+.-]*"),
            element.op("GLOB")("*[0-9]*"),
            not_(element.op("GLOB")("*[^0-9.eE+-]*")),
        )
    elif dialect == "postgresql":
        looks_numeric = element.op("~")(_NUMERIC_PATTERN)
    else:
        looks_numeric = element.op("REGEXP")(_NUMERIC_PATTERN)
    return case((looks_numeric, cast(element, Float)), else_=null())


_COMPARATORS: Dict[str, Callable[[Any, Any], Any]] = {
    "=": op.eq,
    "<>": op.ne,
    ">": op.gt,
    "<": op.lt,
    ">=": op.ge,
    "<=": op.le,
}


@dataclass(frozen=True)
class Predicate:
    """Compiled comparison: field location, storage operator, typed literal."""
    spec: FieldSpec
    operator: str
    literal: Any  # str | float | datetime, or a tuple of those for "in"

    def to_clause(self, model, dialect: str):
        """Build the SQLAlchemy expression for this predicate against the fact model."""
        target = self._target(model, dialect)
        if self.operator == "in":
            return target.in_(list(self.literal))
        return _COMPARATORS[self.operator](target, self.literal)

    def _target(self, model, dialect: str):
        spec = self.spec
        if spec.container == Container.COLUMN:
            return getattr(model, spec.key)
        container = getattr(model, spec.container.value)
        element = container[spec.key].as_string()
        if spec.kind == ValueKind.NUMERIC:
            return numeric_or_null(element, dialect)
        return element


@dataclass(frozen=True)
class DroppedClause:
    field: str
    operator: str
    value: Any
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        value = list(self.value) if isinstance(self.value, tuple) else self.value
        return {"field": self.field, "operator": self.operator, "value": value, "reason": self.reason}


@dataclass
class CompiledFilters:
    predicates: List[Predicate] = field(default_factory=list)
    dropped: List[DroppedClause] = field(default_factory=list)


def clean_literal(value: Any) -> str:
    """Trim whitespace and one layer of matching quotes."""
    text = str(value).strip()
    if len(text) >= 2 and text[0] == text[-1] and text[0] in ("'", '"'):
        text = text[1:-1].strip()
    return text


def clauses_from_filters(filters: Optional[Dict[str, Any]]) -> List[Clause]:
    """Explicit field -> value filters as equality clauses (lists become `in`)."""
    clauses: List[Clause] = []
    for name, value in (filters or {}).items():
        if value is None:
            continue
        if isinstance(value, (list, tuple, set)):
            clauses.append(Clause(name.strip().lower(), "in", tuple(str(v) for v in value)))
        else:
            clauses.append(Clause(name.strip().lower(), "=", str(value)))
    return clauses


class PredicateCompiler:
    """
    Compile DSL clauses into predicates.

    Args:
        catalog: Immutable field catalog.
        strict: Raise ValidationError instead of dropping unresolvable clauses.
    """

    def __init__(self, catalog: FieldCatalog, strict: bool = False):
        self.catalog = catalog
        self.strict = strict

    def compile(self, clauses: Sequence[Clause]) -> CompiledFilters:
        compiled = CompiledFilters()
        for clause in clauses:
            predicate, reason = self._compile_clause(clause)
            if predicate is not None:
                compiled.predicates.append(predicate)
                continue

            dropped = DroppedClause(clause.field, clause.operator, clause.value, reason)
            if self.strict:
                raise ValidationError(
                    f"cannot apply filter on '{clause.field}': {reason}",
                    field=clause.field,
                    details=dropped.to_dict(),
                )
            logger.warning(f"Dropping clause {clause.field} {clause.operator} {clause.value!r}: {reason}")
            compiled.dropped.append(dropped)
        return compiled

    def _compile_clause(self, clause: Clause) -> Tuple[Optional[Predicate], str]:
        spec = self.catalog.lookup(clause.field)
        if spec is None:
            return None, "unknown field"

        operator = _NORMALIZED.get(clause.operator)
        if operator is None:
            return None, f"unsupported operator {clause.operator}"

        raw_values = clause.value if isinstance(clause.value, tuple) else (clause.value,)
        typed: List[Any] = []
        for raw in raw_values:
            literal = clean_literal(raw)
            value = self._typed_literal(spec.kind, literal)
            if value is None:
                return None, f"invalid {spec.kind.value} literal '{literal}'"
            typed.append(value)

        if operator == "in":
            return Predicate(spec, operator, tuple(typed)), ""
        if len(typed) != 1:
            return None, f"operator {clause.operator} takes a single value"
        return Predicate(spec, operator, typed[0]), ""

    @staticmethod
    def _typed_literal(kind: ValueKind, literal: str) -> Any:
        if kind == ValueKind.NUMERIC:
            return parse_number(literal)
        if kind == ValueKind.TIME:
            parsed = parse_time(literal)
            if parsed is None:
                return None
            return parsed
        return literal
