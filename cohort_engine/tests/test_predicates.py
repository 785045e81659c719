"""
Unit tests for the field catalog and predicate compiler.
"""

from datetime import datetime

import pytest
from sqlalchemy.dialects import postgresql, sqlite

from cohort_engine.catalog import Container, FieldSpec, ValueKind, default_field_catalog, parse_time
from cohort_engine.dsl import Clause, parse
from cohort_engine.errors import ValidationError
from cohort_engine.models import Fact
from cohort_engine.predicates import PredicateCompiler, clauses_from_filters, clean_literal
from cohort_engine.records import FactRecord


@pytest.fixture
def compiler(catalog):
    return PredicateCompiler(catalog)


class TestFieldCatalog:

    def test_lookup_is_case_insensitive(self, catalog):
        spec = catalog.lookup("Concept")
        assert spec == FieldSpec("concept", Container.CANONICAL, "concept")

    def test_unknown_field(self, catalog):
        assert catalog.lookup("favourite_colour") is None
        assert "favourite_colour" not in catalog

    def test_value_is_numeric_timestamp_is_time(self, catalog):
        assert catalog.lookup("value").kind == ValueKind.NUMERIC
        assert catalog.lookup("timestamp").kind == ValueKind.TIME

    def test_catalog_is_read_only(self, catalog):
        with pytest.raises(TypeError):
            catalog._specs["x"] = FieldSpec("x", Container.COLUMN, "id")

    def test_typed_accessor(self, catalog):
        fact = Fact(
            id="f-1",
            patient_id="p-1",
            resource_type="Observation",
            event_time=datetime(2024, 1, 1),
            canonical={"concept": "glucose", "value": "7.5"},
        )
        attr = catalog.lookup("value").read(fact)
        assert attr.kind == ValueKind.NUMERIC
        assert attr.raw == "7.5"
        assert attr.value == 7.5

    def test_project_uses_typed_values(self, catalog):
        fact = Fact(
            id="f-1",
            patient_id="p-1",
            resource_type="Observation",
            event_time=datetime(2024, 1, 1, 8, 0),
            canonical={"concept": "glucose", "value": "high", "note": "free text"},
        )
        row = catalog.project(fact, ["patient_id", "value", "timestamp", "unit", "note"])
        assert row == {
            "patient_id": "p-1",
            "value": "high",  # unreadable as numeric, stored value kept
            "timestamp": datetime(2024, 1, 1, 8, 0),
            "unit": None,
            "note": "free text",
        }


class TestParseTime:

    @pytest.mark.parametrize("text,expected", [
        ("2024-01-01T10:30:00Z", datetime(2024, 1, 1, 10, 30)),
        ("2024-01-01T10:30:00+02:00", datetime(2024, 1, 1, 8, 30)),
        ("2024-01-01T10:30:00", datetime(2024, 1, 1, 10, 30)),
        ("2024-01-01 10:30", datetime(2024, 1, 1, 10, 30)),
        ("2024-01-01", datetime(2024, 1, 1)),
    ])
    def test_accepted_formats(self, text, expected):
        assert parse_time(text) == expected

    def test_rejects_garbage(self):
        assert parse_time("yesterday") is None


class TestPredicateCompiler:

    def test_string_clause(self, compiler):
        compiled = compiler.compile(parse("select a where concept = 'Diabetes'").clauses)
        assert len(compiled.predicates) == 1
        assert compiled.predicates[0].literal == "Diabetes"
        assert compiled.dropped == []

    def test_not_equal_normalized(self, compiler):
        compiled = compiler.compile([Clause("resource_type", "!=", "Condition")])
        assert compiled.predicates[0].operator == "<>"

    def test_numeric_literal_typed(self, compiler):
        compiled = compiler.compile([Clause("value", ">", "15")])
        assert compiled.predicates[0].literal == 15.0

    def test_time_literal_typed(self, compiler):
        compiled = compiler.compile([Clause("timestamp", ">=", "2024-01-02")])
        assert compiled.predicates[0].literal == datetime(2024, 1, 2)

    def test_in_literals_typed(self, compiler):
        compiled = compiler.compile([Clause("value", "in", ("10", "20"))])
        assert compiled.predicates[0].literal == (10.0, 20.0)

    def test_unknown_field_dropped(self, compiler):
        compiled = compiler.compile([Clause("shoe_size", "=", "9"), Clause("concept", "=", "x")])
        assert len(compiled.predicates) == 1
        assert compiled.dropped[0].field == "shoe_size"
        assert compiled.dropped[0].reason == "unknown field"

    def test_invalid_numeric_literal_dropped(self, compiler):
        compiled = compiler.compile([Clause("value", ">", "abc")])
        assert compiled.predicates == []
        assert "numeric" in compiled.dropped[0].reason

    def test_invalid_time_literal_dropped(self, compiler):
        compiled = compiler.compile([Clause("timestamp", ">", "last tuesday")])
        assert compiled.predicates == []
        assert "time" in compiled.dropped[0].reason

    def test_strict_mode_rejects(self, catalog):
        strict = PredicateCompiler(catalog, strict=True)
        with pytest.raises(ValidationError) as exc_info:
            strict.compile([Clause("value", ">", "abc")])
        assert exc_info.value.field == "value"

    def test_dropped_to_dict(self, compiler):
        compiled = compiler.compile([Clause("shoe_size", "in", ("9", "10"))])
        assert compiled.dropped[0].to_dict() == {
            "field": "shoe_size",
            "operator": "in",
            "value": ["9", "10"],
            "reason": "unknown field",
        }

    @pytest.mark.parametrize("dialect,guard", [
        (sqlite.dialect(), "GLOB"),
        (postgresql.dialect(), "~"),
    ])
    def test_numeric_json_read_is_guarded(self, compiler, dialect, guard):
        predicate = compiler.compile([Clause("value", "<", "5")]).predicates[0]
        sql = str(predicate.to_clause(FactRecord, dialect.name).compile(dialect=dialect))
        assert "CASE WHEN" in sql
        assert guard in sql
        assert "CAST" in sql

    def test_column_predicate_ignores_dialect(self, compiler):
        predicate = compiler.compile([Clause("patient_id", "=", "p-1")]).predicates[0]
        sql = str(predicate.to_clause(FactRecord, "sqlite").compile(dialect=sqlite.dialect()))
        assert "CASE" not in sql


class TestLiteralHelpers:

    @pytest.mark.parametrize("raw,expected", [
        ("  abc ", "abc"),
        ("'abc'", "abc"),
        ('"a b"', "a b"),
        ("'abc", "'abc"),
    ])
    def test_clean_literal(self, raw, expected):
        assert clean_literal(raw) == expected

    def test_clauses_from_filters(self):
        clauses = clauses_from_filters({"Resource_Type": "Condition", "concept": ["a", "b"], "unit": None})
        assert clauses == [
            Clause("resource_type", "=", "Condition"),
            Clause("concept", "in", ("a", "b")),
        ]
