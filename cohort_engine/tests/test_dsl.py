"""
Unit tests for the cohort DSL compiler.

Tests cover:
- Select lists, clauses and limits
- Case handling (keywords/fields folded, literals preserved)
- Quoted, bare multi-word and list values
- Rejected input (missing select, no fields, OR, grouping, bad limit)
"""

import pytest

from cohort_engine.dsl import Clause, ParsedQuery, normalize_filters, parse, tokenize, verify
from cohort_engine.errors import DSLSyntaxError


class TestParse:
    """Well-formed queries."""

    def test_reference_query(self):
        """Select fields, one clause and a limit."""
        parsed = parse("SELECT patient_id, resource_type WHERE concept = 'blood-glucose' LIMIT 50")

        assert parsed.select_fields == ("patient_id", "resource_type")
        assert parsed.clauses == (Clause("concept", "=", "blood-glucose"),)
        assert parsed.limit == 50

    def test_parse_is_deterministic(self):
        text = "select patient_id where value >= 10 and concept in ('a', 'b') limit 5"
        assert parse(text) == parse(text)

    def test_limit_defaults_to_zero(self):
        parsed = parse("select patient_id")
        assert parsed.limit == 0
        assert parsed.clauses == ()

    def test_clause_order_preserved(self):
        parsed = parse("select patient_id where value > 1 and concept = x and unit != mg")
        assert [c.field for c in parsed.clauses] == ["value", "concept", "unit"]
        assert [c.operator for c in parsed.clauses] == [">", "=", "!="]

    @pytest.mark.parametrize("text,expected", [
        ("select a where status = in", Clause("status", "=", "in")),
        ("select a where concept = Select", Clause("concept", "=", "Select")),
        ("select a where status in (in, or)", Clause("status", "in", ("in", "or"))),
    ])
    def test_keyword_as_leading_literal(self, text, expected):
        assert parse(text).clauses == (expected,)

    def test_keyword_literal_followed_by_clause(self):
        parsed = parse("select a where status = in and concept = x limit 3")
        assert parsed.clauses == (Clause("status", "=", "in"), Clause("concept", "=", "x"))
        assert parsed.limit == 3

    def test_fields_folded_literals_preserved(self):
        parsed = parse("Select Patient_ID Where CONCEPT = 'Diabetes'")
        assert parsed.select_fields == ("patient_id",)
        assert parsed.clauses[0] == Clause("concept", "=", "Diabetes")

    def test_bare_multiword_value(self):
        parsed = parse("select patient_id where concept = blood glucose panel limit 5")
        assert parsed.clauses[0].value == "blood glucose panel"
        assert parsed.limit == 5

    def test_bare_timestamp_value(self):
        parsed = parse("select patient_id where timestamp >= 2024-01-01T10:30:00Z")
        assert parsed.clauses[0] == Clause("timestamp", ">=", "2024-01-01T10:30:00Z")

    def test_quoted_value_may_contain_commas(self):
        parsed = parse('select patient_id where concept = "a, b"')
        assert parsed.clauses[0].value == "a, b"

    def test_in_list(self):
        parsed = parse("select patient_id where concept in ('heart-rate', Diabetes)")
        assert parsed.clauses[0] == Clause("concept", "in", ("heart-rate", "Diabetes"))

    def test_in_single_value(self):
        parsed = parse("select patient_id where concept in heart-rate")
        assert parsed.clauses[0].value == ("heart-rate",)

    @pytest.mark.parametrize("op", ["=", "!=", ">", "<", ">=", "<="])
    def test_operators(self, op):
        parsed = parse(f"select patient_id where value {op} 5")
        assert parsed.clauses[0].operator == op

    def test_negative_number(self):
        parsed = parse("select patient_id where value > -5")
        assert parsed.clauses[0].value == "-5"

    def test_trailing_comma_in_select_list(self):
        assert parse("select a, b,").select_fields == ("a", "b")

    def test_to_dict(self):
        data = parse("select a where concept in (x, y) limit 3").to_dict()
        assert data == {
            "select_fields": ["a"],
            "clauses": [{"field": "concept", "operator": "in", "value": ["x", "y"]}],
            "limit": 3,
        }


class TestRejected:
    """Malformed queries raise DSLSyntaxError."""

    def test_must_start_with_select(self):
        with pytest.raises(DSLSyntaxError, match="must start with select"):
            parse("WHERE concept = 'risk'")

    def test_empty_text(self):
        with pytest.raises(DSLSyntaxError, match="must start with select"):
            parse("")

    def test_no_select_fields(self):
        with pytest.raises(DSLSyntaxError, match="at least one field"):
            parse("select where concept = x")

    def test_or_not_supported(self):
        with pytest.raises(DSLSyntaxError, match="or"):
            parse("select patient_id where concept = a or concept = b")

    def test_grouping_not_supported(self):
        with pytest.raises(DSLSyntaxError, match="grouping"):
            parse("select patient_id where (concept = a)")

    def test_bad_limit(self):
        with pytest.raises(DSLSyntaxError, match="limit"):
            parse("select patient_id limit ten")

    def test_unterminated_quote(self):
        with pytest.raises(DSLSyntaxError, match="unterminated"):
            parse("select patient_id where concept = 'abc")

    def test_missing_value(self):
        with pytest.raises(DSLSyntaxError, match="expected value"):
            parse("select patient_id where concept =")

    def test_missing_operator(self):
        with pytest.raises(DSLSyntaxError, match="expected operator"):
            parse("select patient_id where concept blood")

    def test_trailing_tokens(self):
        with pytest.raises(DSLSyntaxError, match="unexpected token"):
            parse("select patient_id limit 5 extra")

    def test_error_carries_position(self):
        with pytest.raises(DSLSyntaxError) as exc_info:
            parse("select patient_id where concept = ")
        assert "position" in exc_info.value.details

    def test_verify(self):
        verify("select patient_id")
        with pytest.raises(DSLSyntaxError):
            verify("patient_id")


class TestHelpers:

    def test_tokenize_operators(self):
        kinds = [t.kind for t in tokenize("a >= 1")]
        assert kinds == ["WORD", "OP", "WORD", "EOF"]

    def test_normalize_filters(self):
        parsed = parse("select a where concept = x and value > 3 and unit in (mg, g)")
        assert normalize_filters(parsed.clauses) == {"concept": "x", "value": "3", "unit": ["mg", "g"]}

    def test_parsed_query_is_hashable(self):
        assert isinstance(hash(parse("select a where b = c")), int)
        assert isinstance(parse("select a"), ParsedQuery)
