"""
Cohort DSL compiler.

Grammar (keywords case-insensitive, flat, no nesting):

    select <field> (, <field>)* [where <clause> (and <clause>)*] [limit <n>]
    clause := <field> <op> <value>
    op     := = | != | > | < | >= | <= | in
    value  := 'quoted' | "quoted" | bare words | ( value (, value)* )   -- list only after `in`

A bare value may start with a keyword (`status = in`); later words that are
keywords end it.

Boolean `or` and parenthesised grouping are deliberately unsupported.
Field names are folded to lower case; literal values keep their casing.
Parsing is a pure function of the input text.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

from .errors import DSLSyntaxError


OPERATORS = ("=", "!=", ">", "<", ">=", "<=", "in")
KEYWORDS = {"select", "where", "and", "or", "limit", "in"}

# Characters that end a bare word
_DELIMITERS = set(",()=!<>'\"")


@dataclass(frozen=True)
class Token:
    kind: str  # WORD, STRING, OP, COMMA, LPAREN, RPAREN, EOF
    text: str
    position: int

    def is_keyword(self, *names: str) -> bool:
        return self.kind == "WORD" and self.text.lower() in names


@dataclass(frozen=True)
class Clause:
    """One comparison: field, operator and literal (a tuple for `in`)."""
    field: str
    operator: str
    value: Union[str, Tuple[str, ...]]

    def to_dict(self) -> Dict[str, Any]:
        value = list(self.value) if isinstance(self.value, tuple) else self.value
        return {"field": self.field, "operator": self.operator, "value": value}


@dataclass(frozen=True)
class ParsedQuery:
    """Structured form of a cohort query. Limit 0 means unspecified."""
    select_fields: Tuple[str, ...]
    clauses: Tuple[Clause, ...] = field(default_factory=tuple)
    limit: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "select_fields": list(self.select_fields),
            "clauses": [c.to_dict() for c in self.clauses],
            "limit": self.limit,
        }


def tokenize(text: str) -> List[Token]:
    """Split query text into tokens."""
    tokens: List[Token] = []
    i = 0
    n = len(text)
    while i < n:
        ch = text[i]
        if ch.isspace():
            i += 1
            continue
        if ch == ",":
            tokens.append(Token("COMMA", ch, i))
            i += 1
        elif ch == "(":
            tokens.append(Token("LPAREN", ch, i))
            i += 1
        elif ch == ")":
            tokens.append(Token("RPAREN", ch, i))
            i += 1
        elif ch in "<>!=":
            two = text[i:i + 2]
            if two in (">=", "<=", "!="):
                tokens.append(Token("OP", two, i))
                i += 2
            elif ch == "!":
                raise DSLSyntaxError(f"unexpected character '!' at position {i}", details={"position": i})
            else:
                tokens.append(Token("OP", ch, i))
                i += 1
        elif ch in ("'", '"'):
            end = text.find(ch, i + 1)
            if end == -1:
                raise DSLSyntaxError(f"unterminated quoted value at position {i}", details={"position": i})
            tokens.append(Token("STRING", text[i + 1:end], i))
            i = end + 1
        else:
            start = i
            while i < n and not text[i].isspace() and text[i] not in _DELIMITERS:
                i += 1
            tokens.append(Token("WORD", text[start:i], start))
    tokens.append(Token("EOF", "", n))
    return tokens


class _Parser:
    """Single-pass recursive-descent parser over the token list."""

    def __init__(self, tokens: List[Token]):
        self.tokens = tokens
        self.pos = 0

    @property
    def current(self) -> Token:
        return self.tokens[self.pos]

    def advance(self) -> Token:
        token = self.tokens[self.pos]
        if token.kind != "EOF":
            self.pos += 1
        return token

    def error(self, message: str) -> DSLSyntaxError:
        return DSLSyntaxError(message, details={"position": self.current.position})

    def parse(self) -> ParsedQuery:
        if not self.current.is_keyword("select"):
            raise self.error("query must start with select")
        self.advance()

        fields = self.parse_select_list()
        if not fields:
            raise self.error("at least one field must be selected")

        clauses: List[Clause] = []
        if self.current.is_keyword("where"):
            self.advance()
            clauses.append(self.parse_clause())
            while self.current.is_keyword("and"):
                self.advance()
                clauses.append(self.parse_clause())
            if self.current.is_keyword("or"):
                raise self.error("boolean 'or' is not supported")

        limit = 0
        if self.current.is_keyword("limit"):
            self.advance()
            token = self.advance()
            if token.kind != "WORD" or not token.text.isdigit():
                raise DSLSyntaxError(
                    f"limit must be a non-negative integer, got '{token.text}'",
                    field="limit",
                    details={"position": token.position},
                )
            limit = int(token.text)

        if self.current.kind != "EOF":
            raise self.error(f"unexpected token '{self.current.text}' at position {self.current.position}")

        return ParsedQuery(select_fields=tuple(fields), clauses=tuple(clauses), limit=limit)

    def parse_select_list(self) -> List[str]:
        fields: List[str] = []
        while True:
            token = self.current
            if token.kind == "COMMA":
                # tolerate empty entries such as "a,,b"
                self.advance()
                continue
            if token.kind != "WORD" or token.text.lower() in KEYWORDS:
                break
            fields.append(token.text.lower())
            self.advance()
            if self.current.kind == "COMMA":
                self.advance()
                continue
            break
        return fields

    def parse_clause(self) -> Clause:
        token = self.current
        if token.kind == "LPAREN":
            raise self.error("parenthesised grouping is not supported")
        if token.kind != "WORD" or token.text.lower() in KEYWORDS:
            raise self.error(f"expected field name at position {token.position}")
        field_name = self.advance().text.lower()

        op_token = self.current
        if op_token.kind == "OP":
            operator = self.advance().text
        elif op_token.is_keyword("in"):
            self.advance()
            operator = "in"
        else:
            raise self.error(f"expected operator after '{field_name}'")

        if operator == "in":
            return Clause(field_name, operator, self.parse_value_list())
        return Clause(field_name, operator, self.parse_value())

    def parse_value(self) -> str:
        token = self.current
        if token.kind == "STRING":
            self.advance()
            return token.text
        words: List[str] = []
        # first word is a literal even when it spells a keyword
        if token.kind == "WORD":
            words.append(self.advance().text)
        while self.current.kind == "WORD" and self.current.text.lower() not in KEYWORDS:
            words.append(self.advance().text)
        if not words:
            raise self.error(f"expected value at position {token.position}")
        return " ".join(words)

    def parse_value_list(self) -> Tuple[str, ...]:
        if self.current.kind != "LPAREN":
            return (self.parse_value(),)
        self.advance()
        values = [self.parse_value()]
        while self.current.kind == "COMMA":
            self.advance()
            values.append(self.parse_value())
        if self.current.kind != "RPAREN":
            raise self.error("expected ')' to close value list")
        self.advance()
        return tuple(values)


def parse(text: Optional[str]) -> ParsedQuery:
    """
    Parse cohort query text.

    Raises:
        DSLSyntaxError: when the text does not start with select, selects
            no fields, or is otherwise malformed.
    """
    return _Parser(tokenize((text or "").strip())).parse()


def verify(text: Optional[str]) -> None:
    """Raise DSLSyntaxError if the text does not parse."""
    parse(text)


def normalize_filters(clauses: Tuple[Clause, ...]) -> Dict[str, Any]:
    """Flatten clauses to a field -> literal map (last clause per field wins)."""
    result: Dict[str, Any] = {}
    for clause in clauses:
        result[clause.field] = list(clause.value) if isinstance(clause.value, tuple) else clause.value
    return result
