"""
Helpers for hand-written SQL definitions.

sqlglot is only used to read SQL, never to generate it; compiled SQL comes
from the QueryCompiler.
"""

import re
from typing import List, Optional, Tuple

import sqlglot
from sqlglot import exp
from sqlglot.errors import ErrorLevel, SqlglotError

from pgviews.core.errors import ValidationError
from pgviews.utils.log_utils import get_logger

logger = get_logger(__name__)

SQLGLOT_DIALECT = "postgres"

# FROM/JOIN followed by an optionally schema-qualified, optionally quoted name.
_IDENT = r'(?:"(?:[^"]|"")+"|[A-Za-z_][A-Za-z0-9_$]*)'
_RELATION_RE = re.compile(
    rf"\b(?:FROM|JOIN)\s+({_IDENT})(?:\s*\.\s*({_IDENT}))?(?![\w$\".]|\s*\()",
    re.IGNORECASE,
)


def parse_statements(sql: str) -> List[exp.Expression]:
    """Parse SQL into statements. Raises sqlglot's SqlglotError on bad input."""
    statements = sqlglot.parse(sql, read=SQLGLOT_DIALECT, error_level=ErrorLevel.RAISE)
    return [s for s in statements if s is not None]


def identifier_name(node: Optional[exp.Expression]) -> Optional[str]:
    """Identifier text as PostgreSQL resolves it: unquoted names fold to lowercase."""
    if node is None:
        return None
    if isinstance(node, exp.Identifier):
        return node.this if node.quoted else node.this.lower()
    name = getattr(node, "name", None)
    return name.lower() if name else None


def _unquote(raw: str) -> str:
    if raw.startswith('"') and raw.endswith('"'):
        return raw[1:-1].replace('""', '"')
    return raw.lower()


def scan_relations(sql: str) -> List[Tuple[Optional[str], str]]:
    """
    Keyword scan for relations after FROM / JOIN.

    Used only when sqlglot cannot parse the statement.
    """
    found: List[Tuple[Optional[str], str]] = []
    for first, second in _RELATION_RE.findall(sql):
        if second:
            found.append((_unquote(first), _unquote(second)))
        elif first.lower() not in ("select", "lateral", "only"):
            found.append((None, _unquote(first)))
    return found


def ensure_single_select(sql: Optional[str], field: str = "sqlDefinition") -> str:
    """
    Validate that ``sql`` is exactly one SELECT-style query.

    Returns the text with surrounding whitespace and trailing semicolons removed.
    """
    text = (sql or "").strip()
    while text.endswith(";"):
        text = text[:-1].rstrip()
    if not text:
        raise ValidationError("SQL definition is empty", field=field)

    try:
        statements = parse_statements(text)
    except SqlglotError as e:
        raise ValidationError(
            "SQL definition could not be parsed",
            field=field,
            details={"reason": str(e).splitlines()[0] if str(e) else "parse error"},
        ) from e

    if len(statements) != 1:
        raise ValidationError(
            f"SQL definition must contain exactly one statement, found {len(statements)}",
            field=field,
        )
    if not isinstance(statements[0], exp.Query):
        raise ValidationError(
            "SQL definition must be a SELECT query",
            field=field,
            details={"statement": type(statements[0]).__name__},
        )
    return text
