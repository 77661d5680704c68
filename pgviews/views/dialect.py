"""
SQL dialects supported by the compiler.
"""

import datetime as dt
import re
import uuid
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple

from pgviews.core.errors import CompilationError, ValidationError


class PostgresDialect:
    """PostgreSQL: double-quoted identifiers, positional $n placeholders."""

    name = "postgresql"

    JOIN_KEYWORDS = {
        "inner": "INNER JOIN",
        "left": "LEFT JOIN",
        "right": "RIGHT JOIN",
        "full": "FULL JOIN",
    }

    COMPARISONS = {
        "eq": "=",
        "ne": "<>",
        "gt": ">",
        "gte": ">=",
        "lt": "<",
        "lte": "<=",
        "like": "LIKE",
    }

    def quote_ident(self, identifier: str) -> str:
        return '"' + identifier.replace('"', '""') + '"'

    def placeholder(self, position: int) -> str:
        return f"${position}"

    def type_tag(self, value: Any, field: str) -> str:
        """Type tag for a bound parameter. bool is checked before int."""
        if isinstance(value, bool):
            return "boolean"
        if isinstance(value, int):
            return "bigint" if abs(value) > 2**31 - 1 else "integer"
        if isinstance(value, float):
            return "double precision"
        if isinstance(value, Decimal):
            return "numeric"
        if isinstance(value, str):
            return "text"
        if isinstance(value, dt.datetime):
            return "timestamptz" if value.tzinfo is not None else "timestamp"
        if isinstance(value, dt.date):
            return "date"
        if isinstance(value, dt.time):
            return "time"
        if isinstance(value, uuid.UUID):
            return "uuid"
        raise CompilationError(
            f"unsupported parameter type '{type(value).__name__}'",
            field=field,
        )

    def driver_sql(self, sql: str, params: Sequence[Any]) -> Tuple[str, Optional[Dict[str, Any]]]:
        """
        Rewrite ``$n`` placeholders as psycopg2 ``%(pn)s`` and escape literal ``%``.

        Quoted literals and identifiers, ``--`` and ``/* */`` comments and
        dollar-quoted strings are copied as-is (apart from ``%`` escaping);
        placeholders inside them are not parameters.
        """
        out: List[str] = []
        i = 0
        highest = 0
        while i < len(sql):
            end = _opaque_end(sql, i)
            if end is not None:
                out.append(sql[i:end].replace("%", "%%"))
                i = end
                continue
            ch = sql[i]
            if ch == "%":
                out.append("%%")
                i += 1
                continue
            if ch == "$" and i + 1 < len(sql) and sql[i + 1].isdigit():
                prev = sql[i - 1] if i > 0 else " "
                if not (prev.isalnum() or prev == "_"):
                    j = i + 1
                    while j < len(sql) and sql[j].isdigit():
                        j += 1
                    position = int(sql[i + 1:j])
                    highest = max(highest, position)
                    out.append(f"%(p{position})s")
                    i = j
                    continue
            out.append(ch)
            i += 1

        if highest > len(params):
            raise ValidationError(
                f"statement references parameter ${highest} but only {len(params)} were bound",
                field="sqlDefinition",
            )
        if not params:
            # Without parameters psycopg2 sends the text untouched.
            return sql, None
        bound = {f"p{n}": value for n, value in enumerate(params, start=1)}
        return "".join(out), bound


_DOLLAR_TAG = re.compile(r"\$(?:[A-Za-z_][A-Za-z0-9_]*)?\$")


def _opaque_end(sql: str, start: int) -> Optional[int]:
    """
    End index of the quoted string, comment or dollar-quoted body starting at
    ``start``, or None when none starts there. Unterminated ones run to the end.
    """
    ch = sql[start]
    if ch in ("'", '"'):
        i = start + 1
        while i < len(sql):
            if sql[i] == ch:
                # doubled quote is an escaped quote
                if i + 1 < len(sql) and sql[i + 1] == ch:
                    i += 2
                    continue
                return i + 1
            i += 1
        return len(sql)
    if sql.startswith("--", start):
        newline = sql.find("\n", start)
        return len(sql) if newline < 0 else newline
    if sql.startswith("/*", start):
        # block comments nest in PostgreSQL
        depth, i = 0, start
        while i < len(sql):
            if sql.startswith("/*", i):
                depth += 1
                i += 2
            elif sql.startswith("*/", i):
                depth -= 1
                i += 2
                if depth == 0:
                    return i
            else:
                i += 1
        return len(sql)
    if ch == "$" and (start == 0 or not (sql[start - 1].isalnum() or sql[start - 1] == "_")):
        match = _DOLLAR_TAG.match(sql, start)
        if match:
            closing = sql.find(match.group(0), match.end())
            return len(sql) if closing < 0 else closing + len(match.group(0))
    return None


_DIALECTS: Dict[str, PostgresDialect] = {
    "postgresql": PostgresDialect(),
    "postgres": PostgresDialect(),
}


def get_dialect(name: str) -> PostgresDialect:
    dialect = _DIALECTS.get((name or "").lower())
    if dialect is None:
        raise CompilationError(
            f"unsupported dialect '{name}'",
            field="dialect",
            details={"supported": sorted(_DIALECTS)},
        )
    return dialect
