"""
Preview Executor - bounded, read-only sample runs of a view definition.

The compiled SQL never carries a LIMIT; the row bound is applied here,
exactly once, after clamping to MAX_PREVIEW_ROWS.
"""

import time
from typing import Any, Dict, Iterable, List, Optional, Sequence

import psycopg2
import psycopg2.extensions

from pgviews.core.constants import DEFAULT_PREVIEW_ROWS, MAX_PREVIEW_ROWS, PREVIEW_TIMEOUT
from pgviews.core.errors import ExecutionError, ExecutionTimeoutError
from pgviews.views.compiler import CompiledQuery
from pgviews.views.connections import read_only_cursor
from pgviews.views.dialect import get_dialect
from pgviews.views.models import PreviewColumn, ViewPreviewResult
from pgviews.views.sql_text import ensure_single_select
from pgviews.utils.log_utils import get_logger

logger = get_logger(__name__)

# Common built-in type OIDs; anything else is looked up in pg_type.
KNOWN_TYPES: Dict[int, str] = {
    16: "boolean",
    17: "bytea",
    20: "bigint",
    21: "smallint",
    23: "integer",
    25: "text",
    114: "json",
    700: "real",
    701: "double precision",
    1042: "character",
    1043: "character varying",
    1082: "date",
    1083: "time without time zone",
    1114: "timestamp without time zone",
    1184: "timestamp with time zone",
    1186: "interval",
    1700: "numeric",
    2950: "uuid",
    3802: "jsonb",
}


def clamp_limit(limit: Optional[int]) -> int:
    """Missing or non-positive -> DEFAULT_PREVIEW_ROWS; anything above MAX_PREVIEW_ROWS is capped."""
    if limit is None or limit <= 0:
        return min(DEFAULT_PREVIEW_ROWS, MAX_PREVIEW_ROWS)
    return min(int(limit), MAX_PREVIEW_ROWS)


def _unique_names(names: Iterable[str]) -> List[str]:
    seen: Dict[str, int] = {}
    result = []
    for name in names:
        count = seen.get(name, 0)
        seen[name] = count + 1
        result.append(name if count == 0 else f"{name}_{count + 1}")
    return result


class PreviewExecutor:
    """Runs previews for one connection through its pool."""

    def __init__(self, pool, default_timeout: float = PREVIEW_TIMEOUT):
        self.pool = pool
        self.default_timeout = default_timeout

    def preview(
        self,
        compiled: CompiledQuery,
        limit: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> ViewPreviewResult:
        """
        Execute ``compiled`` with a clamped LIMIT.

        Raises:
            ExecutionTimeoutError: the statement exceeded ``timeout``
            ExecutionError: the database rejected or failed the statement
        """
        timeout = timeout or self.default_timeout
        effective_limit = clamp_limit(limit)
        sql, params = get_dialect(compiled.dialect).driver_sql(compiled.sql, compiled.params)
        sql = f"{sql} LIMIT {effective_limit}"

        try:
            with self.pool.connection(timeout=timeout) as conn:
                with read_only_cursor(conn, timeout) as cursor:
                    started = time.perf_counter()
                    cursor.execute(sql, params)
                    fetched = cursor.fetchall()
                    elapsed_ms = (time.perf_counter() - started) * 1000
                    description = cursor.description or []
                    type_names = self._type_names(cursor, [d[1] for d in description])
        except psycopg2.extensions.QueryCanceledError as e:
            raise ExecutionTimeoutError(
                f"preview timed out after {timeout}s",
                details={"timeout": timeout},
            ) from e
        except psycopg2.Error as e:
            raise ExecutionError(
                "preview query failed",
                details={"reason": str(e).strip(), "sqlstate": getattr(e, "pgcode", None)},
            ) from e

        names = _unique_names(d[0] for d in description)
        columns = [PreviewColumn(name=n, type=t) for n, t in zip(names, type_names)]
        rows = [dict(zip(names, record)) for record in fetched]

        logger.info(f"Preview returned {len(rows)} row(s) in {elapsed_ms:.1f}ms (limit {effective_limit})")
        return ViewPreviewResult(
            columns=columns,
            rows=rows,
            execution_time=round(elapsed_ms, 3),
            row_count=len(rows),
        )

    def preview_sql(
        self,
        sql_definition: str,
        limit: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> ViewPreviewResult:
        """Preview hand-written SQL by wrapping it as a subquery, so the LIMIT is applied outside it."""
        inner = ensure_single_select(sql_definition)
        # newline keeps a trailing -- comment inside the subquery
        wrapped = f'SELECT * FROM ({inner}\n) AS "preview"'
        return self.preview(CompiledQuery(sql=wrapped), limit=limit, timeout=timeout)

    def _type_names(self, cursor, oids: Sequence[Any]) -> List[str]:
        unknown = sorted({oid for oid in oids if oid not in KNOWN_TYPES})
        resolved = dict(KNOWN_TYPES)
        if unknown:
            cursor.execute(
                "SELECT oid, format_type(oid, NULL) FROM pg_catalog.pg_type WHERE oid = ANY(%s)",
                (list(unknown),),
            )
            resolved.update({oid: name for oid, name in cursor.fetchall()})
        return [resolved.get(oid, "unknown") for oid in oids]
