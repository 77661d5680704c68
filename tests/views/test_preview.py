"""
Tests for bounded previews.
"""

import psycopg2
import psycopg2.extensions
import pytest

from conftest import FakePool
from pgviews.core.constants import DEFAULT_PREVIEW_ROWS, MAX_PREVIEW_ROWS
from pgviews.core.errors import ExecutionError, ExecutionTimeoutError, ValidationError
from pgviews.views.compiler import compile_query
from pgviews.views.preview import PreviewExecutor, clamp_limit


ORDERS = compile_query({
    "tables": [{"schema": "public", "name": "orders"}],
    "columns": [{"table": "orders", "column": "id"}, {"table": "orders", "column": "status"}],
    "filters": [{"column": "status", "operator": "eq", "value": "paid"}],
})


def rows_responder(description, rows, types=None):
    def respond(sql, params):
        if "pg_type" in sql:
            return [("oid", 26), ("format_type", 25)], list((types or {}).items())
        return description, rows
    return respond


class TestClampLimit:
    """Row bound applied to every preview."""

    def test_caps_at_maximum(self):
        assert clamp_limit(5000) == MAX_PREVIEW_ROWS == 1000

    def test_zero_and_missing_use_default(self):
        assert clamp_limit(0) == DEFAULT_PREVIEW_ROWS == 100
        assert clamp_limit(None) == 100
        assert clamp_limit(-3) == 100

    def test_within_range_unchanged(self):
        assert clamp_limit(25) == 25


class TestPreview:
    """Executing previews."""

    def test_returns_rows_and_columns(self):
        pool = FakePool(rows_responder([("id", 23), ("status", 25)], [(1, "paid"), (2, "paid")]))
        result = PreviewExecutor(pool).preview(ORDERS, limit=10)

        assert [c.name for c in result.columns] == ["id", "status"]
        assert [c.type for c in result.columns] == ["integer", "text"]
        assert result.rows == [{"id": 1, "status": "paid"}, {"id": 2, "status": "paid"}]
        assert result.row_count == 2

    def test_limit_appended_once_and_clamped(self):
        pool = FakePool(rows_responder([("id", 23)], []))
        PreviewExecutor(pool).preview(ORDERS, limit=5000)

        sql, params = pool.conn.executed[-1]
        assert sql.endswith(" LIMIT 1000")
        assert sql.count("LIMIT") == 1
        assert params == {"p1": "paid"}

    def test_read_only_and_rolled_back(self):
        pool = FakePool(rows_responder([("id", 23)], []))
        PreviewExecutor(pool).preview(ORDERS, timeout=2)

        assert pool.conn.statements[0] == "SET TRANSACTION READ ONLY"
        assert pool.conn.executed[1][1] == (2000,)
        assert pool.conn.rollbacks == 1
        assert pool.timeouts == [2]

    def test_unknown_type_looked_up(self):
        pool = FakePool(rows_responder([("tags", 1009)], [(["a"],)], types={1009: "text[]"}))
        result = PreviewExecutor(pool).preview(ORDERS)
        assert result.columns[0].type == "text[]"

    def test_duplicate_column_names_made_unique(self):
        pool = FakePool(rows_responder([("id", 23), ("id", 23)], [(1, 2)]))
        result = PreviewExecutor(pool).preview(ORDERS)
        assert result.rows == [{"id": 1, "id_2": 2}]

    def test_raw_sql_wrapped_as_subquery(self):
        pool = FakePool(rows_responder([("n", 23)], [(1,)]))
        PreviewExecutor(pool).preview_sql("SELECT 1 AS n LIMIT 5000;", limit=3)

        sql, params = pool.conn.executed[-1]
        assert sql == 'SELECT * FROM (SELECT 1 AS n LIMIT 5000\n) AS "preview" LIMIT 3'
        assert params is None

    def test_raw_sql_must_be_select(self):
        with pytest.raises(ValidationError):
            PreviewExecutor(FakePool()).preview_sql("DROP TABLE orders")

    def test_raw_sql_trailing_comment_stays_inside_subquery(self):
        pool = FakePool(rows_responder([("id", 23)], [(1,)]))
        result = PreviewExecutor(pool).preview_sql("SELECT id FROM orders -- paid only")

        sql, _ = pool.conn.executed[-1]
        assert sql == 'SELECT * FROM (SELECT id FROM orders -- paid only\n) AS "preview" LIMIT 100'
        assert result.rows == [{"id": 1}]

    def test_raw_sql_placeholder_text_in_comment_is_not_a_parameter(self):
        pool = FakePool(rows_responder([("price", 1700)], []))
        PreviewExecutor(pool).preview_sql("SELECT price FROM orders -- amount in $1 units")

        sql, params = pool.conn.executed[-1]
        assert "-- amount in $1 units" in sql
        assert params is None

    def test_raw_sql_percent_sent_untouched(self):
        pool = FakePool(rows_responder([("s", 25)], []))
        PreviewExecutor(pool).preview_sql("SELECT '100%' AS s")
        assert "'100%'" in pool.conn.executed[-1][0]


class TestPreviewFailures:
    """Timeouts and database errors."""

    def test_timeout_maps_to_execution_timeout(self):
        def respond(sql, params):
            raise psycopg2.extensions.QueryCanceledError("canceling statement due to statement timeout")

        pool = FakePool(respond)
        with pytest.raises(ExecutionTimeoutError) as exc_info:
            PreviewExecutor(pool).preview(ORDERS, timeout=1)
        assert exc_info.value.status_code == 504
        assert pool.conn.rollbacks == 1

    def test_database_error_maps_to_execution_error(self):
        def respond(sql, params):
            raise psycopg2.ProgrammingError('column "status" does not exist')

        pool = FakePool(respond)
        with pytest.raises(ExecutionError) as exc_info:
            PreviewExecutor(pool).preview(ORDERS)
        assert not isinstance(exc_info.value, ExecutionTimeoutError)
        assert "status" in exc_info.value.details["reason"]
        assert pool.conn.rollbacks == 1
