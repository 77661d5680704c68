"""
Tests for the plan-based performance estimator.

The database is replaced by a fake pool whose responder returns EXPLAIN
output or raises psycopg2 errors.
"""

import json

import psycopg2
import psycopg2.extensions
import pytest

from conftest import FakePool
from pgviews.core.errors import EstimationError, ExecutionTimeoutError
from pgviews.views.compiler import CompiledQuery, compile_query
from pgviews.views.estimator import PerformanceEstimator, parse_plan


PLAN = [{"Plan": {"Node Type": "Seq Scan", "Total Cost": 431.5, "Plan Rows": 1200}}]


def explain_responder(plan=PLAN):
    def respond(sql, params):
        if sql.startswith("EXPLAIN"):
            return [("QUERY PLAN", 114)], [(plan,)]
        return None
    return respond


def raising_responder(error):
    def respond(sql, params):
        raise error
    return respond


class TestEstimate:
    """Successful estimates."""

    def test_reads_cost_and_rows(self):
        pool = FakePool(explain_responder())
        metrics = PerformanceEstimator(pool).estimate(CompiledQuery(sql="SELECT 1"))

        assert metrics.cost == 431.5
        assert metrics.row_count == 1200
        assert metrics.planning_time >= 0
        assert metrics.last_analyzed.tzinfo is not None

    def test_runs_explain_without_analyze_in_read_only_transaction(self):
        pool = FakePool(explain_responder())
        compiled = compile_query({
            "tables": [{"schema": "public", "name": "orders"}],
            "filters": [{"column": "status", "operator": "eq", "value": "paid"}],
        })
        PerformanceEstimator(pool).estimate(compiled, timeout=5)

        statements = pool.conn.statements
        assert statements[0] == "SET TRANSACTION READ ONLY"
        assert statements[1].startswith("SET LOCAL statement_timeout")
        assert pool.conn.executed[1][1] == (5000,)
        explain_sql, params = pool.conn.executed[2]
        assert explain_sql.startswith("EXPLAIN (FORMAT JSON) SELECT")
        assert "ANALYZE" not in explain_sql
        assert '"orders"."status" = %(p1)s' in explain_sql
        assert params == {"p1": "paid"}
        assert pool.conn.rollbacks == 1

    def test_plan_as_json_text(self):
        pool = FakePool(explain_responder(json.dumps(PLAN)))
        assert PerformanceEstimator(pool).estimate(CompiledQuery(sql="SELECT 1")).row_count == 1200

    def test_default_timeout_used(self):
        pool = FakePool(explain_responder())
        PerformanceEstimator(pool, default_timeout=7).estimate(CompiledQuery(sql="SELECT 1"))
        assert pool.timeouts == [7]


class TestEstimateFailures:
    """Every failure becomes EstimationError and the transaction is rolled back."""

    def test_statement_timeout(self):
        pool = FakePool(raising_responder(psycopg2.extensions.QueryCanceledError("canceling statement")))
        with pytest.raises(EstimationError) as exc_info:
            PerformanceEstimator(pool).estimate(CompiledQuery(sql="SELECT 1"), timeout=1)
        assert exc_info.value.details["reason"] == "timeout"
        assert pool.conn.rollbacks == 1

    def test_database_error(self):
        pool = FakePool(raising_responder(psycopg2.ProgrammingError('relation "ghosts" does not exist')))
        with pytest.raises(EstimationError) as exc_info:
            PerformanceEstimator(pool).estimate(CompiledQuery(sql="SELECT * FROM ghosts"))
        assert "ghosts" in exc_info.value.details["reason"]
        assert exc_info.value.retryable

    def test_pool_exhausted(self):
        class ExhaustedPool(FakePool):
            def connection(self, timeout=None):
                raise ExecutionTimeoutError("timed out waiting for a connection")

        with pytest.raises(EstimationError):
            PerformanceEstimator(ExhaustedPool()).estimate(CompiledQuery(sql="SELECT 1"))

    def test_malformed_plan(self):
        with pytest.raises(EstimationError):
            parse_plan([{"Plan": {"Node Type": "Result"}}])
        with pytest.raises(EstimationError):
            parse_plan("not json")
