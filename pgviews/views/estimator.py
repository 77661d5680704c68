"""
Performance Estimator - plan-based cost estimates for compiled queries.

Runs ``EXPLAIN (FORMAT JSON)`` (never ANALYZE) inside a read-only transaction
that is always rolled back, and reads cost and row estimates from the root
plan node. Any failure surfaces as EstimationError; the caller decides
whether to keep stale metrics.
"""

import json
import time
from typing import Any, Dict, Optional

import psycopg2
import psycopg2.extensions

from pgviews.core.constants import ESTIMATE_TIMEOUT, utc_now
from pgviews.core.errors import EstimationError, ExecutionError, ExecutionTimeoutError
from pgviews.views.compiler import CompiledQuery
from pgviews.views.connections import read_only_cursor
from pgviews.views.dialect import get_dialect
from pgviews.views.models import PerformanceMetrics
from pgviews.utils.log_utils import get_logger

logger = get_logger(__name__)


def parse_plan(raw: Any) -> Dict[str, Any]:
    """Root plan node from an EXPLAIN (FORMAT JSON) result cell."""
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except ValueError as e:
            raise EstimationError("planner returned malformed JSON") from e
    if isinstance(raw, list) and raw:
        raw = raw[0]
    plan = raw.get("Plan") if isinstance(raw, dict) else None
    if not isinstance(plan, dict) or "Total Cost" not in plan or "Plan Rows" not in plan:
        raise EstimationError(
            "planner output is missing cost or row estimates",
            details={"keys": sorted(plan) if isinstance(plan, dict) else []},
        )
    return plan


class PerformanceEstimator:
    """Estimates one connection's queries through its pool."""

    def __init__(self, pool, default_timeout: float = ESTIMATE_TIMEOUT):
        self.pool = pool
        self.default_timeout = default_timeout

    def estimate(self, compiled: CompiledQuery, timeout: Optional[float] = None) -> PerformanceMetrics:
        timeout = timeout or self.default_timeout
        sql, params = get_dialect(compiled.dialect).driver_sql(compiled.sql, compiled.params)

        started = time.perf_counter()
        try:
            with self.pool.connection(timeout=timeout) as conn:
                with read_only_cursor(conn, timeout) as cursor:
                    plan_started = time.perf_counter()
                    cursor.execute(f"EXPLAIN (FORMAT JSON) {sql}", params)
                    row = cursor.fetchone()
                    planning_ms = (time.perf_counter() - plan_started) * 1000
        except psycopg2.extensions.QueryCanceledError as e:
            raise EstimationError(
                f"estimate timed out after {timeout}s",
                details={"reason": "timeout"},
            ) from e
        except psycopg2.Error as e:
            raise EstimationError(
                "database rejected the estimate",
                details={"reason": str(e).strip()},
            ) from e
        except ExecutionTimeoutError as e:
            raise EstimationError(e.message, details={"reason": "timeout"}) from e
        except ExecutionError as e:
            raise EstimationError(e.message, details=e.details) from e

        if not row:
            raise EstimationError("planner returned no rows")
        plan = parse_plan(row[0])
        total_ms = (time.perf_counter() - started) * 1000

        metrics = PerformanceMetrics(
            execution_time=round(total_ms, 3),
            planning_time=round(planning_ms, 3),
            row_count=int(plan["Plan Rows"]),
            cost=float(plan["Total Cost"]),
            last_analyzed=utc_now(),
        )
        logger.debug(f"Estimated {compiled.fingerprint()}: cost={metrics.cost} rows={metrics.row_count}")
        return metrics
