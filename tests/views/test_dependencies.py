"""
Tests for dependency extraction and catalog classification.
"""

import pytest

from pgviews.core.errors import ExecutionError, ValidationError
from pgviews.views.catalog import OverlayCatalog, SchemaCatalog, StaticSchemaCatalog
from pgviews.views.compiler import CompiledQuery, compile_query
from pgviews.views.dependencies import DependencyAnalyzer
from pgviews.views.models import DependencyType, QueryBuilderConfig
from pgviews.views.sql_text import ensure_single_select, scan_relations


@pytest.fixture
def catalog():
    return StaticSchemaCatalog(
        tables=["orders", "customers", "sales.invoices"],
        views=["active_customers"],
        functions=["fiscal_quarter"],
    )


def targets(analysis):
    return {(d.dependency_type, d.target) for d in analysis.dependencies}


class TestStructuredSources:
    """Configs and compiled queries."""

    def test_config_tables_are_dependencies(self, catalog):
        config = QueryBuilderConfig.model_validate({
            "tables": [
                {"schema": "public", "name": "orders"},
                {"schema": "public", "name": "active_customers"},
            ],
        })
        analysis = DependencyAnalyzer(catalog).analyze(config, view_id="v1")

        assert targets(analysis) == {
            (DependencyType.TABLE, "public.orders"),
            (DependencyType.VIEW, "public.active_customers"),
        }
        assert analysis.unresolved == frozenset()
        assert all(d.view_id == "v1" for d in analysis.dependencies)

    def test_view_dependency_uses_depends_on_view(self, catalog):
        config = QueryBuilderConfig.model_validate({
            "tables": [{"schema": "public", "name": "active_customers"}],
        })
        (dep,) = DependencyAnalyzer(catalog).analyze(config).dependencies
        assert dep.depends_on_view == "public.active_customers"
        assert dep.depends_on_table is None

    def test_compiled_query_relations(self, catalog):
        compiled = compile_query({
            "tables": [
                {"schema": "public", "name": "orders"},
                {"schema": "public", "name": "customers"},
            ],
            "joins": [{"leftTable": "orders", "leftColumn": "customer_id",
                       "rightTable": "customers", "rightColumn": "id"}],
        })
        analysis = DependencyAnalyzer(catalog).analyze(compiled)
        assert analysis.targets() == ["public.customers", "public.orders"]

    def test_unknown_table_is_unresolved(self, catalog):
        config = QueryBuilderConfig.model_validate({"tables": [{"schema": "public", "name": "ghosts"}]})
        analysis = DependencyAnalyzer(catalog).analyze(config)
        assert analysis.unresolved == frozenset({"public.ghosts"})
        assert targets(analysis) == {(DependencyType.TABLE, "public.ghosts")}

    def test_without_catalog_everything_is_unresolved(self):
        config = QueryBuilderConfig.model_validate({"tables": [{"schema": "public", "name": "orders"}]})
        analysis = DependencyAnalyzer().analyze(config)
        assert analysis.unresolved == frozenset({"public.orders"})

    def test_unsupported_source_type(self):
        with pytest.raises(ValidationError):
            DependencyAnalyzer().analyze(42)


class TestRawSql:
    """Hand-written SQL parsed with sqlglot."""

    def test_schema_defaults_to_public(self, catalog):
        analysis = DependencyAnalyzer(catalog).analyze("SELECT id FROM orders")
        assert targets(analysis) == {(DependencyType.TABLE, "public.orders")}

    def test_qualified_names_and_joins(self, catalog):
        sql = (
            "SELECT o.id, i.total FROM public.orders o "
            "JOIN sales.invoices i ON i.order_id = o.id"
        )
        analysis = DependencyAnalyzer(catalog).analyze(sql)
        assert analysis.targets() == ["public.orders", "sales.invoices"]
        assert analysis.unresolved == frozenset()

    def test_cte_names_are_not_dependencies(self, catalog):
        sql = "WITH recent AS (SELECT * FROM orders) SELECT * FROM recent"
        analysis = DependencyAnalyzer(catalog).analyze(sql)
        assert analysis.targets() == ["public.orders"]

    def test_subquery_tables_found(self, catalog):
        sql = "SELECT * FROM customers WHERE id IN (SELECT customer_id FROM orders)"
        analysis = DependencyAnalyzer(catalog).analyze(sql)
        assert analysis.targets() == ["public.customers", "public.orders"]

    def test_known_function_is_a_dependency(self, catalog):
        sql = "SELECT fiscal_quarter(created_at), upper(status) FROM orders"
        analysis = DependencyAnalyzer(catalog).analyze(sql)
        assert (DependencyType.FUNCTION, "public.fiscal_quarter") in targets(analysis)
        assert not any(d.target.endswith("upper") for d in analysis.dependencies)

    def test_unquoted_identifiers_fold_to_lowercase(self, catalog):
        analysis = DependencyAnalyzer(catalog).analyze("SELECT * FROM Orders")
        assert analysis.targets() == ["public.orders"]
        assert analysis.unresolved == frozenset()

    def test_compiled_query_without_relations_parses_sql(self, catalog):
        analysis = DependencyAnalyzer(catalog).analyze(CompiledQuery(sql="SELECT * FROM customers"))
        assert analysis.targets() == ["public.customers"]


class TestCatalogs:
    """Catalog composition and failure handling."""

    def test_overlay_marks_managed_views(self, catalog):
        overlay = OverlayCatalog(catalog, views=["reporting.monthly_revenue"])
        assert overlay.classify("reporting", "monthly_revenue") == DependencyType.VIEW
        assert overlay.classify("public", "orders") == DependencyType.TABLE
        assert OverlayCatalog(None).classify("public", "orders") is None

    def test_catalog_failure_degrades_to_unresolved(self):
        class BrokenCatalog(SchemaCatalog):
            def classify(self, schema, name):
                raise ExecutionError("catalog unavailable")

        analysis = DependencyAnalyzer(BrokenCatalog()).analyze("SELECT * FROM orders")
        assert analysis.unresolved == frozenset({"public.orders"})

    def test_to_dict_is_sorted(self, catalog):
        analysis = DependencyAnalyzer(catalog).analyze("SELECT * FROM orders JOIN customers ON true")
        data = analysis.to_dict()
        assert [d["dependsOnTable"] for d in data["dependencies"]] == ["public.customers", "public.orders"]
        assert data["unresolved"] == []


class TestSqlText:
    """Raw SQL validation helpers."""

    def test_trailing_semicolon_stripped(self):
        assert ensure_single_select("SELECT 1;  ") == "SELECT 1"

    def test_multiple_statements_rejected(self):
        with pytest.raises(ValidationError):
            ensure_single_select("SELECT 1; SELECT 2")

    def test_non_select_rejected(self):
        with pytest.raises(ValidationError) as exc_info:
            ensure_single_select("DELETE FROM orders")
        assert exc_info.value.field == "sqlDefinition"

    def test_empty_rejected(self):
        with pytest.raises(ValidationError):
            ensure_single_select("   ")

    def test_union_is_a_query(self):
        assert ensure_single_select("SELECT 1 UNION SELECT 2") == "SELECT 1 UNION SELECT 2"

    def test_keyword_scan(self):
        found = scan_relations('SELECT * FROM sales."Invoices" i JOIN orders o ON o.id = i.order_id')
        assert found == [("sales", "Invoices"), (None, "orders")]
