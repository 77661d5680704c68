"""
Tests for the in-memory and SQLAlchemy view stores.

Both stores run the same behavioural checks through the ``store`` fixture.
"""

from datetime import datetime, timezone

import pytest

from pgviews.core.errors import ValidationError, VersionConflictError, ViewNotFoundError
from pgviews.views.models import (
    DatabaseView,
    DependencyType,
    PerformanceMetrics,
    QueryBuilderConfig,
    ViewDependency,
    ViewVersion,
)


NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(params=["memory", "database"])
def store(request):
    return request.getfixturevalue("memory_store" if request.param == "memory" else "db_store")


def make_view(view_id="v1", name="paid_orders", **overrides):
    data = dict(
        id=view_id,
        connection_id="warehouse",
        name=name,
        schema_name="public",
        sql_definition='SELECT "orders"."id" FROM "public"."orders"',
        dependencies=["public.orders"],
        created_by="alice",
        created_at=NOW,
        updated_at=NOW,
    )
    data.update(overrides)
    return DatabaseView(**data)


def make_version(view_id="v1", label="1.0", sql="SELECT 1"):
    return ViewVersion(
        id=f"{view_id}-{label}",
        view_id=view_id,
        version=label,
        sql_definition=sql,
        created_by="alice",
        created_at=NOW,
    )


def table_dep(view_id, target):
    return ViewDependency(view_id=view_id, depends_on_table=target, dependency_type=DependencyType.TABLE)


class TestViews:
    """View rows."""

    def test_save_and_get(self, store):
        store.save(view=make_view(), version=make_version(), dependencies=[table_dep("v1", "public.orders")])

        view = store.get_view("v1")
        assert view.name == "paid_orders"
        assert view.dependencies == ["public.orders"]
        assert store.get_view("missing") is None

    def test_query_builder_config_round_trip(self, store):
        config = QueryBuilderConfig.model_validate({
            "tables": [{"schema": "public", "name": "orders"}],
            "filters": [{"column": "status", "operator": "eq", "value": "paid"}],
        })
        store.save(view=make_view(query_builder_config=config), version=make_version())
        assert store.get_view("v1").query_builder_config == config

    def test_find_and_list(self, store):
        store.save(view=make_view("v1", "b_view"), version=make_version("v1"))
        store.save(view=make_view("v2", "a_view"), version=make_version("v2"))
        store.save(view=make_view("v3", "other", connection_id="crm"), version=make_version("v3"))

        assert store.find_view("warehouse", "public", "a_view").id == "v2"
        assert store.find_view("warehouse", "sales", "a_view") is None
        assert [v.name for v in store.list_views("warehouse")] == ["a_view", "b_view"]
        assert len(store.list_views()) == 3

    def test_duplicate_name_rejected(self, store):
        store.save(view=make_view("v1"), version=make_version("v1"))
        with pytest.raises(ValidationError):
            store.save(view=make_view("v2"), version=make_version("v2"))
        assert store.get_view("v2") is None
        assert store.get_versions("v2") == []

    def test_metadata_update_without_version(self, store):
        store.save(view=make_view(), version=make_version())
        store.save(view=make_view(description="Paid orders only"))
        assert store.get_view("v1").description == "Paid orders only"
        assert len(store.get_versions("v1")) == 1

    def test_update_metrics(self, store):
        store.save(view=make_view(), version=make_version())
        metrics = PerformanceMetrics(execution_time=3.5, planning_time=1.2, row_count=42, cost=10.5, last_analyzed=NOW)

        updated = store.update_metrics("v1", metrics)

        assert updated.performance_metrics.row_count == 42
        assert store.get_view("v1").performance_metrics.cost == 10.5

    def test_update_metrics_unknown_view(self, store):
        metrics = PerformanceMetrics(last_analyzed=NOW)
        with pytest.raises(ViewNotFoundError):
            store.update_metrics("missing", metrics)


class TestVersions:
    """Append-only history."""

    def test_duplicate_label_is_conflict_and_nothing_written(self, store):
        store.save(view=make_view(), version=make_version(label="1.0"))
        with pytest.raises(VersionConflictError):
            store.save(
                view=make_view(description="changed"),
                version=make_version(label="1.0", sql="SELECT 2"),
            )
        assert store.get_view("v1").description is None
        assert store.get_version("v1", "1.0").sql_definition == "SELECT 1"

    def test_get_version(self, store):
        store.save(view=make_view(), version=make_version(label="1.0"))
        store.save(version=make_version(label="1.1", sql="SELECT 2"))
        assert store.get_version("v1", "1.1").sql_definition == "SELECT 2"
        assert store.get_version("v1", "2.0") is None
        assert {v.version for v in store.get_versions("v1")} == {"1.0", "1.1"}


class TestDependencies:
    """Dependency rows and reverse lookups."""

    def test_dependencies_replaced_on_save(self, store):
        store.save(view=make_view(), version=make_version(), dependencies=[table_dep("v1", "public.orders")])
        store.save(
            view=make_view(dependencies=["public.customers"]),
            version=make_version(label="1.1"),
            dependencies=[table_dep("v1", "public.customers")],
        )
        assert [d.target for d in store.get_dependencies("v1")] == ["public.customers"]

    def test_find_dependents(self, store):
        view_dep = ViewDependency(
            view_id="v2", depends_on_view="public.paid_orders", dependency_type=DependencyType.VIEW,
        )
        store.save(view=make_view("v1"), version=make_version("v1"), dependencies=[table_dep("v1", "public.orders")])
        store.save(view=make_view("v2", "paid_summary"), version=make_version("v2"), dependencies=[view_dep])

        assert [v.id for v in store.find_dependents("public.orders")] == ["v1"]
        assert [v.id for v in store.find_dependents("public.paid_orders")] == ["v2"]
        assert store.find_dependents("public.nothing") == []
