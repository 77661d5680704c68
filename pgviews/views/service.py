"""
View Service - orchestrates compile, analyze, version and persist.

All state lives in the injected ViewStore and ConnectionRegistry; the
service itself holds no module-level singletons.

Save path:
  1. Compile (config) or validate (raw SQL) the definition
  2. Analyze dependencies against the connection's catalog
  3. Persist view + version + dependencies in one store call
  4. Best-effort performance estimate (optional, never blocks the save)
"""

import uuid
from typing import Callable, List, Optional, Sequence, Tuple

from pgviews.core.constants import ESTIMATE_ON_SAVE, utc_now
from pgviews.core.errors import EstimationError, ValidationError, ViewNotFoundError
from pgviews.views.catalog import DEFAULT_SCHEMA, OverlayCatalog, SchemaCatalog, split_qualified
from pgviews.views.compiler import CompiledQuery, QueryCompiler
from pgviews.views.connections import ConnectionRegistry
from pgviews.views.dependencies import DependencyAnalysis, DependencyAnalyzer
from pgviews.views.estimator import PerformanceEstimator
from pgviews.views.models import (
    CreateViewRequest,
    DatabaseView,
    DependencyType,
    QueryBuilderConfig,
    UpdateViewRequest,
    ViewDependency,
    ViewPreviewRequest,
    ViewPreviewResult,
    ViewVersion,
)
from pgviews.views.persistence import ViewStore
from pgviews.views.preview import PreviewExecutor
from pgviews.views.sql_text import ensure_single_select
from pgviews.views.versions import VersionManager
from pgviews.utils.log_utils import get_logger

logger = get_logger(__name__)

# PostgreSQL truncates identifiers beyond NAMEDATALEN - 1 bytes.
MAX_IDENTIFIER_LENGTH = 63

ChangeListener = Callable[[str, DatabaseView], None]


def _check_identifier(value: Optional[str], field: str) -> str:
    if value is None or not value.strip():
        raise ValidationError(f"{field} is required", field=field)
    if len(value.encode("utf-8")) > MAX_IDENTIFIER_LENGTH:
        raise ValidationError(
            f"{field} must be at most {MAX_IDENTIFIER_LENGTH} bytes",
            field=field,
        )
    return value


class ViewService:
    """Entry point for every view operation exposed over HTTP."""

    def __init__(
        self,
        store: ViewStore,
        connections: ConnectionRegistry,
        compiler: Optional[QueryCompiler] = None,
        catalog: Optional[SchemaCatalog] = None,
        listeners: Sequence[ChangeListener] = (),
        estimate_on_save: bool = ESTIMATE_ON_SAVE,
    ):
        """
        Args:
            store: view metadata store
            connections: target connections and their pools
            compiler: query compiler (a default one is created if omitted)
            catalog: fixed catalog for every connection; when omitted each
                connection's live PostgreSQL catalog is used
            listeners: called with ("view.created" | "view.updated", view)
            estimate_on_save: run a best-effort estimate after each definition change
        """
        self.store = store
        self.connections = connections
        self.compiler = compiler or QueryCompiler()
        self.catalog = catalog
        self.listeners: List[ChangeListener] = list(listeners)
        self.estimate_on_save = estimate_on_save
        self.versions = VersionManager(store)

    # =========================================================================
    # Compile / analyze
    # =========================================================================

    def compile(self, config: QueryBuilderConfig, dialect: Optional[str] = None) -> CompiledQuery:
        return self.compiler.compile(config, dialect)

    def analyzer_for(self, connection_id: Optional[str]) -> DependencyAnalyzer:
        """Analyzer whose catalog also knows the managed views on ``connection_id``."""
        if connection_id is None:
            return DependencyAnalyzer(self.catalog)
        base = self.catalog if self.catalog is not None else self.connections.catalog(connection_id)
        managed = [v.qualified_name for v in self.store.list_views(connection_id)]
        return DependencyAnalyzer(OverlayCatalog(base, managed))

    def analyze(
        self,
        sql_definition: Optional[str] = None,
        config: Optional[QueryBuilderConfig] = None,
        connection_id: Optional[str] = None,
    ) -> DependencyAnalysis:
        if config is not None:
            return self.analyzer_for(connection_id).analyze(self.compile(config))
        if sql_definition is None:
            raise ValidationError(
                "sqlDefinition or queryBuilderConfig is required",
                field="sqlDefinition",
            )
        return self.analyzer_for(connection_id).analyze(ensure_single_select(sql_definition))

    def _resolve_definition(
        self,
        connection_id: str,
        view_id: str,
        sql_definition: Optional[str],
        config: Optional[QueryBuilderConfig],
    ) -> Tuple[CompiledQuery, Optional[QueryBuilderConfig], DependencyAnalysis]:
        if config is not None:
            # The server owns sqlDefinition whenever a config is supplied.
            compiled = self.compile(config)
        elif sql_definition is not None:
            compiled = CompiledQuery(sql=ensure_single_select(sql_definition))
        else:
            raise ValidationError(
                "sqlDefinition or queryBuilderConfig is required",
                field="sqlDefinition",
            )
        analysis = self.analyzer_for(connection_id).analyze(compiled, view_id=view_id)
        return compiled, config, analysis

    # =========================================================================
    # Views
    # =========================================================================

    def create_view(self, connection_id: str, request: CreateViewRequest, actor: str) -> DatabaseView:
        self.connections.get_config(connection_id)
        name = _check_identifier(request.name, "name")
        schema = _check_identifier(request.schema_name or DEFAULT_SCHEMA, "schema")
        if self.store.find_view(connection_id, schema, name) is not None:
            raise ValidationError(
                f"view {schema}.{name} already exists on connection {connection_id}",
                field="name",
            )

        view_id = str(uuid.uuid4())
        compiled, config, analysis = self._resolve_definition(
            connection_id, view_id, request.sql_definition, request.query_builder_config
        )
        now = utc_now()
        view = DatabaseView(
            id=view_id,
            connection_id=connection_id,
            name=name,
            schema_name=schema,
            description=request.description,
            sql_definition=compiled.sql,
            query_builder_config=config,
            dependencies=analysis.targets(),
            created_by=actor,
            created_at=now,
            updated_at=now,
        )
        self.versions.record_version(
            view_id,
            compiled.sql,
            actor,
            change_notes=request.change_notes or "Initial version",
            view=view,
            dependencies=analysis.sorted_dependencies(),
        )
        logger.info(f"Created view {view.qualified_name} ({view_id}) on {connection_id}")

        view = self._estimate_quietly(view, compiled)
        self._notify("view.created", view)
        return view

    def update_view(self, view_id: str, request: UpdateViewRequest, actor: str) -> DatabaseView:
        # The row is written back whole, so it is read and saved under the view's lock.
        with self.versions.lock_for(view_id):
            view = self.get_view(view_id)
            updates = {"updated_at": utc_now()}

            if request.name is not None and request.name != view.name:
                name = _check_identifier(request.name, "name")
                existing = self.store.find_view(view.connection_id, view.schema_name, name)
                if existing is not None and existing.id != view_id:
                    raise ValidationError(
                        f"view {view.schema_name}.{name} already exists on connection {view.connection_id}",
                        field="name",
                    )
                updates["name"] = name
            if request.description is not None:
                updates["description"] = request.description

            if not request.changes_definition:
                updated = view.model_copy(update=updates)
                self.store.save(view=updated)
                logger.info(f"Updated metadata of view {view_id}")
                compiled = None
            else:
                compiled, config, analysis = self._resolve_definition(
                    view.connection_id, view_id, request.sql_definition, request.query_builder_config
                )
                updates.update(
                    sql_definition=compiled.sql,
                    query_builder_config=config,
                    dependencies=analysis.targets(),
                )
                updated = view.model_copy(update=updates)
                self.versions.record_version(
                    view_id,
                    compiled.sql,
                    actor,
                    change_notes=request.change_notes,
                    view=updated,
                    dependencies=analysis.sorted_dependencies(),
                )

        if compiled is not None:
            updated = self._estimate_quietly(updated, compiled)
        self._notify("view.updated", updated)
        return updated

    def get_view(self, view_id: str) -> DatabaseView:
        view = self.store.get_view(view_id)
        if view is None:
            raise ViewNotFoundError(f"view '{view_id}' not found", field="viewId")
        return view

    def list_views(self, connection_id: str) -> List[DatabaseView]:
        self.connections.get_config(connection_id)
        return self.store.list_views(connection_id)

    # =========================================================================
    # Versions
    # =========================================================================

    def list_versions(self, view_id: str) -> List[ViewVersion]:
        versions = self.versions.list_versions(view_id)
        if not versions and self.store.get_view(view_id) is None:
            raise ViewNotFoundError(f"view '{view_id}' not found", field="viewId")
        return versions

    def get_version(self, view_id: str, version: str) -> ViewVersion:
        return self.versions.get_version(view_id, version)

    # =========================================================================
    # Preview / estimate
    # =========================================================================

    def preview(
        self,
        connection_id: str,
        request: ViewPreviewRequest,
        timeout: Optional[float] = None,
    ) -> ViewPreviewResult:
        executor = PreviewExecutor(self.connections.pool(connection_id))
        if request.query_builder_config is not None:
            compiled = self.compile(request.query_builder_config)
            return executor.preview(compiled, limit=request.limit, timeout=timeout)
        if request.sql_definition is not None:
            return executor.preview_sql(request.sql_definition, limit=request.limit, timeout=timeout)
        raise ValidationError(
            "sqlDefinition or queryBuilderConfig is required",
            field="sqlDefinition",
        )

    def _compiled_for(self, view: DatabaseView) -> CompiledQuery:
        if view.query_builder_config is not None:
            return self.compile(view.query_builder_config)
        return CompiledQuery(sql=view.sql_definition)

    def refresh_metrics(self, view_id: str, timeout: Optional[float] = None) -> DatabaseView:
        """
        Estimate the view's plan and store the metrics.

        On EstimationError the previous metrics are left untouched and the
        error propagates.
        """
        view = self.get_view(view_id)
        estimator = PerformanceEstimator(self.connections.pool(view.connection_id))
        metrics = estimator.estimate(self._compiled_for(view), timeout=timeout)
        with self.versions.lock_for(view_id):
            return self.store.update_metrics(view_id, metrics)

    def _estimate_quietly(self, view: DatabaseView, compiled: CompiledQuery) -> DatabaseView:
        if not self.estimate_on_save:
            return view
        try:
            estimator = PerformanceEstimator(self.connections.pool(view.connection_id))
            metrics = estimator.estimate(compiled)
        except EstimationError as e:
            logger.warning(f"Estimate after save failed for view {view.id}: {e.message}")
            return view
        with self.versions.lock_for(view.id):
            return self.store.update_metrics(view.id, metrics)

    # =========================================================================
    # Dependencies
    # =========================================================================

    def dependents_of(self, name: str) -> List[DatabaseView]:
        """Views that read from ``name`` (bare names are taken as public.<name>)."""
        schema, rel = split_qualified(name)
        return self.store.find_dependents(f"{schema}.{rel}")

    def check_dependencies(self, view_id: str) -> List[ViewDependency]:
        """
        Return the view's dependencies, failing if a view dependency no longer resolves.

        Raises:
            ValidationError: with details.dangling listing the unresolved views
        """
        view = self.get_view(view_id)
        dependencies = self.store.get_dependencies(view_id)
        view_deps = [d for d in dependencies if d.dependency_type == DependencyType.VIEW]
        if not view_deps:
            return dependencies

        analyzer = self.analyzer_for(view.connection_id)
        dangling = []
        for dep in view_deps:
            schema, rel = split_qualified(dep.target)
            if analyzer.lookup(schema, rel) is None:
                dangling.append(dep.target)
        if dangling:
            raise ValidationError(
                f"view {view.qualified_name} depends on views that no longer exist",
                field="dependencies",
                details={"dangling": sorted(dangling)},
            )
        return dependencies

    # =========================================================================
    # Listeners
    # =========================================================================

    def add_listener(self, listener: ChangeListener) -> None:
        self.listeners.append(listener)

    def _notify(self, event: str, view: DatabaseView) -> None:
        for listener in self.listeners:
            try:
                listener(event, view)
            except Exception as e:
                logger.error(f"Listener failed for {event} on view {view.id}: {e}")
