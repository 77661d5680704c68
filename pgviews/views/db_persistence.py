"""
Database persistence for view metadata.

Provides:
- Session management (one transaction per store call)
- Atomic view + version + dependency writes
- Conversion between ORM rows and domain models
"""

from contextlib import contextmanager
from typing import Generator, Iterable, List, Optional

from sqlalchemy import create_engine, or_, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from pgviews.core.constants import DATABASE_URL, utc_now
from pgviews.core.errors import ValidationError, VersionConflictError, ViewNotFoundError
from pgviews.views.db_models import Base, DatabaseViewDB, ViewDependencyDB, ViewVersionDB
from pgviews.views.models import (
    DatabaseView,
    DependencyType,
    PerformanceMetrics,
    QueryBuilderConfig,
    ViewDependency,
    ViewVersion,
)
from pgviews.views.persistence import ViewStore
from pgviews.views.versions import parse_version
from pgviews.utils.log_utils import get_logger

logger = get_logger(__name__)


class DatabaseViewStore(ViewStore):
    """SQLAlchemy-backed ViewStore."""

    def __init__(
        self,
        database_url: Optional[str] = None,
        engine: Optional[Engine] = None,
        echo: bool = False,
    ):
        """
        Args:
            database_url: SQLAlchemy URL; defaults to PGVIEWS_DATABASE_URL
            engine: pre-built engine (takes precedence over database_url)
            echo: If True, log all SQL statements
        """
        if engine is None:
            url = database_url or DATABASE_URL
            if not url:
                raise ValidationError("no database URL configured for the view store")
            engine = create_engine(url, echo=echo, pool_pre_ping=True)
        self.engine = engine
        self.SessionLocal = sessionmaker(bind=self.engine, autocommit=False, autoflush=False)

    def create_tables(self) -> None:
        Base.metadata.create_all(self.engine)

    def drop_tables(self) -> None:
        """Drop all tables (for testing only)."""
        Base.metadata.drop_all(self.engine)

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        """Provide a transactional scope around a series of operations."""
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # =========================================================================
    # Views
    # =========================================================================

    def get_view(self, view_id: str) -> Optional[DatabaseView]:
        with self.session_scope() as session:
            row = session.get(DatabaseViewDB, view_id)
            return self._view_from_db(row) if row else None

    def find_view(self, connection_id: str, schema: str, name: str) -> Optional[DatabaseView]:
        with self.session_scope() as session:
            row = session.query(DatabaseViewDB).filter(
                DatabaseViewDB.connection_id == connection_id,
                DatabaseViewDB.schema_name == schema,
                DatabaseViewDB.name == name,
            ).first()
            return self._view_from_db(row) if row else None

    def list_views(self, connection_id: Optional[str] = None) -> List[DatabaseView]:
        with self.session_scope() as session:
            query = session.query(DatabaseViewDB)
            if connection_id is not None:
                query = query.filter(DatabaseViewDB.connection_id == connection_id)
            rows = query.order_by(DatabaseViewDB.schema_name, DatabaseViewDB.name).all()
            return [self._view_from_db(row) for row in rows]

    def save(
        self,
        view: Optional[DatabaseView] = None,
        version: Optional[ViewVersion] = None,
        dependencies: Optional[Iterable[ViewDependency]] = None,
    ) -> None:
        deps = list(dependencies) if dependencies is not None else None
        owner = view.id if view is not None else (version.view_id if version is not None else None)
        if deps is not None and owner is None:
            raise ValidationError("dependencies require a view or a version to attach to")

        try:
            with self.session_scope() as session:
                if view is not None:
                    row = session.get(DatabaseViewDB, view.id)
                    if row is None:
                        row = DatabaseViewDB(id=view.id)
                        session.add(row)
                    self._apply_view(row, view)

                if version is not None:
                    major, minor = parse_version(version.version)
                    session.add(ViewVersionDB(
                        id=version.id,
                        view_id=version.view_id,
                        version=version.version,
                        major=major,
                        minor=minor,
                        sql_definition=version.sql_definition,
                        change_notes=version.change_notes,
                        created_by=version.created_by,
                        created_at=version.created_at,
                    ))

                if deps is not None:
                    session.query(ViewDependencyDB).filter(
                        ViewDependencyDB.view_id == owner
                    ).delete(synchronize_session=False)
                    session.add_all([
                        ViewDependencyDB(
                            view_id=owner,
                            depends_on_table=d.depends_on_table,
                            depends_on_view=d.depends_on_view,
                            dependency_type=d.dependency_type.value,
                        )
                        for d in deps
                    ])
                session.flush()
        except IntegrityError as e:
            message = str(e.orig)
            if version is not None and ("uq_view_version" in message or "view_versions." in message):
                raise VersionConflictError(
                    f"version {version.version} of view {version.view_id} already exists",
                    details={"viewId": version.view_id, "version": version.version},
                ) from e
            logger.warning(f"Integrity error saving view {owner}: {message}")
            raise ValidationError(
                "view could not be saved: a view with this name already exists on the connection",
                field="name",
            ) from e

    def update_metrics(self, view_id: str, metrics: PerformanceMetrics) -> DatabaseView:
        with self.session_scope() as session:
            row = session.get(DatabaseViewDB, view_id)
            if row is None:
                raise ViewNotFoundError(f"view '{view_id}' not found", field="viewId")
            row.performance_metrics_json = metrics.to_json_dict()
            session.flush()
            return self._view_from_db(row)

    # =========================================================================
    # Versions
    # =========================================================================

    def get_versions(self, view_id: str) -> List[ViewVersion]:
        with self.session_scope() as session:
            rows = session.query(ViewVersionDB).filter(
                ViewVersionDB.view_id == view_id
            ).order_by(ViewVersionDB.major.desc(), ViewVersionDB.minor.desc()).all()
            return [self._version_from_db(row) for row in rows]

    def get_version(self, view_id: str, version: str) -> Optional[ViewVersion]:
        with self.session_scope() as session:
            row = session.query(ViewVersionDB).filter(
                ViewVersionDB.view_id == view_id,
                ViewVersionDB.version == version,
            ).first()
            return self._version_from_db(row) if row else None

    # =========================================================================
    # Dependencies
    # =========================================================================

    def get_dependencies(self, view_id: str) -> List[ViewDependency]:
        with self.session_scope() as session:
            rows = session.query(ViewDependencyDB).filter(
                ViewDependencyDB.view_id == view_id
            ).order_by(ViewDependencyDB.id).all()
            return [self._dependency_from_db(row) for row in rows]

    def find_dependents(self, target: str) -> List[DatabaseView]:
        with self.session_scope() as session:
            view_ids = select(ViewDependencyDB.view_id).where(
                or_(
                    ViewDependencyDB.depends_on_table == target,
                    ViewDependencyDB.depends_on_view == target,
                )
            )
            rows = session.query(DatabaseViewDB).filter(
                DatabaseViewDB.id.in_(view_ids)
            ).order_by(DatabaseViewDB.schema_name, DatabaseViewDB.name).all()
            return [self._view_from_db(row) for row in rows]

    # =========================================================================
    # Conversion Helpers
    # =========================================================================

    def _apply_view(self, row: DatabaseViewDB, view: DatabaseView) -> None:
        now = utc_now()
        row.connection_id = view.connection_id
        row.name = view.name
        row.schema_name = view.schema_name
        row.description = view.description
        row.sql_definition = view.sql_definition
        row.query_builder_config_json = (
            view.query_builder_config.to_json_dict()
            if view.query_builder_config else None
        )
        row.dependencies_json = list(view.dependencies)
        row.performance_metrics_json = (
            view.performance_metrics.to_json_dict()
            if view.performance_metrics else None
        )
        row.created_by = view.created_by
        row.created_at = view.created_at or row.created_at or now
        row.updated_at = view.updated_at or now

    def _view_from_db(self, row: DatabaseViewDB) -> DatabaseView:
        return DatabaseView(
            id=row.id,
            connection_id=row.connection_id,
            name=row.name,
            schema_name=row.schema_name,
            description=row.description,
            sql_definition=row.sql_definition,
            query_builder_config=(
                QueryBuilderConfig.model_validate(row.query_builder_config_json)
                if row.query_builder_config_json else None
            ),
            dependencies=list(row.dependencies_json or []),
            performance_metrics=(
                PerformanceMetrics.model_validate(row.performance_metrics_json)
                if row.performance_metrics_json else None
            ),
            created_by=row.created_by,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    def _version_from_db(self, row: ViewVersionDB) -> ViewVersion:
        return ViewVersion(
            id=row.id,
            view_id=row.view_id,
            version=row.version,
            sql_definition=row.sql_definition,
            change_notes=row.change_notes,
            created_by=row.created_by,
            created_at=row.created_at,
        )

    def _dependency_from_db(self, row: ViewDependencyDB) -> ViewDependency:
        return ViewDependency(
            view_id=row.view_id,
            depends_on_table=row.depends_on_table,
            depends_on_view=row.depends_on_view,
            dependency_type=DependencyType(row.dependency_type),
        )
