"""
View metadata storage.

ViewStore is the interface the service and VersionManager write through.
InMemoryViewStore keeps everything in process memory (tests, local runs);
DatabaseViewStore in db_persistence.py is the SQLAlchemy-backed variant.

A save writes the view row, its new version record and its dependency rows
as one unit: either all of them are visible afterwards or none are.
"""

import threading
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional

from pgviews.core.errors import ValidationError, VersionConflictError, ViewNotFoundError
from pgviews.views.models import DatabaseView, PerformanceMetrics, ViewDependency, ViewVersion
from pgviews.utils.log_utils import get_logger

logger = get_logger(__name__)


class ViewStore(ABC):
    """Storage for views, their version history and their dependency edges."""

    # =========================================================================
    # Views
    # =========================================================================

    @abstractmethod
    def get_view(self, view_id: str) -> Optional[DatabaseView]:
        pass

    @abstractmethod
    def find_view(self, connection_id: str, schema: str, name: str) -> Optional[DatabaseView]:
        pass

    @abstractmethod
    def list_views(self, connection_id: Optional[str] = None) -> List[DatabaseView]:
        pass

    @abstractmethod
    def save(
        self,
        view: Optional[DatabaseView] = None,
        version: Optional[ViewVersion] = None,
        dependencies: Optional[Iterable[ViewDependency]] = None,
    ) -> None:
        """
        Atomically upsert ``view``, append ``version`` and replace the view's dependencies.

        ``dependencies=None`` leaves existing dependency rows untouched.

        Raises:
            VersionConflictError: ``version`` duplicates an existing (view_id, version)
            ValidationError: another view on the connection already has the name
        """
        pass

    @abstractmethod
    def update_metrics(self, view_id: str, metrics: PerformanceMetrics) -> DatabaseView:
        pass

    # =========================================================================
    # Versions
    # =========================================================================

    @abstractmethod
    def get_versions(self, view_id: str) -> List[ViewVersion]:
        """All versions of a view, in no particular order."""
        pass

    @abstractmethod
    def get_version(self, view_id: str, version: str) -> Optional[ViewVersion]:
        pass

    # =========================================================================
    # Dependencies
    # =========================================================================

    @abstractmethod
    def get_dependencies(self, view_id: str) -> List[ViewDependency]:
        pass

    @abstractmethod
    def find_dependents(self, target: str) -> List[DatabaseView]:
        """Views whose dependencies include ``target`` (a qualified name)."""
        pass


class InMemoryViewStore(ViewStore):
    """Thread-safe in-process store."""

    def __init__(self):
        self._lock = threading.RLock()
        self._views: Dict[str, DatabaseView] = {}
        self._versions: Dict[str, List[ViewVersion]] = {}
        self._dependencies: Dict[str, List[ViewDependency]] = {}

    def get_view(self, view_id: str) -> Optional[DatabaseView]:
        with self._lock:
            view = self._views.get(view_id)
            return view.model_copy(deep=True) if view else None

    def find_view(self, connection_id: str, schema: str, name: str) -> Optional[DatabaseView]:
        with self._lock:
            for view in self._views.values():
                if (view.connection_id, view.schema_name, view.name) == (connection_id, schema, name):
                    return view.model_copy(deep=True)
        return None

    def list_views(self, connection_id: Optional[str] = None) -> List[DatabaseView]:
        with self._lock:
            views = [
                v.model_copy(deep=True) for v in self._views.values()
                if connection_id is None or v.connection_id == connection_id
            ]
        return sorted(views, key=lambda v: (v.schema_name, v.name))

    def save(
        self,
        view: Optional[DatabaseView] = None,
        version: Optional[ViewVersion] = None,
        dependencies: Optional[Iterable[ViewDependency]] = None,
    ) -> None:
        deps = list(dependencies) if dependencies is not None else None
        with self._lock:
            # Validate everything before touching state.
            if version is not None:
                existing = self._versions.get(version.view_id, [])
                if any(v.version == version.version for v in existing):
                    raise VersionConflictError(
                        f"version {version.version} of view {version.view_id} already exists",
                        details={"viewId": version.view_id, "version": version.version},
                    )
            if view is not None:
                for other in self._views.values():
                    if other.id != view.id and (
                        other.connection_id, other.schema_name, other.name
                    ) == (view.connection_id, view.schema_name, view.name):
                        raise ValidationError(
                            f"view {view.qualified_name} already exists on connection {view.connection_id}",
                            field="name",
                        )

            if view is not None:
                self._views[view.id] = view.model_copy(deep=True)
            if version is not None:
                self._versions.setdefault(version.view_id, []).append(version)
            if deps is not None:
                owner = view.id if view is not None else (version.view_id if version else None)
                if owner is None:
                    raise ValidationError("dependencies require a view or a version to attach to")
                self._dependencies[owner] = deps

    def update_metrics(self, view_id: str, metrics: PerformanceMetrics) -> DatabaseView:
        with self._lock:
            view = self._views.get(view_id)
            if view is None:
                raise ViewNotFoundError(f"view '{view_id}' not found", field="viewId")
            updated = view.model_copy(update={"performance_metrics": metrics})
            self._views[view_id] = updated
            return updated.model_copy(deep=True)

    def get_versions(self, view_id: str) -> List[ViewVersion]:
        with self._lock:
            return list(self._versions.get(view_id, []))

    def get_version(self, view_id: str, version: str) -> Optional[ViewVersion]:
        with self._lock:
            for v in self._versions.get(view_id, []):
                if v.version == version:
                    return v
        return None

    def get_dependencies(self, view_id: str) -> List[ViewDependency]:
        with self._lock:
            return list(self._dependencies.get(view_id, []))

    def find_dependents(self, target: str) -> List[DatabaseView]:
        with self._lock:
            ids = [
                view_id for view_id, deps in self._dependencies.items()
                if any(d.target == target for d in deps)
            ]
            views = [self._views[i].model_copy(deep=True) for i in ids if i in self._views]
        return sorted(views, key=lambda v: (v.schema_name, v.name))
