"""
Version Manager - append-only history of view definitions.

Labels are MAJOR.MINOR. The first version of a view is 1.0 and every
definition change bumps the minor number (1.9 -> 1.10). Version assignment
for one view is serialized so two concurrent saves never get the same label.
"""

import threading
import uuid
from typing import Dict, Iterable, List, Optional, Tuple

from pgviews.core.constants import INITIAL_VERSION, utc_now
from pgviews.core.errors import ValidationError, ViewNotFoundError
from pgviews.views.models import DatabaseView, ViewDependency, ViewVersion
from pgviews.views.persistence import ViewStore
from pgviews.utils.log_utils import get_logger

logger = get_logger(__name__)


def parse_version(label: str) -> Tuple[int, int]:
    """'1.10' -> (1, 10)."""
    major, sep, minor = (label or "").partition(".")
    if not sep or not major.isdigit() or not minor.isdigit():
        raise ValidationError(f"invalid version label '{label}'", field="version")
    return int(major), int(minor)


def next_version(previous: Optional[str]) -> str:
    if previous is None:
        return INITIAL_VERSION
    major, minor = parse_version(previous)
    return f"{major}.{minor + 1}"


class VersionManager:
    """
    Records and reads view versions through a ViewStore.

    The per-view lock only covers this process; the store's unique
    (view_id, version) constraint rejects any collision across processes.
    """

    def __init__(self, store: ViewStore):
        self.store = store
        self._locks: Dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    def lock_for(self, view_id: str) -> threading.RLock:
        """
        Re-entrant lock serializing writes to one view.

        Callers that read a view and write it back hold it across both steps.
        """
        with self._locks_guard:
            lock = self._locks.get(view_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[view_id] = lock
            return lock

    def record_version(
        self,
        view_id: str,
        sql_definition: str,
        actor: str,
        change_notes: Optional[str] = None,
        view: Optional[DatabaseView] = None,
        dependencies: Optional[Iterable[ViewDependency]] = None,
    ) -> ViewVersion:
        """
        Append the next version of a view.

        When ``view`` / ``dependencies`` are given they are written in the same
        store transaction as the version record.
        """
        with self.lock_for(view_id):
            latest = self.latest_version(view_id)
            version = ViewVersion(
                id=str(uuid.uuid4()),
                view_id=view_id,
                version=next_version(latest.version if latest else None),
                sql_definition=sql_definition,
                change_notes=change_notes,
                created_by=actor,
                created_at=utc_now(),
            )
            self.store.save(view=view, version=version, dependencies=dependencies)

        logger.info(f"Recorded version {version.version} of view {view_id} by {actor}")
        return version

    def list_versions(self, view_id: str) -> List[ViewVersion]:
        """Newest first."""
        versions = self.store.get_versions(view_id)
        return sorted(versions, key=lambda v: parse_version(v.version), reverse=True)

    def latest_version(self, view_id: str) -> Optional[ViewVersion]:
        versions = self.list_versions(view_id)
        return versions[0] if versions else None

    def get_version(self, view_id: str, version: str) -> ViewVersion:
        parse_version(version)
        found = self.store.get_version(view_id, version)
        if found is None:
            raise ViewNotFoundError(
                f"version {version} of view '{view_id}' not found",
                field="version",
            )
        return found
