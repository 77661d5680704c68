"""
Schema catalogs: answer "is schema.name a table, a view or a function?".

The dependency analyzer asks a catalog to classify every identifier it finds.
Identifiers no catalog recognizes are reported back as unresolved.
"""

import threading
import time
from abc import ABC, abstractmethod
from typing import Dict, Iterable, Optional, Tuple

import psycopg2

from pgviews.core.constants import CATALOG_CACHE_TTL, ESTIMATE_TIMEOUT
from pgviews.core.errors import ExecutionError
from pgviews.views.models import DependencyType
from pgviews.utils.log_utils import get_logger

logger = get_logger(__name__)

DEFAULT_SCHEMA = "public"

_Key = Tuple[str, str]


def split_qualified(name: str, default_schema: str = DEFAULT_SCHEMA) -> _Key:
    """'sales.orders' -> ('sales', 'orders'); 'orders' -> ('public', 'orders')."""
    if "." in name:
        schema, _, rel = name.partition(".")
        return schema, rel
    return default_schema, name


def qualify(schema: Optional[str], name: str, default_schema: str = DEFAULT_SCHEMA) -> str:
    return f"{schema or default_schema}.{name}"


class SchemaCatalog(ABC):
    """Classifies relation and function names on one connection."""

    @abstractmethod
    def classify(self, schema: str, name: str) -> Optional[DependencyType]:
        """Return the object kind, or None when the object is unknown."""
        pass


class StaticSchemaCatalog(SchemaCatalog):
    """Catalog backed by fixed name lists. Names may be bare (public) or schema-qualified."""

    def __init__(
        self,
        tables: Iterable[str] = (),
        views: Iterable[str] = (),
        functions: Iterable[str] = (),
    ):
        self._kinds: Dict[_Key, DependencyType] = {}
        for names, kind in (
            (tables, DependencyType.TABLE),
            (views, DependencyType.VIEW),
            (functions, DependencyType.FUNCTION),
        ):
            for name in names:
                self._kinds[split_qualified(name)] = kind

    def classify(self, schema: str, name: str) -> Optional[DependencyType]:
        return self._kinds.get((schema, name))


class OverlayCatalog(SchemaCatalog):
    """Managed views layered over another catalog; the managed names win."""

    def __init__(self, base: Optional[SchemaCatalog], views: Iterable[str] = ()):
        self.base = base
        self._views = {split_qualified(v) for v in views}

    def classify(self, schema: str, name: str) -> Optional[DependencyType]:
        if (schema, name) in self._views:
            return DependencyType.VIEW
        if self.base is None:
            return None
        return self.base.classify(schema, name)


class PostgresSchemaCatalog(SchemaCatalog):
    """
    Catalog read from pg_class / pg_proc on the target database.

    The snapshot is cached for CATALOG_CACHE_TTL seconds; a view created on the
    database a moment ago may be reported as unresolved until the next refresh.
    """

    _RELATIONS_SQL = """
        SELECT n.nspname, c.relname, c.relkind
        FROM pg_catalog.pg_class c
        JOIN pg_catalog.pg_namespace n ON n.oid = c.relnamespace
        WHERE c.relkind IN ('r', 'p', 'f', 'v', 'm')
          AND n.nspname NOT IN ('pg_catalog', 'information_schema')
          AND n.nspname NOT LIKE 'pg_toast%'
    """

    _FUNCTIONS_SQL = """
        SELECT DISTINCT n.nspname, p.proname
        FROM pg_catalog.pg_proc p
        JOIN pg_catalog.pg_namespace n ON n.oid = p.pronamespace
        WHERE n.nspname NOT IN ('pg_catalog', 'information_schema')
    """

    _VIEW_KINDS = ("v", "m")

    def __init__(self, pool, ttl: float = CATALOG_CACHE_TTL, timeout: Optional[float] = ESTIMATE_TIMEOUT):
        self.pool = pool
        self.ttl = ttl
        self.timeout = timeout
        self._kinds: Optional[Dict[_Key, DependencyType]] = None
        self._loaded_at = 0.0
        # last load failure, served until the TTL passes
        self._failure: Optional[ExecutionError] = None
        self._failed_at = 0.0
        self._lock = threading.Lock()

    def _load(self) -> Dict[_Key, DependencyType]:
        kinds: Dict[_Key, DependencyType] = {}
        try:
            with self.pool.connection(timeout=self.timeout) as conn:
                cursor = conn.cursor()
                try:
                    cursor.execute(self._FUNCTIONS_SQL)
                    for schema, name in cursor.fetchall():
                        kinds[(schema, name)] = DependencyType.FUNCTION
                    cursor.execute(self._RELATIONS_SQL)
                    for schema, name, relkind in cursor.fetchall():
                        kinds[(schema, name)] = (
                            DependencyType.VIEW if relkind in self._VIEW_KINDS else DependencyType.TABLE
                        )
                finally:
                    cursor.close()
                    conn.rollback()
        except psycopg2.Error as e:
            raise ExecutionError(
                "failed to read the schema catalog",
                details={"reason": str(e).strip()},
            ) from e
        logger.debug(f"Loaded {len(kinds)} catalog entries")
        return kinds

    def refresh(self) -> None:
        try:
            kinds = self._load()
        except ExecutionError as e:
            with self._lock:
                self._failure = e
                self._failed_at = time.monotonic()
            logger.warning(f"Schema catalog load failed, next attempt in {self.ttl:.0f}s: {e.message}")
            raise
        with self._lock:
            self._kinds = kinds
            self._loaded_at = time.monotonic()
            self._failure = None

    def classify(self, schema: str, name: str) -> Optional[DependencyType]:
        with self._lock:
            now = time.monotonic()
            if self._failure is not None and now - self._failed_at <= self.ttl:
                raise ExecutionError(self._failure.message, details=self._failure.details)
            stale = self._kinds is None or now - self._loaded_at > self.ttl
        if stale:
            self.refresh()
        with self._lock:
            return self._kinds.get((schema, name))
