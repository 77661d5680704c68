"""
Connection configuration and bounded connection pools for target databases.

Each managed connection gets one ConnectionPool sized from its pooling config.
Callers block (up to their timeout) when every connection is checked out
instead of opening more.
"""

import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, Optional, Union

import psycopg2
from psycopg2 import pool as pg_pool
import yaml
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential
from pydantic import Field

from pgviews.core.constants import (
    DB_CONNECT_TIMEOUT,
    POOL_CONNECT_RETRIES,
    POOL_IDLE_TIMEOUT_MS,
    POOL_MAX_CONN,
    POOL_MIN_CONN,
)
from pgviews.core.errors import ExecutionError, ExecutionTimeoutError, ViewNotFoundError
from pgviews.domain.base import CamelCaseModel
from pgviews.utils.log_utils import get_logger

logger = get_logger(__name__)

# Extra time granted to the server-side statement_timeout before the client
# cancels the statement itself.
CANCEL_GRACE_SECONDS = 2.0


class PoolingConfig(CamelCaseModel):
    min: int = Field(default=POOL_MIN_CONN, ge=0)
    max: int = Field(default=POOL_MAX_CONN, ge=1)
    idle_timeout_millis: int = Field(default=POOL_IDLE_TIMEOUT_MS, ge=0)


class SSLConfig(CamelCaseModel):
    enabled: bool = False
    reject_unauthorized: bool = True
    ca: Optional[str] = None
    cert: Optional[str] = None
    key: Optional[str] = None


class ConnectionConfig(CamelCaseModel):
    """Decrypted PostgreSQL connection settings for one managed connection."""
    host: str = "localhost"
    port: int = 5432
    database: str
    username: str
    password: str = ""
    ssl: Optional[SSLConfig] = None
    pooling: PoolingConfig = Field(default_factory=PoolingConfig)

    def to_connection_params(self) -> Dict[str, Any]:
        """Convert to psycopg2 connection parameters."""
        params: Dict[str, Any] = {
            "host": self.host,
            "port": self.port,
            "dbname": self.database,
            "user": self.username,
            "password": self.password,
            "connect_timeout": DB_CONNECT_TIMEOUT,
            "application_name": "pgviews",
        }
        if self.ssl and self.ssl.enabled:
            params["sslmode"] = "verify-full" if self.ssl.reject_unauthorized else "require"
            if self.ssl.ca:
                params["sslrootcert"] = self.ssl.ca
            if self.ssl.cert:
                params["sslcert"] = self.ssl.cert
            if self.ssl.key:
                params["sslkey"] = self.ssl.key
        return params


class ConnectionPool:
    """
    Bounded, thread-safe psycopg2 pool for one target database.

    - At most ``pooling.max`` connections are ever open
    - Connections idle longer than ``pooling.idle_timeout_millis`` are recycled
    - Broken connections are discarded instead of returned
    """

    def __init__(
        self,
        connection_id: str,
        config: ConnectionConfig,
        pool_factory: Optional[Callable[..., Any]] = None,
        connect_retries: int = POOL_CONNECT_RETRIES,
    ):
        self.connection_id = connection_id
        self.config = config
        self.connect_retries = max(1, connect_retries)
        self._pool_factory = pool_factory or pg_pool.ThreadedConnectionPool
        self._pool = None
        self._lock = threading.Lock()
        self._slots = threading.BoundedSemaphore(config.pooling.max)
        self._last_used: Dict[int, float] = {}

    @property
    def max_size(self) -> int:
        return self.config.pooling.max

    def _ensure_pool(self):
        with self._lock:
            if self._pool is not None:
                return self._pool
            pooling = self.config.pooling
            try:
                self._pool = self._create_pool()
            except psycopg2.Error as e:
                logger.error(f"Failed to initialize pool for connection {self.connection_id}: {e}")
                raise ExecutionError(
                    f"could not connect to connection '{self.connection_id}'",
                    details={"reason": str(e).strip()},
                ) from e
            logger.info(
                f"Connection pool initialized for {self.connection_id} "
                f"(min={pooling.min}, max={pooling.max})"
            )
            return self._pool

    def _create_pool(self):
        """Create the driver pool, retrying transient connection failures."""
        pooling = self.config.pooling

        @retry(
            stop=stop_after_attempt(self.connect_retries),
            wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
            retry=retry_if_exception_type(psycopg2.OperationalError),
            before_sleep=lambda retry_state: logger.warning(
                f"Connecting to {self.connection_id} failed, retrying in "
                f"{retry_state.next_action.sleep:.1f}s... "
                f"(attempt {retry_state.attempt_number}/{self.connect_retries})"
            ),
            reraise=True,
        )
        def _do_create():
            return self._pool_factory(
                min(pooling.min, pooling.max),
                pooling.max,
                **self.config.to_connection_params(),
            )

        return _do_create()

    def _checkout(self, pool):
        conn = pool.getconn()
        idle_limit = self.config.pooling.idle_timeout_millis / 1000.0
        last_used = self._last_used.get(id(conn))
        expired = (
            idle_limit > 0
            and last_used is not None
            and time.monotonic() - last_used > idle_limit
        )
        if conn.closed or expired:
            self._last_used.pop(id(conn), None)
            pool.putconn(conn, close=True)
            conn = pool.getconn()
        return conn

    def _release(self, pool, conn, discard: bool) -> None:
        close = discard or bool(conn.closed)
        if close:
            self._last_used.pop(id(conn), None)
        else:
            self._last_used[id(conn)] = time.monotonic()
        try:
            pool.putconn(conn, close=close)
        except psycopg2.Error as e:
            logger.warning(f"Error returning connection to pool {self.connection_id}: {e}")

    @contextmanager
    def connection(self, timeout: Optional[float] = None) -> Iterator[Any]:
        """
        Check out a connection, waiting at most ``timeout`` seconds for a free slot.

        Raises:
            ExecutionTimeoutError: if no connection frees up in time
            ExecutionError: if the pool cannot be created
        """
        if not self._slots.acquire(timeout=timeout):
            raise ExecutionTimeoutError(
                f"timed out waiting for a connection to '{self.connection_id}'",
                details={"pool_size": self.max_size},
            )
        pool = None
        conn = None
        discard = False
        try:
            pool = self._ensure_pool()
            try:
                conn = self._checkout(pool)
            except psycopg2.Error as e:
                raise ExecutionError(
                    f"could not open a connection to '{self.connection_id}'",
                    details={"reason": str(e).strip()},
                ) from e
            yield conn
        except (psycopg2.InterfaceError, psycopg2.OperationalError):
            discard = True
            raise
        finally:
            if pool is not None and conn is not None:
                self._release(pool, conn, discard)
            self._slots.release()

    def close(self) -> None:
        with self._lock:
            if self._pool is not None:
                self._pool.closeall()
                self._pool = None
                self._last_used.clear()
                logger.info(f"Closed connection pool {self.connection_id}")


@contextmanager
def read_only_cursor(conn, timeout: Optional[float] = None) -> Iterator[Any]:
    """
    Cursor inside a READ ONLY transaction that is always rolled back.

    ``timeout`` becomes a server-side statement_timeout so the backend aborts
    the statement itself; a client-side cancel fires shortly after as a
    backstop for unresponsive servers.
    """
    timer = None
    cursor = conn.cursor()
    try:
        cursor.execute("SET TRANSACTION READ ONLY")
        if timeout:
            cursor.execute("SET LOCAL statement_timeout = %s", (int(timeout * 1000),))
            timer = threading.Timer(timeout + CANCEL_GRACE_SECONDS, conn.cancel)
            timer.daemon = True
            timer.start()
        yield cursor
    finally:
        if timer is not None:
            timer.cancel()
        try:
            cursor.close()
        finally:
            try:
                conn.rollback()
            except psycopg2.Error as e:
                logger.warning(f"Rollback failed, connection will be discarded: {e}")
                conn.close()


class ConnectionRegistry:
    """
    Known target connections and their lazily created pools and catalogs.

    Constructed explicitly and passed to the ViewService; there is no
    module-level registry.
    """

    def __init__(
        self,
        configs: Optional[Dict[str, ConnectionConfig]] = None,
        pool_factory: Optional[Callable[[str, ConnectionConfig], Any]] = None,
    ):
        self._configs: Dict[str, ConnectionConfig] = dict(configs or {})
        self._pool_factory = pool_factory or ConnectionPool
        self._pools: Dict[str, Any] = {}
        self._catalogs: Dict[str, Any] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "ConnectionRegistry":
        """
        Load connections from a YAML file of the form::

            connections:
              analytics:
                host: db.internal
                database: analytics
                username: reader
                pooling: {min: 1, max: 5, idleTimeoutMillis: 30000}
        """
        path = Path(path)
        if not path.exists():
            logger.warning(f"Connections file not found: {path}")
            return cls()
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
        configs = {
            str(connection_id): ConnectionConfig.model_validate(raw or {})
            for connection_id, raw in (data.get("connections") or {}).items()
        }
        logger.info(f"Loaded {len(configs)} connection(s) from {path}")
        return cls(configs)

    def register(self, connection_id: str, config: ConnectionConfig) -> None:
        with self._lock:
            self._configs[connection_id] = config
            old = self._pools.pop(connection_id, None)
            self._catalogs.pop(connection_id, None)
        if old is not None:
            old.close()

    def has(self, connection_id: str) -> bool:
        return connection_id in self._configs

    def connection_ids(self):
        return sorted(self._configs)

    def get_config(self, connection_id: str) -> ConnectionConfig:
        config = self._configs.get(connection_id)
        if config is None:
            raise ViewNotFoundError(
                f"connection '{connection_id}' not found",
                field="connectionId",
            )
        return config

    def pool(self, connection_id: str):
        config = self.get_config(connection_id)
        with self._lock:
            existing = self._pools.get(connection_id)
            if existing is None:
                existing = self._pool_factory(connection_id, config)
                self._pools[connection_id] = existing
            return existing

    def catalog(self, connection_id: str):
        from pgviews.views.catalog import PostgresSchemaCatalog

        pool = self.pool(connection_id)
        with self._lock:
            existing = self._catalogs.get(connection_id)
            if existing is None:
                existing = PostgresSchemaCatalog(pool)
                self._catalogs[connection_id] = existing
            return existing

    def close_all(self) -> None:
        with self._lock:
            pools = list(self._pools.values())
            self._pools.clear()
            self._catalogs.clear()
        for p in pools:
            p.close()
