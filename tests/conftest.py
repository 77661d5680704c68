"""Pytest configuration and fixtures."""

from contextlib import contextmanager

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from pgviews.views.connections import ConnectionConfig, ConnectionRegistry
from pgviews.views.db_persistence import DatabaseViewStore
from pgviews.views.persistence import InMemoryViewStore


# =============================================================================
# Fake psycopg2 objects
# =============================================================================

class FakeCursor:
    """Records statements; results come from the connection's responder."""

    def __init__(self, conn):
        self.conn = conn
        self.description = None
        self._rows = []

    def execute(self, sql, params=None):
        self.conn.executed.append((sql, params))
        if sql.startswith("SET "):
            return
        result = self.conn.responder(sql, params)
        self.description, self._rows = result if result else (None, [])

    def fetchall(self):
        return list(self._rows)

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def close(self):
        self.conn.cursors_closed += 1


class FakeConnection:
    def __init__(self, responder=None):
        self.responder = responder or (lambda sql, params: None)
        self.executed = []
        self.rollbacks = 0
        self.cursors_closed = 0
        self.cancelled = False
        self.closed = 0

    def cursor(self):
        return FakeCursor(self)

    def rollback(self):
        self.rollbacks += 1

    def cancel(self):
        self.cancelled = True

    def close(self):
        self.closed = 1

    @property
    def statements(self):
        return [sql for sql, _ in self.executed]


class FakePool:
    """Stands in for ConnectionPool: one shared connection, records timeouts."""

    def __init__(self, responder=None):
        self.conn = FakeConnection(responder)
        self.timeouts = []

    @contextmanager
    def connection(self, timeout=None):
        self.timeouts.append(timeout)
        yield self.conn

    def close(self):
        pass


class FakeThreadedPool:
    """Stands in for psycopg2.pool.ThreadedConnectionPool."""

    def __init__(self, minconn, maxconn, **params):
        self.minconn = minconn
        self.maxconn = maxconn
        self.params = params
        self.out = []
        self.returned = []
        self.closed_all = False

    def getconn(self):
        conn = FakeConnection()
        self.out.append(conn)
        return conn

    def putconn(self, conn, close=False):
        self.returned.append((conn, close))

    def closeall(self):
        self.closed_all = True


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def memory_store():
    return InMemoryViewStore()


@pytest.fixture
def db_store():
    """DatabaseViewStore on an in-memory SQLite database."""
    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    store = DatabaseViewStore(engine=engine)
    store.create_tables()
    yield store
    store.drop_tables()


@pytest.fixture
def fake_pool():
    return FakePool()


@pytest.fixture
def registry(fake_pool):
    """Registry with one connection ('warehouse') whose pool is the fake pool."""
    config = ConnectionConfig(database="warehouse", username="reader")
    return ConnectionRegistry({"warehouse": config}, pool_factory=lambda cid, cfg: fake_pool)
