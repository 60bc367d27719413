"""
Recording fakes of the SQLAlchemy async engine and connection.

Every statement is kept as text so tests can assert on the SQL that would
reach PostgreSQL.
"""

import asyncio
from contextlib import asynccontextmanager
from types import SimpleNamespace
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.exc import ProgrammingError


def row(**fields) -> SimpleNamespace:
    """Result row with attribute access, like SQLAlchemy's Row."""
    return SimpleNamespace(**fields)


class FakeResult:
    """Minimal stand-in for a SQLAlchemy Result."""

    def __init__(self, rows: Optional[List[Any]] = None, scalar: Any = None):
        self._rows = rows or []
        self._scalar = scalar

    def scalar(self):
        return self._scalar

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


class FakeTransaction:
    def __init__(self, conn: "FakeConnection", nested: bool = False):
        self.conn = conn
        self.nested = nested

    async def __aenter__(self):
        self.conn.transactions += 1
        return self

    async def __aexit__(self, exc_type, exc, tb):
        if exc_type is None:
            if not self.nested:
                await self.conn.commit()
        else:
            self.conn.rollbacks += 1
        return False


class FakeConnection:
    """
    Records every statement.

    Args:
        responder: Called with (sql, params); returns a FakeResult or None
        fail_on: Statements containing this text raise ProgrammingError
    """

    def __init__(
        self,
        responder: Optional[Callable[[str, Optional[Dict]], Optional[FakeResult]]] = None,
        fail_on: Optional[str] = None,
    ):
        self.responder = responder
        self.fail_on = fail_on
        self.statements: List[str] = []
        self.params: List[Optional[Dict]] = []
        self.commits = 0
        self.rollbacks = 0
        self.transactions = 0

    async def execute(self, statement, params=None):
        return self._run(str(statement), params)

    async def exec_driver_sql(self, statement, params=None):
        return self._run(statement, params)

    async def commit(self):
        self.commits += 1

    async def rollback(self):
        self.rollbacks += 1

    def begin(self):
        return FakeTransaction(self)

    def begin_nested(self):
        return FakeTransaction(self, nested=True)

    def _run(self, sql: str, params: Optional[Dict]) -> FakeResult:
        self.statements.append(sql)
        self.params.append(params)
        if self.fail_on and self.fail_on in sql:
            raise ProgrammingError(sql, params, Exception("simulated failure"))
        if self.responder is not None:
            result = self.responder(sql, params)
            if result is not None:
                return result
        return FakeResult()

    def executed(self, fragment: str) -> List[str]:
        """Statements containing ``fragment``."""
        return [sql for sql in self.statements if fragment in sql]


class FakeEngine:
    """Hands out FakeConnections and keeps them for inspection."""

    def __init__(self, **connection_kwargs):
        self.connection_kwargs = connection_kwargs
        self.connections: List[FakeConnection] = []
        self.disposed = False

    def _new_connection(self) -> FakeConnection:
        conn = FakeConnection(**self.connection_kwargs)
        self.connections.append(conn)
        return conn

    @asynccontextmanager
    async def connect(self):
        yield self._new_connection()

    @asynccontextmanager
    async def begin(self):
        conn = self._new_connection()
        async with conn.begin():
            yield conn

    async def dispose(self):
        self.disposed = True

    @property
    def statements(self) -> List[str]:
        return [sql for conn in self.connections for sql in conn.statements]

    def executed(self, fragment: str) -> List[str]:
        return [sql for sql in self.statements if fragment in sql]


class FakeLock:
    """In-process lock keyed by plugin name, standing in for advisory locks."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self.acquired: List[str] = []
        self.released: List[str] = []

    async def acquire(self, conn, plugin_name: str) -> bool:
        lock = self._locks.setdefault(plugin_name, asyncio.Lock())
        await lock.acquire()
        self.acquired.append(plugin_name)
        return True

    async def release(self, conn, plugin_name: str) -> None:
        self.released.append(plugin_name)
        self._locks[plugin_name].release()
