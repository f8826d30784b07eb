"""Shared fakes for handler tests that never touch a real database."""

from unittest.mock import AsyncMock, MagicMock

import pytest


class FakeTransaction:
    """Mimics psycopg's async transaction context manager.

    Records the nesting depth at entry on the owning connection: depth 0 is a
    real transaction that commits on exit, anything deeper is a savepoint.
    """

    def __init__(self, conn=None):
        self._conn = conn

    async def __aenter__(self):
        if self._conn is not None:
            self._conn.transaction_depths.append(self._conn.open_transactions)
            self._conn.open_transactions += 1
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self._conn is not None:
            self._conn.open_transactions -= 1
        return False  # don't suppress exceptions


class FakeCursor:
    """Async cursor whose fetch results are queued up front.

    Every ``execute`` is recorded on ``executed`` as (sql, params). When the
    queues run dry ``fetchone`` returns None and ``fetchall`` an empty list.
    """

    def __init__(self):
        self.executed: list[tuple[str, object]] = []
        self.one_results: list[object] = []
        self.all_results: list[list[object]] = []
        self.rowcount = 0
        self.execute = AsyncMock(side_effect=self._record)
        self.fetchone = AsyncMock(side_effect=self._next_one)
        self.fetchall = AsyncMock(side_effect=self._next_all)

    async def _record(self, sql, params=None):
        self.executed.append((sql, params))

    async def _next_one(self):
        return self.one_results.pop(0) if self.one_results else None

    async def _next_all(self):
        return self.all_results.pop(0) if self.all_results else []

    def statements(self, fragment: str) -> list[tuple[str, object]]:
        return [(sql, params) for sql, params in self.executed if fragment in sql]

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return False


def make_fake_conn() -> AsyncMock:
    conn = AsyncMock()
    conn.open_transactions = 0
    conn.transaction_depths = []
    conn.transaction = MagicMock(side_effect=lambda *a, **kw: FakeTransaction(conn))
    fake_cursor = FakeCursor()
    conn.cursor = MagicMock(return_value=fake_cursor)
    conn.execute = AsyncMock(side_effect=fake_cursor._record)
    conn._fake_cursor = fake_cursor  # expose for assertions
    return conn


@pytest.fixture
def fake_conn():
    """Mock async connection with transaction and cursor support."""
    return make_fake_conn()
