from contextlib import asynccontextmanager

import asyncpg
import pytest

from goodcoin_service.config import Settings
from goodcoin_service.domain.exceptions import AccountNotFoundError, ConcurrentUpdateError
from goodcoin_service.infrastructure.database.connection import Database


class _FakeTransaction:
    def __init__(self, conn: "_FakeConnection") -> None:
        self.conn = conn

    async def __aenter__(self):
        self.conn.begun += 1
        return self

    async def __aexit__(self, exc_type, exc, tb):
        if exc_type is not None:
            self.conn.rolled_back += 1
        return False


class _FakeConnection:
    def __init__(self) -> None:
        self.begun = 0
        self.rolled_back = 0
        self.isolation = []

    def transaction(self, isolation=None):
        self.isolation.append(isolation)
        return _FakeTransaction(self)


class _FakePool:
    def __init__(self) -> None:
        self.conn = _FakeConnection()

    @asynccontextmanager
    async def acquire(self):
        yield self.conn


def _database(**overrides) -> Database:
    db = Database(Settings(**overrides))
    db.pool = _FakePool()
    return db


def _failing(errors, result="done"):
    calls = []

    async def body(conn):
        calls.append(conn)
        if len(calls) <= len(errors):
            raise errors[len(calls) - 1]
        return result

    return body, calls


@pytest.mark.asyncio
async def test_serialization_failure_is_retried():
    db = _database()
    body, calls = _failing([asyncpg.exceptions.SerializationError("conflict")])

    assert await db.run_in_transaction(body) == "done"
    assert len(calls) == 2
    assert db.pool.conn.rolled_back == 1
    assert db.pool.conn.isolation == ["serializable", "serializable"]


@pytest.mark.asyncio
async def test_gives_up_after_max_retries():
    db = _database()
    errors = [asyncpg.exceptions.DeadlockDetectedError("deadlock") for _ in range(5)]
    body, calls = _failing(errors)

    with pytest.raises(ConcurrentUpdateError):
        await db.run_in_transaction(body, max_retries=3)
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_retry_limit_comes_from_settings():
    db = _database(LEDGER_MAX_RETRIES=2)
    errors = [asyncpg.exceptions.SerializationError("conflict") for _ in range(5)]
    body, calls = _failing(errors)

    with pytest.raises(ConcurrentUpdateError):
        await db.run_in_transaction(body)
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_domain_errors_are_not_retried():
    db = _database()
    body, calls = _failing([AccountNotFoundError("ghost")])

    with pytest.raises(AccountNotFoundError):
        await db.run_in_transaction(body, isolation="read_committed")
    assert len(calls) == 1
    assert db.pool.conn.rolled_back == 1
    assert db.pool.conn.isolation == ["read_committed"]
