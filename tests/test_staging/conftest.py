"""
Pytest configuration and fixtures for staging queue tests.
"""

import os
from typing import List

import pytest
from sqlalchemy.exc import IntegrityError

from doc_stage.errors import TransactionAbortedError
from doc_stage.staging.chunk_manager import DocumentChunkManager
from doc_stage.staging.retry import RetryPolicy, constant_backoff
from doc_stage.store.sqlalchemy_store import SQLAlchemyStore

HOST = "search.example.com"
PATH = "/2013-01-01"


class FlakyStore(SQLAlchemyStore):
    """
    SQLite store that aborts the first N row-lock queries, the way a
    deadlocked database would.
    """

    def __init__(self, url: str, aborts: int = 1, **kwargs):
        super().__init__(url, **kwargs)
        self.aborts_remaining = aborts
        self.lock_queries = 0
        self.transactions = 0

    def transaction(self):
        self.transactions += 1
        return super().transaction()

    def select(self, table, where, columns=None, limit=None, for_update=False):
        if for_update:
            self.lock_queries += 1
            if self.aborts_remaining > 0:
                self.aborts_remaining -= 1
                raise TransactionAbortedError("deadlock detected")
        return super().select(table, where, columns=columns, limit=limit, for_update=for_update)


class FailingDeleteStore(SQLAlchemyStore):
    """SQLite store whose Nth delete raises a non-transient error."""

    def __init__(self, url: str, fail_on: int, **kwargs):
        super().__init__(url, **kwargs)
        self.fail_on = fail_on
        self.deletes = 0

    def delete(self, table, where):
        self.deletes += 1
        if self.deletes == self.fail_on:
            raise RuntimeError("connection lost")
        return super().delete(table, where)


class AbortingDeleteStore(SQLAlchemyStore):
    """SQLite store whose Nth delete is aborted as a deadlock victim."""

    def __init__(self, url: str, abort_on: int, **kwargs):
        super().__init__(url, **kwargs)
        self.abort_on = abort_on
        self.deletes = 0

    def delete(self, table, where):
        self.deletes += 1
        if self.deletes == self.abort_on:
            raise TransactionAbortedError("deadlock detected")
        return super().delete(table, where)


class RacingInsertStore(SQLAlchemyStore):
    """SQLite store whose first insert fails as if another writer got there first."""

    def __init__(self, url: str, **kwargs):
        super().__init__(url, **kwargs)
        self.inserts = 0

    def insert(self, table, values):
        self.inserts += 1
        if self.inserts == 1:
            raise IntegrityError("INSERT", values, Exception("UNIQUE constraint failed"))
        return super().insert(table, values)


@pytest.fixture
def db_url(tmp_path) -> str:
    return f"sqlite:///{tmp_path / 'stage.db'}"


@pytest.fixture
def sleeps() -> List[float]:
    """Records backoff delays instead of sleeping."""
    return []


@pytest.fixture
def fast_policy(sleeps) -> RetryPolicy:
    return RetryPolicy(backoff=constant_backoff(0.01), sleep=sleeps.append)


@pytest.fixture
def store(db_url):
    store = SQLAlchemyStore(db_url)
    yield store
    store.close()


@pytest.fixture
def manager(store, fast_policy) -> DocumentChunkManager:
    manager = DocumentChunkManager(store, retry_policy=fast_policy)
    manager.install()
    return manager


@pytest.fixture
def pg_url():
    """PostgreSQL URL for integration tests, skipped when not configured."""
    url = os.environ.get("TEST_PG_URL")
    if not url:
        pytest.skip("TEST_PG_URL not set")
    pytest.importorskip("psycopg2")
    return url
