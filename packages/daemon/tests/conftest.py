"""Pytest fixtures for daemon tests."""

import time
from contextlib import asynccontextmanager
from typing import Optional
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest
from mangasync_storage import ClaimedJob


class DictKV:
    """Minimal in-process KVStore with expiry."""

    def __init__(self):
        self.data: dict[str, tuple[str, Optional[float]]] = {}
        self.purge_expired = AsyncMock(return_value=0)

    def _live(self, key):
        record = self.data.get(key)
        if record is None or (record[1] is not None and record[1] <= time.monotonic()):
            return None
        return record[0]

    async def set_if_absent(self, key, value, ttl_seconds):
        if self._live(key) is not None:
            return False
        self.data[key] = (value, time.monotonic() + ttl_seconds)
        return True

    async def set(self, key, value, ttl_seconds=None):
        self.data[key] = (value, None if ttl_seconds is None else time.monotonic() + ttl_seconds)

    async def get(self, key):
        return self._live(key)

    async def compare_and_delete(self, key, expected):
        if self._live(key) != expected:
            return False
        del self.data[key]
        return True

    async def extend_if_owner(self, key, expected, ttl_seconds):
        if self._live(key) != expected:
            return False
        self.data[key] = (expected, time.monotonic() + ttl_seconds)
        return True


@pytest.fixture
def mock_pool():
    """Pool whose connection supports ``transaction()``."""
    conn = AsyncMock()

    @asynccontextmanager
    async def _transaction():
        yield

    conn.transaction = MagicMock(side_effect=lambda: _transaction())

    @asynccontextmanager
    async def _acquire():
        yield conn

    pool = MagicMock()
    pool.acquire = MagicMock(side_effect=lambda: _acquire())
    pool.conn = conn
    return pool


@pytest.fixture
def kv():
    return DictKV()


@pytest.fixture
def make_claimed():
    def _make(payload, queue="gap-recovery", attempts=1, max_attempts=3):
        return ClaimedJob(
            id=uuid4(),
            queue=queue,
            kind=payload.get("kind", "unknown"),
            payload=payload,
            attempts=attempts,
            max_attempts=max_attempts,
        )

    return _make
