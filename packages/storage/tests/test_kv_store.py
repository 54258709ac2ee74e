"""Tests for KVStore - namespaced leases and counters.

SQL is exercised against a mocked asyncpg connection; these tests pin the
statement shapes that give set-if-absent and owner-only semantics.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from mangasync_common import StorageError
from mangasync_storage.kv_store import KVStore

pytestmark = pytest.mark.unit

PREFIX = "mangasync:test:"


def _make_mock_pool(conn_mock):
    """Create a mock connection pool wrapping the given connection mock."""
    pool = MagicMock()
    ctx = AsyncMock()
    ctx.__aenter__ = AsyncMock(return_value=conn_mock)
    ctx.__aexit__ = AsyncMock(return_value=False)
    pool.acquire.return_value = ctx

    tx = AsyncMock()
    tx.__aenter__ = AsyncMock(return_value=None)
    tx.__aexit__ = AsyncMock(return_value=False)
    conn_mock.transaction = MagicMock(return_value=tx)
    return pool


def _store(conn):
    return KVStore(_make_mock_pool(conn), prefix=PREFIX)


class TestSetIfAbsent:
    async def test_returns_true_when_row_written(self):
        conn = AsyncMock()
        conn.fetchval = AsyncMock(return_value=f"{PREFIX}lock:a")

        assert await _store(conn).set_if_absent("lock:a", "tok", 30) is True

    async def test_returns_false_when_live_row_exists(self):
        conn = AsyncMock()
        conn.fetchval = AsyncMock(return_value=None)

        assert await _store(conn).set_if_absent("lock:a", "tok", 30) is False

    async def test_key_is_namespaced(self):
        conn = AsyncMock()
        conn.fetchval = AsyncMock(return_value=None)

        await _store(conn).set_if_absent("notify:dedupe:s:1", "1", 60)

        assert conn.fetchval.call_args[0][1] == f"{PREFIX}notify:dedupe:s:1"

    async def test_only_expired_rows_are_overwritten(self):
        conn = AsyncMock()
        conn.fetchval = AsyncMock(return_value=None)

        await _store(conn).set_if_absent("k", "v", 1)

        sql = conn.fetchval.call_args[0][0]
        assert "ON CONFLICT (key) DO UPDATE" in sql
        assert "kv_leases.expires_at <= now()" in sql

    async def test_error_wrapped(self):
        conn = AsyncMock()
        conn.fetchval = AsyncMock(side_effect=Exception("down"))

        with pytest.raises(StorageError):
            await _store(conn).set_if_absent("k", "v", 1)


class TestOwnership:
    async def test_compare_and_delete_matches_token(self):
        conn = AsyncMock()
        conn.fetchval = AsyncMock(return_value=f"{PREFIX}lock:a")

        assert await _store(conn).compare_and_delete("lock:a", "tok") is True
        assert conn.fetchval.call_args[0][2] == "tok"

    async def test_compare_and_delete_wrong_owner(self):
        conn = AsyncMock()
        conn.fetchval = AsyncMock(return_value=None)

        assert await _store(conn).compare_and_delete("lock:a", "other") is False

    async def test_extend_if_owner(self):
        conn = AsyncMock()
        conn.fetchval = AsyncMock(return_value=f"{PREFIX}lock:a")

        assert await _store(conn).extend_if_owner("lock:a", "tok", 60) is True
        assert conn.fetchval.call_args[0][3] == 60.0


class TestCounters:
    async def test_incr_returns_int(self):
        conn = AsyncMock()
        conn.fetchval = AsyncMock(return_value=3)

        assert await _store(conn).incr_with_expiry("ratelimit:x", 3600) == 3

    async def test_incr_resets_expired_counter(self):
        conn = AsyncMock()
        conn.fetchval = AsyncMock(return_value=1)

        await _store(conn).incr_with_expiry("ratelimit:x", 3600)

        sql = conn.fetchval.call_args[0][0]
        assert "THEN '1'" in sql


class TestGetDeletePurge:
    async def test_get_filters_expired(self):
        conn = AsyncMock()
        conn.fetchval = AsyncMock(return_value="v")

        assert await _store(conn).get("k") == "v"
        assert "expires_at > now()" in conn.fetchval.call_args[0][0]

    async def test_delete(self):
        conn = AsyncMock()
        conn.execute = AsyncMock(return_value="DELETE 1")

        assert await _store(conn).delete("k") is True

    async def test_set_without_ttl_passes_none(self):
        conn = AsyncMock()
        conn.execute = AsyncMock(return_value="INSERT 0 1")

        await _store(conn).set("k", "v")

        assert conn.execute.call_args[0][3] is None

    async def test_purge_expired_count(self):
        conn = AsyncMock()
        conn.execute = AsyncMock(return_value="DELETE 9")

        assert await _store(conn).purge_expired() == 9


class TestTakeToken:
    async def test_full_bucket_grants_token(self):
        conn = AsyncMock()
        conn.fetchrow = AsyncMock(return_value={"tokens": 10.0, "elapsed": 0.0})
        conn.execute = AsyncMock(return_value="UPDATE 1")

        acquired, wait = await _store(conn).take_token("bucket:mangadex", rate=5, capacity=10)

        assert acquired is True
        assert wait == 0.0
        assert conn.execute.call_args[0][2] == pytest.approx(9.0)

    async def test_empty_bucket_reports_wait(self):
        conn = AsyncMock()
        conn.fetchrow = AsyncMock(return_value={"tokens": 0.0, "elapsed": 0.1})
        conn.execute = AsyncMock(return_value="UPDATE 1")

        acquired, wait = await _store(conn).take_token("bucket:slow", rate=1, capacity=2)

        assert acquired is False
        assert wait == pytest.approx(0.9)

    async def test_refill_capped_at_capacity(self):
        conn = AsyncMock()
        conn.fetchrow = AsyncMock(return_value={"tokens": 1.0, "elapsed": 3600.0})
        conn.execute = AsyncMock(return_value="UPDATE 1")

        await _store(conn).take_token("bucket:x", rate=5, capacity=10)

        assert conn.execute.call_args[0][2] == pytest.approx(9.0)
