"""Tests for DistributedLock and with_lock."""

import asyncio

import pytest

from mangasync_common import LockUnavailableError
from mangasync_storage.locks import DistributedLock, with_lock

pytestmark = pytest.mark.unit


class TestAcquireRelease:
    async def test_second_holder_rejected(self, memory_kv):
        first = DistributedLock(memory_kv, "canonicalize:one piece", ttl_seconds=30)
        second = DistributedLock(memory_kv, "canonicalize:one piece", ttl_seconds=30)

        assert await first.acquire() is True
        assert await second.acquire() is False

        await first.release()
        assert await second.acquire() is True

    async def test_release_by_non_owner_is_noop(self, memory_kv):
        owner = DistributedLock(memory_kv, "k", ttl_seconds=30)
        intruder = DistributedLock(memory_kv, "k", ttl_seconds=30)
        await owner.acquire()

        assert await intruder.release() is False
        assert await memory_kv.get("lock:k") == owner.token

    async def test_expired_lease_can_be_taken(self, memory_kv):
        stale = DistributedLock(memory_kv, "k", ttl_seconds=0.01)
        await stale.acquire()
        await asyncio.sleep(0.02)

        fresh = DistributedLock(memory_kv, "k", ttl_seconds=30)
        assert await fresh.acquire() is True
        # The stale holder cannot delete the new owner's record
        assert await stale.release() is False

    async def test_bounded_wait_succeeds_after_release(self, memory_kv):
        holder = DistributedLock(memory_kv, "k", ttl_seconds=30)
        waiter = DistributedLock(memory_kv, "k", ttl_seconds=30, wait_timeout=1.0, retry_interval=0.01)
        await holder.acquire()

        async def release_soon():
            await asyncio.sleep(0.05)
            await holder.release()

        releaser = asyncio.create_task(release_soon())
        assert await waiter.acquire() is True
        await releaser


class TestRenewal:
    async def test_lease_renewed_while_held(self, memory_kv):
        lock = DistributedLock(memory_kv, "scheduler:leader", ttl_seconds=0.09, renew=True)
        await lock.acquire()

        await asyncio.sleep(0.2)

        assert lock.held is True
        assert await memory_kv.get("lock:scheduler:leader") == lock.token
        await lock.release()
        assert await memory_kv.get("lock:scheduler:leader") is None

    async def test_lost_lease_detected(self, memory_kv):
        lock = DistributedLock(memory_kv, "k", ttl_seconds=0.09, renew=True)
        await lock.acquire()
        memory_kv.data.clear()

        await asyncio.sleep(0.1)

        assert lock.lost is True
        assert lock.held is False
        await lock.release()


class TestWithLock:
    async def test_raises_when_contended(self, memory_kv):
        async with with_lock(memory_kv, "ingest:s:1"):
            with pytest.raises(LockUnavailableError, match="ingest:s:1"):
                async with with_lock(memory_kv, "ingest:s:1"):
                    pass

    async def test_released_on_exception(self, memory_kv):
        with pytest.raises(RuntimeError):
            async with with_lock(memory_kv, "k"):
                raise RuntimeError("boom")

        assert await memory_kv.get("lock:k") is None

    async def test_mutual_exclusion_under_concurrency(self, memory_kv):
        inside = 0
        peak = 0

        async def critical():
            nonlocal inside, peak
            async with with_lock(memory_kv, "k", wait_timeout=2.0):
                inside += 1
                peak = max(peak, inside)
                await asyncio.sleep(0.01)
                inside -= 1

        await asyncio.gather(*(critical() for _ in range(5)))

        assert peak == 1
