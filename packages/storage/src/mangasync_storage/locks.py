"""Distributed mutual exclusion over the shared key/value store.

A lock is a lease record ``lock:<key>`` holding a random owner token. Only the
owner can release or renew it. Renewal, when enabled, is an asyncio task owned
by the lock and cancelled on release.
"""

from __future__ import annotations

import asyncio
import secrets
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from mangasync_common import LockUnavailableError, get_logger

from mangasync_storage.kv_store import KVStore

logger = get_logger(__name__)


class DistributedLock:
    """Lease-based lock.

    Args:
        kv: Shared key/value store
        key: Lock name (namespaced under ``lock:``)
        ttl_seconds: Lease duration; a crashed holder frees the lock after this
        wait_timeout: Seconds to keep retrying a contested lock (0 = one attempt)
        retry_interval: Sleep between attempts while waiting
        renew: Keep extending the lease until released

    Example:
        >>> lock = DistributedLock(kv, "scheduler:leader", ttl_seconds=360, renew=True)
        >>> if await lock.acquire():
        ...     try:
        ...         await run_cycle()
        ...     finally:
        ...         await lock.release()
    """

    def __init__(
        self,
        kv: KVStore,
        key: str,
        ttl_seconds: float = 30.0,
        *,
        wait_timeout: float = 0.0,
        retry_interval: float = 0.1,
        renew: bool = False,
    ):
        self.kv = kv
        self.key = key
        self.ttl_seconds = ttl_seconds
        self.wait_timeout = wait_timeout
        self.retry_interval = retry_interval
        self.renew = renew
        self.token = secrets.token_hex(16)
        self.held = False
        self.lost = False
        self._renewal: Optional[asyncio.Task] = None

    @property
    def _record_key(self) -> str:
        return f"lock:{self.key}"

    async def acquire(self) -> bool:
        """Try to take the lock, waiting up to ``wait_timeout``."""
        deadline = time.monotonic() + self.wait_timeout
        while True:
            if await self.kv.set_if_absent(self._record_key, self.token, self.ttl_seconds):
                self.held = True
                self.lost = False
                if self.renew:
                    self._renewal = asyncio.create_task(self._renew_loop())
                logger.debug("lock_acquired", key=self.key)
                return True

            if time.monotonic() >= deadline:
                logger.debug("lock_contended", key=self.key)
                return False
            await asyncio.sleep(self.retry_interval)

    async def release(self) -> bool:
        """Release the lock if still owned. Returns True if the record was deleted."""
        await self._stop_renewal()
        if not self.held:
            return False

        self.held = False
        released = await self.kv.compare_and_delete(self._record_key, self.token)
        if not released:
            logger.warning("lock_expired_before_release", key=self.key)
        return released

    async def _stop_renewal(self) -> None:
        task, self._renewal = self._renewal, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _renew_loop(self) -> None:
        interval = max(self.ttl_seconds / 3, 0.05)
        while True:
            await asyncio.sleep(interval)
            try:
                extended = await self.kv.extend_if_owner(self._record_key, self.token, self.ttl_seconds)
            except Exception as e:
                logger.warning("lock_renewal_error", key=self.key, error=str(e))
                continue
            if not extended:
                self.held = False
                self.lost = True
                logger.warning("lock_lost", key=self.key)
                return

    async def __aenter__(self) -> "DistributedLock":
        if not await self.acquire():
            raise LockUnavailableError(self.key)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.release()


@asynccontextmanager
async def with_lock(
    kv: KVStore,
    key: str,
    ttl_seconds: float = 30.0,
    *,
    wait_timeout: float = 0.0,
    renew: bool = False,
) -> AsyncIterator[DistributedLock]:
    """Run a block under a distributed lock.

    Raises:
        LockUnavailableError: If the lock could not be acquired in time
    """
    lock = DistributedLock(kv, key, ttl_seconds, wait_timeout=wait_timeout, renew=renew)
    async with lock:
        yield lock
