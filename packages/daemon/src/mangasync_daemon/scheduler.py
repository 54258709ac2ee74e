"""Leader-elected scheduler.

Every worker runs a ``Scheduler``; only the holder of the
``scheduler:leader`` lease does anything. Each cycle:

1. Tier maintenance (HOT / WARM / COLD by popularity and freshness)
2. Safety monitor (delivery queue depth and oldest pending job age)
3. Queue maintenance (reclaim stalled jobs, purge finished jobs and
   expired key/value records)
4. Enqueue polls for due sources, advancing their next_check_at first

Each step is isolated: a failure is logged and the cycle continues.
"""

import asyncio
from datetime import timedelta
from typing import Any, Optional

import asyncpg
from mangasync_common import get_logger
from mangasync_contracts import PollJob, SyncPriority
from mangasync_storage import DistributedLock, KVStore, QueueName, QueueStore, SeriesSourceStore

from mangasync_daemon.metrics import QUEUE_DEPTH, SCHEDULER_LEADER

logger = get_logger(__name__)

LEADER_KEY = "scheduler:leader"

DUE_BATCH_SIZE = 500
TIER_INTERVALS: dict[SyncPriority, timedelta] = {
    SyncPriority.HOT: timedelta(minutes=15),
    SyncPriority.WARM: timedelta(hours=4),
    SyncPriority.COLD: timedelta(hours=24),
}
POLL_PRIORITY: dict[SyncPriority, int] = {
    SyncPriority.HOT: 1,
    SyncPriority.WARM: 2,
    SyncPriority.COLD: 3,
}

HOT_SUBSCRIBER_THRESHOLD = 100
WARM_AFTER = timedelta(hours=24)
COLD_AFTER = timedelta(days=7)

STALLED_AFTER_SECONDS = 15 * 60
FINISHED_RETENTION_SECONDS = 24 * 60 * 60

FREE_DEPTH_CRITICAL = 10_000
TOTAL_DEPTH_WARNING = 50_000
OLDEST_DELIVERY_AGE_CRITICAL = 5 * 60


async def run_safety_monitor(conn: asyncpg.Connection, queue_store: Any = QueueStore) -> dict[str, Any]:
    """Log delivery backlog warnings. Returns the observed values."""
    counts = await queue_store.pending_counts(conn, list(QueueName.ALL))
    for queue, count in counts.items():
        QUEUE_DEPTH.labels(queue=queue).set(count)

    free = counts.get(QueueName.DELIVERY, 0)
    premium = counts.get(QueueName.DELIVERY_PREMIUM, 0)
    oldest_age = await queue_store.oldest_pending_age(conn, QueueName.DELIVERY)

    logger.info("safety_monitor_depths", free=free, premium=premium)
    if free > FREE_DEPTH_CRITICAL:
        logger.error("safety_free_queue_depth_critical", waiting=free, threshold=FREE_DEPTH_CRITICAL)
    if oldest_age is not None and oldest_age > OLDEST_DELIVERY_AGE_CRITICAL:
        logger.error("safety_free_queue_stale", oldest_age_seconds=round(oldest_age, 1))
    if free + premium > TOTAL_DEPTH_WARNING:
        logger.warning("safety_delivery_backlog", total_waiting=free + premium)

    return {"free": free, "premium": premium, "oldest_age_seconds": oldest_age}


async def enqueue_due_polls(
    conn: asyncpg.Connection,
    *,
    limit: int = DUE_BATCH_SIZE,
    source_store: Any = SeriesSourceStore,
    queue_store: Any = QueueStore,
) -> int:
    """Claim due sources and enqueue one poll job each.

    next_check_at is advanced before enqueueing; a source whose enqueue fails
    is picked up again after its tier interval.
    """
    async with conn.transaction():
        due = await source_store.claim_due(conn, limit, TIER_INTERVALS)
        enqueued = 0
        for source in due:
            job = PollJob(series_source_id=source.id)
            job_id = await queue_store.enqueue(
                conn,
                QueueName.POLL,
                job,
                priority=POLL_PRIORITY.get(source.sync_priority, 3),
                dedup_key=job.dedup_key(),
            )
            if job_id is not None:
                enqueued += 1

    if due:
        logger.info("polls_scheduled", due=len(due), enqueued=enqueued)
    return enqueued


class Scheduler:
    """Periodic leader-only maintenance and poll scheduling.

    Args:
        pool: Database pool
        kv: Shared key/value store (leader lease)
        interval_seconds: Seconds between cycles
        lease_seconds: Leader lease TTL (renewed while held)
    """

    def __init__(
        self,
        pool: asyncpg.Pool,
        kv: KVStore,
        *,
        interval_seconds: float = 300.0,
        lease_seconds: float = 360.0,
        source_store: Any = SeriesSourceStore,
        queue_store: Any = QueueStore,
    ):
        self.pool = pool
        self.kv = kv
        self.interval_seconds = interval_seconds
        self.source_store = source_store
        self.queue_store = queue_store
        self.lock = DistributedLock(kv, LEADER_KEY, ttl_seconds=lease_seconds, renew=True)

    @property
    def is_leader(self) -> bool:
        return self.lock.held

    async def ensure_leadership(self) -> bool:
        if not self.lock.held:
            if self.lock.lost:
                logger.warning("scheduler_leadership_lost")
                await self.lock.release()
            if await self.lock.acquire():
                logger.info("scheduler_leader_elected")
        SCHEDULER_LEADER.set(1 if self.lock.held else 0)
        return self.lock.held

    async def run_cycle(self) -> dict[str, Any]:
        """One leader cycle. Returns per-step results (None where a step failed)."""
        summary: dict[str, Optional[Any]] = {}

        async with self.pool.acquire() as conn:
            summary["tiers"] = await self._step(
                "tier_maintenance",
                self.source_store.apply_tier_maintenance(
                    conn,
                    hot_subscriber_threshold=HOT_SUBSCRIBER_THRESHOLD,
                    warm_after=WARM_AFTER,
                    cold_after=COLD_AFTER,
                ),
            )
            summary["safety"] = await self._step(
                "safety_monitor", run_safety_monitor(conn, self.queue_store)
            )
            summary["reclaimed"] = await self._step(
                "reclaim_stalled", self.queue_store.reclaim_stalled(conn, STALLED_AFTER_SECONDS)
            )
            summary["purged"] = await self._step(
                "purge_finished", self.queue_store.purge_finished(conn, FINISHED_RETENTION_SECONDS)
            )
            summary["kv_purged"] = await self._step("purge_expired_keys", self.kv.purge_expired())
            summary["polls"] = await self._step(
                "enqueue_due_polls",
                enqueue_due_polls(conn, source_store=self.source_store, queue_store=self.queue_store),
            )

        logger.info("scheduler_cycle_completed", polls=summary["polls"])
        return summary

    async def _step(self, name: str, coro) -> Any:
        try:
            return await coro
        except Exception as e:
            logger.error("scheduler_step_failed", step=name, error=str(e))
            return None

    async def run(self, stop: asyncio.Event) -> None:
        try:
            while not stop.is_set():
                try:
                    if await self.ensure_leadership():
                        await self.run_cycle()
                    else:
                        logger.debug("scheduler_follower")
                except Exception as e:
                    logger.error("scheduler_iteration_failed", error=str(e))
                try:
                    await asyncio.wait_for(stop.wait(), timeout=self.interval_seconds)
                except asyncio.TimeoutError:
                    pass
        finally:
            await self.lock.release()
            SCHEDULER_LEADER.set(0)
