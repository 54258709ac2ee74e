"""Notification deliverer - persist one batch of new-chapter notifications.

Shared by the standard and premium delivery lanes. Per batch:

1. Backlog health: reject free batches past the hard ceiling, delay past the
   soft ceiling, switch to lite mode past the critical ceiling
2. Priority suppression against existing rows for the same chapter
3. Throttling (series/hour, user/hour, user/day)
4. Delete superseded rows and insert new ones in one transaction

Recipients are evaluated in bounded chunks, each chunk concurrently.
"""

import asyncio
from collections import Counter
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional
from uuid import UUID

import asyncpg
from mangasync_common import get_logger
from mangasync_contracts import DeliveryJob, Notification, NotificationPriority, NotificationType, chapter_key
from mangasync_storage import KVStore

from mangasync_pipeline.health import BacklogHealth, delivery_backlog
from mangasync_pipeline.stores import Stores
from mangasync_pipeline.throttling import NotificationThrottle

logger = get_logger(__name__)

RECIPIENT_CHUNK_SIZE = 50
NOTIFICATION_TITLE = "New Chapter Available"


def build_message(series_title: str, new_chapter_count: int, source_name: Optional[str], lite: bool) -> str:
    if lite:
        return f"New update for {series_title}"
    plural = "s" if new_chapter_count > 1 else ""
    on_source = f" on {source_name}" if source_name else ""
    return f'{new_chapter_count} new chapter{plural} for "{series_title}"{on_source}!'


def build_metadata(job: DeliveryJob, lite: bool) -> dict[str, Any]:
    if lite:
        return {"chapter_number": chapter_key(job.chapter_number), "is_lite": True}
    return {
        "source_id": str(job.source_id),
        "source_name": job.source_name,
        "chapter_count": job.new_chapter_count,
        "chapter_number": chapter_key(job.chapter_number),
        "is_lite": False,
    }


@dataclass
class _Outcome:
    user_id: UUID
    create: bool
    supersedes: bool = False
    reason: Optional[str] = None


class NotificationDeliverer:
    """Handler for ``delivery`` jobs on both lanes.

    Args:
        pool: Database pool
        kv: Shared key/value store (throttle counters)
        throttle: Per-user ceilings; built from defaults when omitted
        backlog_overloaded: Pending deliveries that trigger the delay
        backlog_critical: Pending deliveries that trigger lite mode
        backlog_rejected: Pending deliveries past which free batches are dropped
        overload_delay_seconds: Delay applied while overloaded
        stores: Store bundle (defaults to the Postgres stores)
        sleep: Awaitable sleep, replaceable in tests
    """

    def __init__(
        self,
        pool: asyncpg.Pool,
        kv: KVStore,
        *,
        throttle: Optional[NotificationThrottle] = None,
        backlog_overloaded: int = 10_000,
        backlog_critical: int = 50_000,
        backlog_rejected: int = 100_000,
        overload_delay_seconds: float = 5.0,
        stores: Optional[Stores] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.pool = pool
        self.kv = kv
        self.throttle = throttle or NotificationThrottle(kv)
        self.backlog_overloaded = backlog_overloaded
        self.backlog_critical = backlog_critical
        self.backlog_rejected = backlog_rejected
        self.overload_delay_seconds = overload_delay_seconds
        self.stores = stores or Stores()
        self._sleep = sleep

    async def _health(self, conn: asyncpg.Connection) -> BacklogHealth:
        return await delivery_backlog(
            conn,
            overloaded=self.backlog_overloaded,
            critical=self.backlog_critical,
            rejected=self.backlog_rejected,
            queue_store=self.stores.queue,
        )

    async def handle(self, job: DeliveryJob) -> dict[str, Any]:
        log = logger.bind(
            series_id=str(job.series_id),
            chapter=chapter_key(job.chapter_number),
            premium=job.is_premium,
        )

        async with self.pool.acquire() as conn:
            health = await self._health(conn)
            if health.is_rejected and not job.is_premium:
                log.error("delivery_rejected_backlog", waiting=health.total_waiting)
                return {"status": "rejected", "waiting": health.total_waiting}

            if health.is_overloaded:
                log.warning("delivery_overloaded", waiting=health.total_waiting, delay=self.overload_delay_seconds)
                await self._sleep(self.overload_delay_seconds)

            lite = health.is_critical
            if lite:
                log.warning("delivery_lite_mode", waiting=health.total_waiting)

            series = await self.stores.series.get(conn, job.series_id)
            if series is None:
                log.warning("delivery_series_missing")
                return {"status": "skipped", "reason": "series_not_found"}

            recipient_ids = list(dict.fromkeys(job.recipient_ids))
            existing = await self.stores.notifications.existing_priorities(
                conn, recipient_ids, job.series_id, job.chapter_number
            )

        outcomes: list[_Outcome] = []
        for start in range(0, len(recipient_ids), RECIPIENT_CHUNK_SIZE):
            chunk = recipient_ids[start : start + RECIPIENT_CHUNK_SIZE]
            outcomes.extend(
                await asyncio.gather(*(self._evaluate(job, user_id, existing.get(user_id)) for user_id in chunk))
            )

        to_create = [o for o in outcomes if o.create]
        superseded = [o.user_id for o in to_create if o.supersedes]
        skipped = Counter(o.reason for o in outcomes if not o.create)

        inserted = 0
        if to_create:
            message = build_message(series.title, job.new_chapter_count, job.source_name, lite)
            metadata = build_metadata(job, lite)
            notifications = [
                Notification(
                    user_id=o.user_id,
                    series_id=job.series_id,
                    type=NotificationType.NEW_CHAPTER,
                    title=NOTIFICATION_TITLE,
                    message=message,
                    priority=NotificationPriority(job.priority),
                    chapter_number=job.chapter_number,
                    metadata=metadata,
                )
                for o in to_create
            ]
            async with self.pool.acquire() as conn:
                async with conn.transaction():
                    inserted = await self.stores.notifications.replace(
                        conn,
                        series_id=job.series_id,
                        chapter_number=job.chapter_number,
                        superseded_user_ids=superseded,
                        notifications=notifications,
                    )

        suppressed = skipped.pop("suppressed", 0)
        log.info(
            "notifications_delivered",
            created=inserted,
            replaced=len(superseded),
            suppressed=suppressed,
            throttled=sum(skipped.values()),
            lite=lite,
        )
        return {
            "status": "completed",
            "created": inserted,
            "replaced": len(superseded),
            "suppressed": suppressed,
            "throttled": dict(skipped),
            "lite": lite,
        }

    async def _evaluate(self, job: DeliveryJob, user_id: UUID, existing_priority: Optional[int]) -> _Outcome:
        if existing_priority is not None:
            if existing_priority <= job.priority:
                return _Outcome(user_id, create=False, reason="suppressed")
            # Replacing a lower-priority row does not count against the user's allowances
            return _Outcome(user_id, create=True, supersedes=True)

        decision = await self.throttle.check(user_id, job.series_id, job.is_premium, claim=job.dedup_key())
        if decision.throttled:
            return _Outcome(user_id, create=False, reason=decision.reason)
        return _Outcome(user_id, create=True)
