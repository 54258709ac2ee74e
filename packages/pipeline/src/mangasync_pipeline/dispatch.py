"""Notification dispatcher - collapse duplicate triggers and fan out.

Several sources usually report the same chapter within minutes. Only the first
dispatch for a (series, chapter) wins the dedup marker; the rest are no-ops.
The winner resolves recipients, assigns each a priority, and enqueues bounded
delivery batches on the premium or standard lane.
"""

from collections import defaultdict
from typing import Any, Optional, Protocol, runtime_checkable
from uuid import UUID

import asyncpg
from mangasync_common import get_logger
from mangasync_contracts import DeliveryJob, DispatchJob, NotificationPriority, Recipient, chapter_key
from mangasync_storage import KVStore, QueueName

from mangasync_pipeline.stores import Stores
from mangasync_pipeline.throttling import (
    DEFAULT_DEDUPE_TTL,
    claim_chapter_notification,
    release_chapter_notification,
)

logger = get_logger(__name__)

NSFW_CONTENT_RATINGS = frozenset({"erotica", "pornographic"})


@runtime_checkable
class RecipientResolver(Protocol):
    async def resolve(self, series_id: UUID) -> list[Recipient]: ...


def is_nsfw(content_rating: Optional[str]) -> bool:
    return bool(content_rating) and content_rating.lower() in NSFW_CONTENT_RATINGS


def can_receive(recipient: Recipient, content_rating: Optional[str]) -> bool:
    """NSFW series only notify users browsing in ``nsfw`` mode."""
    return not is_nsfw(content_rating) or recipient.safe_browsing_mode == "nsfw"


def notification_priority(
    recipient: Recipient,
    source_name: Optional[str],
    trust_score: int,
    high_trust_threshold: int = 80,
) -> NotificationPriority:
    """Priority of a notification triggered by ``source_name`` for one user.

    0 when the source is the user's preferred one (series-level first, then
    global), 1 when the source is highly trusted, 2 otherwise.
    """
    preferred = recipient.preferred_source
    if preferred and source_name and preferred.lower() == source_name.lower():
        return NotificationPriority.PREFERRED
    if trust_score >= high_trust_threshold:
        return NotificationPriority.TRUSTED
    return NotificationPriority.STANDARD


def plan_deliveries(
    job: DispatchJob,
    recipients: list[Recipient],
    *,
    source_name: Optional[str],
    trust_score: int,
    high_trust_threshold: int,
    batch_size: int,
) -> list[DeliveryJob]:
    """Group recipients by (lane, priority) and chunk each group."""
    groups: dict[tuple[bool, int], list[UUID]] = defaultdict(list)
    for recipient in recipients:
        priority = notification_priority(recipient, source_name, trust_score, high_trust_threshold)
        groups[(recipient.is_premium, int(priority))].append(recipient.user_id)

    deliveries = []
    for (is_premium, priority), user_ids in sorted(groups.items()):
        for batch_index, start in enumerate(range(0, len(user_ids), batch_size)):
            deliveries.append(
                DeliveryJob(
                    series_id=job.series_id,
                    source_id=job.triggering_source_id,
                    source_name=source_name,
                    chapter_number=job.chapter_number,
                    new_chapter_count=job.new_chapter_count,
                    recipient_ids=user_ids[start : start + batch_size],
                    is_premium=is_premium,
                    priority=priority,
                    batch_index=batch_index,
                )
            )
    return deliveries


class NotificationDispatcher:
    """Handler for ``dispatch`` jobs.

    Args:
        pool: Database pool
        kv: Shared key/value store (dedup markers)
        resolver: Supplies the series' notification recipients
        high_trust_threshold: Source trust score that earns priority 1
        batch_size: Maximum recipients per delivery job
        dedupe_ttl_seconds: Lifetime of the per-chapter dedup marker
        stores: Store bundle (defaults to the Postgres stores)
    """

    def __init__(
        self,
        pool: asyncpg.Pool,
        kv: KVStore,
        resolver: RecipientResolver,
        *,
        high_trust_threshold: int = 80,
        batch_size: int = 500,
        dedupe_ttl_seconds: float = DEFAULT_DEDUPE_TTL,
        stores: Optional[Stores] = None,
    ):
        self.pool = pool
        self.kv = kv
        self.resolver = resolver
        self.high_trust_threshold = high_trust_threshold
        self.batch_size = batch_size
        self.dedupe_ttl_seconds = dedupe_ttl_seconds
        self.stores = stores or Stores()

    async def handle(self, job: DispatchJob) -> dict[str, Any]:
        chapter = chapter_key(job.chapter_number)
        if not await claim_chapter_notification(
            self.kv, job.series_id, job.chapter_number, self.dedupe_ttl_seconds
        ):
            logger.debug("dispatch_duplicate", series_id=str(job.series_id), chapter=chapter)
            return {"status": "duplicate"}

        try:
            return await self._fan_out(job)
        except Exception:
            await release_chapter_notification(self.kv, job.series_id, job.chapter_number)
            raise

    async def _fan_out(self, job: DispatchJob) -> dict[str, Any]:
        async with self.pool.acquire() as conn:
            series = await self.stores.series.get(conn, job.series_id)
            source = await self.stores.sources.get(conn, job.triggering_source_id)

        if series is None:
            logger.warning("dispatch_series_missing", series_id=str(job.series_id))
            return {"status": "skipped", "reason": "series_not_found"}

        recipients = [
            r for r in await self.resolver.resolve(job.series_id) if can_receive(r, series.content_rating)
        ]
        if not recipients:
            return {"status": "completed", "recipients": 0, "batches": 0}

        deliveries = plan_deliveries(
            job,
            recipients,
            source_name=source.source_name if source else None,
            trust_score=source.trust_score if source else 0,
            high_trust_threshold=self.high_trust_threshold,
            batch_size=self.batch_size,
        )

        async with self.pool.acquire() as conn:
            async with conn.transaction():
                for delivery in deliveries:
                    queue = QueueName.DELIVERY_PREMIUM if delivery.is_premium else QueueName.DELIVERY
                    await self.stores.queue.enqueue(conn, queue, delivery, priority=delivery.priority)

        logger.info(
            "notifications_dispatched",
            series_id=str(job.series_id),
            chapter=chapter_key(job.chapter_number),
            recipients=len(recipients),
            batches=len(deliveries),
        )
        return {"status": "completed", "recipients": len(recipients), "batches": len(deliveries)}
