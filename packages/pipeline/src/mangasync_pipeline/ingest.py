"""Chapter ingestor - fold one scraped chapter into the canonical model.

Per job, under ``ingest:<series_id>:<chapter>`` and inside one transaction:

1. Live ingests check for the previous chapter and schedule gap recovery
2. Pick discovered_at (recovery replays are backdated behind the next chapter)
3. Upsert the logical chapter (number is immutable)
4. Upsert this source's instance; a new instance promotes the source to HOT
5. Append the source to the 24h feed entry
6. Enqueue notification dispatch for a newly seen source instance

Re-ingesting the same (source, chapter) leaves exactly one logical chapter,
one source instance and one feed listing.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import asyncpg
from mangasync_common import NonRetryableError, get_logger
from mangasync_contracts import DispatchJob, FeedSource, GapRecoveryJob, IngestJob, chapter_key
from mangasync_storage import KVStore, QueueName, with_lock

from mangasync_pipeline.stores import Stores

logger = get_logger(__name__)

LOCK_TTL_SECONDS = 30.0
GAP_RECOVERY_DELAY_SECONDS = 10.0
DISPATCH_DELAY_SECONDS = 5.0
RECOVERY_DISPATCH_DELAY_SECONDS = 30.0
HOT_RECHECK = timedelta(minutes=15)
BACKDATE_STEP = timedelta(milliseconds=1)


def _clean_title(title: Optional[str]) -> Optional[str]:
    if title is None:
        return None
    cleaned = " ".join(title.split())
    return cleaned or None


class ChapterIngestor:
    """Handler for ``ingest`` jobs.

    Args:
        pool: Database pool
        kv: Shared key/value store (locks)
        lock_wait_seconds: Bounded wait for a contested chapter lock
        stores: Store bundle (defaults to the Postgres stores)
    """

    def __init__(
        self,
        pool: asyncpg.Pool,
        kv: KVStore,
        *,
        lock_wait_seconds: float = 5.0,
        stores: Optional[Stores] = None,
    ):
        self.pool = pool
        self.kv = kv
        self.lock_wait_seconds = lock_wait_seconds
        self.stores = stores or Stores()

    async def handle(self, job: IngestJob) -> dict[str, Any]:
        """Ingest one chapter.

        Raises:
            LockUnavailableError: Chapter lock still held after the wait (retryable)
            NonRetryableError: Source link belongs to a different series
            StorageError: Database failure (retryable)
        """
        number = chapter_key(job.chapter_number)
        log = logger.bind(series_id=str(job.series_id), chapter=number, trace_id=job.trace_id)

        async with with_lock(
            self.kv,
            f"ingest:{job.series_id}:{number}",
            LOCK_TTL_SECONDS,
            wait_timeout=self.lock_wait_seconds,
        ):
            async with self.pool.acquire() as conn:
                async with conn.transaction():
                    source = await self.stores.sources.get(conn, job.series_source_id)
                    if source is None:
                        log.warning("ingest_source_missing", series_source_id=str(job.series_source_id))
                        return {"status": "skipped", "reason": "source_not_found"}
                    if source.series_id != job.series_id:
                        raise NonRetryableError(
                            f"Source {job.series_source_id} belongs to series {source.series_id}, "
                            f"not {job.series_id}"
                        )

                    result = await self._ingest(conn, job, source.source_name)

        log.info("chapter_ingested", source=source.source_name, created=result["created"])
        return result

    async def _ingest(self, conn: asyncpg.Connection, job: IngestJob, source_name: str) -> dict[str, Any]:
        now = datetime.now(timezone.utc)
        stores = self.stores

        if not job.is_recovery and job.chapter_number > 1:
            previous = job.chapter_number - 1
            if not await stores.chapters.exists(conn, job.series_id, previous):
                logger.info(
                    "chapter_gap_suspected",
                    series_id=str(job.series_id),
                    chapter=chapter_key(job.chapter_number),
                )
                await stores.queue.enqueue(
                    conn,
                    QueueName.GAP_RECOVERY,
                    GapRecoveryJob(series_id=job.series_id),
                    delay_seconds=GAP_RECOVERY_DELAY_SECONDS,
                )

        discovered_at = now
        if job.is_recovery:
            next_seen = await stores.chapters.next_chapter_discovered_at(
                conn, job.series_id, job.chapter_number
            )
            if next_seen is not None:
                discovered_at = next_seen - BACKDATE_STEP

        title = _clean_title(job.chapter_title)
        chapter = await stores.chapters.upsert_logical(
            conn,
            series_id=job.series_id,
            chapter_number=job.chapter_number,
            chapter_title=title,
            published_at=job.published_at,
        )

        _, created = await stores.chapters.upsert_source(
            conn,
            chapter_id=chapter.id,
            series_source_id=job.series_source_id,
            chapter_url=job.chapter_url,
            chapter_title=title,
            source_published_at=job.published_at,
            discovered_at=discovered_at,
        )
        if created:
            await stores.sources.record_new_chapter(conn, job.series_source_id, now + HOT_RECHECK)

        await stores.feed.record_source(
            conn,
            series_id=job.series_id,
            logical_chapter_id=chapter.id,
            chapter_number=job.chapter_number,
            source=FeedSource(name=source_name, url=job.chapter_url, discovered_at=discovered_at),
            now=now,
        )

        if created:
            dispatch = DispatchJob(
                series_id=job.series_id,
                triggering_source_id=job.series_source_id,
                chapter_number=job.chapter_number,
            )
            await stores.queue.enqueue(
                conn,
                QueueName.DISPATCH,
                dispatch,
                delay_seconds=RECOVERY_DISPATCH_DELAY_SECONDS if job.is_recovery else DISPATCH_DELAY_SECONDS,
                dedup_key=dispatch.dedup_key(now),
            )

        return {"status": "ingested", "chapter_id": chapter.id, "created": created}
