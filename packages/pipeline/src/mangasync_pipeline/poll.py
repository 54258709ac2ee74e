"""Source poller - scrape one series source and fan out ingest jobs.

Guards run before any upstream request, cheapest first: missing source,
system backpressure, persistent-failure circuit, URL allow-list, scraper
lookup, shared rate limit. Upstream failures push ``next_check_at`` back by a
cool-down chosen from the error type.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import asyncpg
import structlog
from mangasync_common import get_logger
from mangasync_contracts import IngestJob, PollJob, SeriesSource
from mangasync_sources import (
    CircuitOpenError,
    ProxyBlockedError,
    RateLimitedError,
    ScraperError,
    ScraperRegistry,
    SourceRateLimiter,
    validate_source_url,
)
from mangasync_storage import QueueName

from mangasync_pipeline.health import delivery_backlog
from mangasync_pipeline.stores import Stores

logger = get_logger(__name__)

MAX_CONSECUTIVE_FAILURES = 5
INGEST_MAX_ATTEMPTS = 3

BACKPRESSURE_DELAY = timedelta(minutes=15)
CIRCUIT_OPEN_DELAY = timedelta(hours=24)
RATE_LIMIT_TIMEOUT_DELAY = timedelta(minutes=5)
UPSTREAM_RATE_LIMIT_COOLDOWN = timedelta(hours=1)
PROXY_BLOCK_COOLDOWN = timedelta(hours=2)
DEFAULT_FAILURE_COOLDOWN = timedelta(minutes=15)


def failure_cooldown(error: BaseException) -> timedelta:
    if isinstance(error, RateLimitedError):
        return UPSTREAM_RATE_LIMIT_COOLDOWN
    if isinstance(error, ProxyBlockedError):
        return PROXY_BLOCK_COOLDOWN
    return DEFAULT_FAILURE_COOLDOWN


def is_retryable(error: BaseException) -> bool:
    if isinstance(error, ScraperError):
        return error.retryable
    return True


class SourcePoller:
    """Handler for ``poll`` jobs.

    Args:
        pool: Database pool
        registry: Scrapers by source name
        rate_limiter: Shared per-source request limiter
        rate_limit_timeout: Seconds to wait for a request slot
        max_ingest_backlog: Pending ingest jobs past which polling pauses
        backlog_critical: Pending deliveries past which polling pauses
        stores: Store bundle (defaults to the Postgres stores)
    """

    def __init__(
        self,
        pool: asyncpg.Pool,
        registry: ScraperRegistry,
        rate_limiter: SourceRateLimiter,
        *,
        rate_limit_timeout: float = 60.0,
        max_ingest_backlog: int = 50_000,
        backlog_critical: int = 50_000,
        stores: Optional[Stores] = None,
    ):
        self.pool = pool
        self.registry = registry
        self.rate_limiter = rate_limiter
        self.rate_limit_timeout = rate_limit_timeout
        self.max_ingest_backlog = max_ingest_backlog
        self.backlog_critical = backlog_critical
        self.stores = stores or Stores()

    async def handle(self, job: PollJob) -> dict[str, Any]:
        now = datetime.now(timezone.utc)
        sources = self.stores.sources

        async with self.pool.acquire() as conn:
            source = await sources.get(conn, job.series_source_id)
            if source is None:
                logger.warning("poll_source_missing", series_source_id=str(job.series_source_id))
                return {"status": "skipped", "reason": "source_not_found"}

            log = logger.bind(series_source_id=str(source.id), source=source.source_name)

            if await self._under_backpressure(conn):
                log.warning("poll_deferred_backpressure")
                await sources.defer(conn, source.id, now + BACKPRESSURE_DELAY)
                return {"status": "deferred", "reason": "backpressure"}

            if source.failure_count >= MAX_CONSECUTIVE_FAILURES:
                log.warning("poll_circuit_open", failures=source.failure_count)
                await sources.open_circuit(conn, source.id, now + CIRCUIT_OPEN_DELAY)
                return {"status": "skipped", "reason": "circuit_open"}

            if not validate_source_url(source.source_url):
                log.error("poll_invalid_source_url", url=source.source_url)
                await sources.record_failure(conn, source.id)
                return {"status": "skipped", "reason": "invalid_url"}

        scraper = self.registry.get(source.source_name)
        if scraper is None:
            log.error("poll_no_scraper")
            return {"status": "skipped", "reason": "no_scraper"}

        if not await self.rate_limiter.acquire(source.source_name, timeout=self.rate_limit_timeout):
            log.warning("poll_rate_limit_timeout")
            async with self.pool.acquire() as conn:
                await sources.defer(conn, source.id, now + RATE_LIMIT_TIMEOUT_DELAY)
            return {"status": "deferred", "reason": "rate_limit_timeout"}

        try:
            scraped = await scraper.scrape_series(source.source_id)
            enqueued = await self._enqueue_ingests(source, scraped.chapters, job.is_recovery)
        except CircuitOpenError:
            log.warning("poll_scraper_circuit_open")
            async with self.pool.acquire() as conn:
                await sources.defer(conn, source.id, now + DEFAULT_FAILURE_COOLDOWN)
            return {"status": "deferred", "reason": "scraper_circuit_open"}
        except Exception as e:
            retryable = is_retryable(e)
            log.error("poll_failed", error=str(e), error_type=type(e).__name__, retryable=retryable)
            async with self.pool.acquire() as conn:
                await sources.record_failure(conn, source.id, now + failure_cooldown(e))
            if retryable:
                raise
            return {"status": "failed", "reason": getattr(e, "code", None) or type(e).__name__}

        log.info("poll_completed", chapters=len(scraped.chapters), enqueued=enqueued)
        return {"status": "completed", "chapters": len(scraped.chapters), "enqueued": enqueued}

    async def _under_backpressure(self, conn: asyncpg.Connection) -> bool:
        health = await delivery_backlog(conn, critical=self.backlog_critical, queue_store=self.stores.queue)
        if health.is_critical:
            return True
        ingest_waiting = await self.stores.queue.pending_count(conn, QueueName.INGEST)
        return ingest_waiting > self.max_ingest_backlog

    async def _enqueue_ingests(self, source: SeriesSource, chapters: list, is_recovery: bool) -> int:
        trace_id = structlog.contextvars.get_contextvars().get("job_id")
        enqueued = 0
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                for chapter in chapters:
                    job_id = await self.stores.queue.enqueue(
                        conn,
                        QueueName.INGEST,
                        IngestJob(
                            series_source_id=source.id,
                            series_id=source.series_id,
                            chapter_number=chapter.chapter_number,
                            chapter_title=chapter.chapter_title,
                            chapter_url=chapter.chapter_url,
                            published_at=chapter.published_at,
                            is_recovery=is_recovery,
                            trace_id=trace_id,
                        ),
                        max_attempts=INGEST_MAX_ATTEMPTS,
                    )
                    if job_id is not None:
                        enqueued += 1
                await self.stores.sources.record_success(conn, source.id)
        return enqueued
