"""Canonicalizer - resolve scraped series metadata to one canonical series.

Resolution order (first hit wins, no fuzzy matching):

1. ``external_id`` exact match
2. Existing (source_name, source_id) link
3. Case-insensitive exact title match

No hit creates a new series. The whole resolve-merge-link sequence runs in one
transaction under a lock keyed by the normalized title, so two workers
canonicalizing the same title concurrently produce exactly one series.
"""

from typing import Any, Optional

import asyncpg
from mangasync_common import JobValidationError, get_logger
from mangasync_contracts import CanonicalizeJob, Series
from mangasync_sources import choose_cover, is_valid_cover_url, normalize_title
from mangasync_storage import KVStore, with_lock

from mangasync_pipeline.events import SeriesEventPublisher
from mangasync_pipeline.stores import Stores

logger = get_logger(__name__)

LOCK_TTL_SECONDS = 60.0


def _merge_unique(*groups: list[str]) -> list[str]:
    """Order-preserving set union."""
    seen: dict[str, None] = {}
    for group in groups:
        for item in group:
            if item:
                seen.setdefault(item, None)
    return list(seen)


def merge_series_fields(series: Series, job: CanonicalizeJob, *, incoming_is_primary: bool) -> dict[str, Any]:
    """Compute the field updates that merging ``job`` into ``series`` implies.

    Returns:
        Only the fields whose value changes (empty when nothing to do)
    """
    incoming_title = " ".join(job.title.split())
    merged: dict[str, Any] = {
        "alternative_titles": _merge_unique(series.alternative_titles, job.alternative_titles, [incoming_title]),
        "tags": _merge_unique(series.tags, job.tags),
        "cover_url": choose_cover(series.cover_url, job.cover_url, incoming_is_primary=incoming_is_primary),
    }
    if not series.description and job.description:
        merged["description"] = job.description
    if not series.status and job.status:
        merged["status"] = job.status
    if not series.genres and job.genres:
        merged["genres"] = list(job.genres)
    if job.content_rating:
        merged["content_rating"] = job.content_rating
    if not series.external_id and job.external_id:
        merged["external_id"] = job.external_id

    return {name: value for name, value in merged.items() if getattr(series, name) != value}


class Canonicalizer:
    """Handler for ``canonicalize`` jobs.

    Args:
        pool: Database pool
        kv: Shared key/value store (locks)
        primary_source: Source whose covers win the merge
        lock_wait_seconds: How long to wait for a contested title lock
        stores: Store bundle (defaults to the Postgres stores)
        publisher: Receives ``series.available`` after commit
    """

    def __init__(
        self,
        pool: asyncpg.Pool,
        kv: KVStore,
        *,
        primary_source: str = "mangadex",
        lock_wait_seconds: float = 10.0,
        stores: Optional[Stores] = None,
        publisher: Optional[SeriesEventPublisher] = None,
    ):
        self.pool = pool
        self.kv = kv
        self.primary_source = primary_source.lower()
        self.lock_wait_seconds = lock_wait_seconds
        self.stores = stores or Stores()
        self.publisher = publisher

    async def handle(self, job: CanonicalizeJob) -> dict[str, Any]:
        """Resolve, merge and link.

        Returns:
            ``{"series_id": ..., "created": bool}``

        Raises:
            JobValidationError: If the title normalizes to nothing
            SourceRebindError: If the source link belongs to another series
            LockUnavailableError: If the title lock stays contested
        """
        normalized = normalize_title(job.title)
        if not normalized:
            raise JobValidationError(f"Title is blank after normalization: {job.title!r}")

        title = " ".join(job.title.split())
        source_name = job.source_name.lower()

        async with with_lock(
            self.kv,
            f"canonicalize:{normalized[:100]}",
            LOCK_TTL_SECONDS,
            wait_timeout=self.lock_wait_seconds,
        ):
            async with self.pool.acquire() as conn:
                async with conn.transaction():
                    series, created = await self._resolve_and_merge(conn, job, title, source_name)
                    await self.stores.sources.upsert_link(
                        conn,
                        series_id=series.id,
                        source_name=source_name,
                        source_id=job.source_id,
                        source_url=job.source_url,
                        source_title=title,
                        match_confidence=job.confidence,
                        cover_url=job.cover_url if is_valid_cover_url(job.cover_url) else None,
                    )

        logger.info(
            "series_canonicalized",
            series_id=str(series.id),
            source=source_name,
            source_id=job.source_id,
            created=created,
        )
        await self._publish(series, created)
        return {"series_id": series.id, "created": created}

    async def _resolve_and_merge(
        self,
        conn: asyncpg.Connection,
        job: CanonicalizeJob,
        title: str,
        source_name: str,
    ) -> tuple[Series, bool]:
        series = await self._resolve(conn, job, title, source_name)

        if series is None:
            series = await self.stores.series.create(
                conn,
                title=title,
                alternative_titles=_merge_unique(job.alternative_titles, [title]),
                description=job.description,
                cover_url=job.cover_url if is_valid_cover_url(job.cover_url) else None,
                type=job.type,
                status=job.status,
                genres=list(job.genres),
                tags=_merge_unique(job.tags),
                content_rating=job.content_rating,
                external_id=job.external_id,
            )
            return series, True

        updates = merge_series_fields(series, job, incoming_is_primary=source_name == self.primary_source)
        if updates:
            series = await self.stores.series.update(conn, series.id, updates)
            logger.debug("series_merged", series_id=str(series.id), fields=sorted(updates))
        return series, False

    async def _resolve(
        self,
        conn: asyncpg.Connection,
        job: CanonicalizeJob,
        title: str,
        source_name: str,
    ) -> Optional[Series]:
        if job.external_id:
            series = await self.stores.series.find_by_external_id(conn, job.external_id)
            if series is not None:
                logger.debug("series_matched", by="external_id", series_id=str(series.id))
                return series

        link = await self.stores.sources.find_by_source(conn, source_name, job.source_id)
        if link is not None:
            series = await self.stores.series.get(conn, link.series_id)
            if series is not None:
                logger.debug("series_matched", by="source_link", series_id=str(series.id))
                return series

        series = await self.stores.series.find_by_title(conn, title)
        if series is not None:
            logger.debug("series_matched", by="title", series_id=str(series.id))
        return series

    async def _publish(self, series: Series, created: bool) -> None:
        if self.publisher is None:
            return
        try:
            await self.publisher.series_available(series.id, series.title, created, series.external_id)
        except Exception as e:
            logger.warning("series_event_publish_failed", series_id=str(series.id), error=str(e))
