"""SeriesSourceStore - operations for the ``series_sources`` table.

Provides:
- Link upsert with rebind protection
- Poll bookkeeping (success, failure, deferral, circuit open)
- Due-source claiming for the scheduler
- Tier maintenance (HOT / WARM / COLD)
"""

from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID

import asyncpg
from mangasync_common import SourceRebindError, StorageError, get_logger
from mangasync_contracts import SeriesSource, SyncPriority

logger = get_logger(__name__)


def _rowcount(result: str) -> int:
    return int(result.split()[-1]) if result else 0


class SeriesSourceStore:
    """Storage operations for SeriesSource entities."""

    @staticmethod
    async def get(conn: asyncpg.Connection, series_source_id: UUID) -> Optional[SeriesSource]:
        try:
            row = await conn.fetchrow("SELECT * FROM series_sources WHERE id = $1", series_source_id)
            return SeriesSource.model_validate(dict(row)) if row else None
        except Exception as e:
            logger.error("series_source_get_failed", id=str(series_source_id), error=str(e))
            raise StorageError(f"Failed to get series source: {e}") from e

    @staticmethod
    async def find_by_source(
        conn: asyncpg.Connection, source_name: str, source_id: str
    ) -> Optional[SeriesSource]:
        try:
            row = await conn.fetchrow(
                "SELECT * FROM series_sources WHERE source_name = $1 AND source_id = $2",
                source_name,
                source_id,
            )
            return SeriesSource.model_validate(dict(row)) if row else None
        except Exception as e:
            logger.error("series_source_find_failed", source=source_name, error=str(e))
            raise StorageError(f"Failed to find series source: {e}") from e

    @staticmethod
    async def list_for_series(
        conn: asyncpg.Connection, series_id: UUID, active_only: bool = False
    ) -> list[SeriesSource]:
        try:
            rows = await conn.fetch(
                """
                SELECT * FROM series_sources
                WHERE series_id = $1 AND (is_active OR NOT $2)
                ORDER BY trust_score DESC, source_name
                """,
                series_id,
                active_only,
            )
            return [SeriesSource.model_validate(dict(r)) for r in rows]
        except Exception as e:
            logger.error("series_source_list_failed", series_id=str(series_id), error=str(e))
            raise StorageError(f"Failed to list series sources: {e}") from e

    @staticmethod
    async def upsert_link(
        conn: asyncpg.Connection,
        *,
        series_id: UUID,
        source_name: str,
        source_id: str,
        source_url: str,
        source_title: Optional[str] = None,
        match_confidence: Optional[float] = None,
        cover_url: Optional[str] = None,
    ) -> SeriesSource:
        """Create or refresh the (source_name, source_id) link for a series.

        Raises:
            SourceRebindError: If the link is bound to a different series
        """
        try:
            row = await conn.fetchrow(
                """
                INSERT INTO series_sources (
                    series_id, source_name, source_id, source_url,
                    source_title, match_confidence, cover_url
                ) VALUES ($1, $2, $3, $4, $5, $6, $7)
                ON CONFLICT (source_name, source_id) DO UPDATE
                    SET source_url = EXCLUDED.source_url,
                        source_title = COALESCE(EXCLUDED.source_title, series_sources.source_title),
                        match_confidence = COALESCE(EXCLUDED.match_confidence, series_sources.match_confidence),
                        cover_url = COALESCE(EXCLUDED.cover_url, series_sources.cover_url)
                    WHERE series_sources.series_id = EXCLUDED.series_id
                RETURNING *
                """,
                series_id,
                source_name,
                source_id,
                source_url,
                source_title,
                match_confidence,
                cover_url,
            )
            if row is None:
                bound = await conn.fetchval(
                    "SELECT series_id FROM series_sources WHERE source_name = $1 AND source_id = $2",
                    source_name,
                    source_id,
                )
        except Exception as e:
            logger.error("series_source_upsert_failed", source=source_name, error=str(e))
            raise StorageError(f"Failed to upsert series source: {e}") from e

        if row is None:
            logger.warning(
                "series_source_rebind_rejected",
                source=source_name,
                source_id=source_id,
                bound_series_id=str(bound),
                requested_series_id=str(series_id),
            )
            raise SourceRebindError(source_name, source_id, str(bound), str(series_id))

        return SeriesSource.model_validate(dict(row))

    @staticmethod
    async def record_new_chapter(
        conn: asyncpg.Connection, series_source_id: UUID, next_check_at: datetime
    ) -> None:
        """A new chapter arrived: count it and promote the source to HOT."""
        try:
            await conn.execute(
                """
                UPDATE series_sources
                SET source_chapter_count = source_chapter_count + 1,
                    sync_priority = 'HOT',
                    next_check_at = $2
                WHERE id = $1
                """,
                series_source_id,
                next_check_at,
            )
        except Exception as e:
            logger.error("series_source_new_chapter_failed", id=str(series_source_id), error=str(e))
            raise StorageError(f"Failed to record new chapter: {e}") from e

    @staticmethod
    async def record_success(conn: asyncpg.Connection, series_source_id: UUID) -> None:
        try:
            await conn.execute(
                """
                UPDATE series_sources
                SET failure_count = 0, last_success_at = now(), last_checked_at = now()
                WHERE id = $1
                """,
                series_source_id,
            )
        except Exception as e:
            logger.error("series_source_success_failed", id=str(series_source_id), error=str(e))
            raise StorageError(f"Failed to record poll success: {e}") from e

    @staticmethod
    async def record_failure(
        conn: asyncpg.Connection,
        series_source_id: UUID,
        next_check_at: Optional[datetime] = None,
    ) -> None:
        """Increment failure_count; optionally push next_check_at (cool-down)."""
        try:
            await conn.execute(
                """
                UPDATE series_sources
                SET failure_count = failure_count + 1,
                    last_checked_at = now(),
                    next_check_at = COALESCE($2, next_check_at)
                WHERE id = $1
                """,
                series_source_id,
                next_check_at,
            )
        except Exception as e:
            logger.error("series_source_failure_failed", id=str(series_source_id), error=str(e))
            raise StorageError(f"Failed to record poll failure: {e}") from e

    @staticmethod
    async def defer(conn: asyncpg.Connection, series_source_id: UUID, next_check_at: datetime) -> None:
        try:
            await conn.execute(
                "UPDATE series_sources SET next_check_at = $2 WHERE id = $1",
                series_source_id,
                next_check_at,
            )
        except Exception as e:
            logger.error("series_source_defer_failed", id=str(series_source_id), error=str(e))
            raise StorageError(f"Failed to defer series source: {e}") from e

    @staticmethod
    async def open_circuit(conn: asyncpg.Connection, series_source_id: UUID, next_check_at: datetime) -> None:
        """Demote a repeatedly failing source to COLD until ``next_check_at``."""
        try:
            await conn.execute(
                """
                UPDATE series_sources
                SET sync_priority = 'COLD', next_check_at = $2
                WHERE id = $1
                """,
                series_source_id,
                next_check_at,
            )
        except Exception as e:
            logger.error("series_source_circuit_failed", id=str(series_source_id), error=str(e))
            raise StorageError(f"Failed to open circuit: {e}") from e

    @staticmethod
    async def claim_due(
        conn: asyncpg.Connection,
        limit: int,
        intervals: dict[SyncPriority, timedelta],
    ) -> list[SeriesSource]:
        """Select up to ``limit`` due active sources and advance their next_check_at.

        A source is due when next_check_at is null or in the past. The advance
        uses the source's tier interval, so a source is claimed once per cycle
        even if several schedulers race.
        """
        try:
            rows = await conn.fetch(
                """
                UPDATE series_sources
                SET next_check_at = now() + CASE sync_priority
                        WHEN 'HOT' THEN $2::interval
                        WHEN 'WARM' THEN $3::interval
                        ELSE $4::interval
                    END
                WHERE id IN (
                    SELECT id FROM series_sources
                    WHERE is_active AND (next_check_at IS NULL OR next_check_at <= now())
                    ORDER BY next_check_at ASC NULLS FIRST
                    LIMIT $1
                    FOR UPDATE SKIP LOCKED
                )
                RETURNING *
                """,
                limit,
                intervals[SyncPriority.HOT],
                intervals[SyncPriority.WARM],
                intervals[SyncPriority.COLD],
            )
            return [SeriesSource.model_validate(dict(r)) for r in rows]
        except Exception as e:
            logger.error("series_source_claim_due_failed", error=str(e))
            raise StorageError(f"Failed to claim due sources: {e}") from e

    @staticmethod
    async def apply_tier_maintenance(
        conn: asyncpg.Connection,
        *,
        hot_subscriber_threshold: int,
        warm_after: timedelta,
        cold_after: timedelta,
    ) -> dict[str, int]:
        """Re-tier sources by popularity and freshness.

        - Series with more than ``hot_subscriber_threshold`` subscribers: HOT
        - HOT sources idle longer than ``warm_after`` (and not popular): WARM
        - WARM sources idle longer than ``cold_after``: COLD

        Returns:
            Counts per transition
        """
        try:
            promoted = await conn.execute(
                """
                UPDATE series_sources ss
                SET sync_priority = 'HOT'
                FROM (
                    SELECT series_id FROM library_entries
                    GROUP BY series_id HAVING COUNT(*) > $1
                ) popular
                WHERE ss.series_id = popular.series_id AND ss.sync_priority <> 'HOT'
                """,
                hot_subscriber_threshold,
            )
            warmed = await conn.execute(
                """
                UPDATE series_sources ss
                SET sync_priority = 'WARM'
                WHERE ss.sync_priority = 'HOT'
                  AND ss.last_success_at < now() - $2::interval
                  AND (
                      SELECT COUNT(*) FROM library_entries le WHERE le.series_id = ss.series_id
                  ) <= $1
                """,
                hot_subscriber_threshold,
                warm_after,
            )
            cooled = await conn.execute(
                """
                UPDATE series_sources
                SET sync_priority = 'COLD'
                WHERE sync_priority = 'WARM' AND last_success_at < now() - $1::interval
                """,
                cold_after,
            )
        except Exception as e:
            logger.error("series_source_tier_maintenance_failed", error=str(e))
            raise StorageError(f"Failed tier maintenance: {e}") from e

        counts = {
            "promoted_hot": _rowcount(promoted),
            "demoted_warm": _rowcount(warmed),
            "demoted_cold": _rowcount(cooled),
        }
        logger.info("tier_maintenance_applied", **counts)
        return counts
