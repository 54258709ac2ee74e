"""FeedStore - 24-hour availability feed entries.

One entry per (series, chapter_number) per 24h window lists every source
that reported the chapter; a source name appears at most once.
"""

from datetime import datetime, timedelta
from decimal import Decimal
from uuid import UUID

import asyncpg
from mangasync_common import StorageError, get_logger
from mangasync_contracts import FeedEntry, FeedSource

logger = get_logger(__name__)

FEED_WINDOW = timedelta(hours=24)


class FeedStore:
    """Storage operations for FeedEntry entities."""

    @staticmethod
    async def record_source(
        conn: asyncpg.Connection,
        *,
        series_id: UUID,
        logical_chapter_id: UUID,
        chapter_number: Decimal,
        source: FeedSource,
        now: datetime,
    ) -> FeedEntry:
        """Append ``source`` to the current window's entry, creating it if needed.

        Must run inside the caller's transaction; the window row is locked.
        """
        source_json = source.model_dump(mode="json")

        try:
            row = await conn.fetchrow(
                """
                SELECT * FROM feed_entries
                WHERE series_id = $1 AND chapter_number = $2 AND first_discovered_at > $3
                ORDER BY first_discovered_at DESC
                LIMIT 1
                FOR UPDATE
                """,
                series_id,
                chapter_number,
                now - FEED_WINDOW,
            )

            if row is None:
                row = await conn.fetchrow(
                    """
                    INSERT INTO feed_entries (
                        series_id, logical_chapter_id, chapter_number, sources,
                        first_discovered_at, last_updated_at
                    ) VALUES ($1, $2, $3, $4, $5, $5)
                    RETURNING *
                    """,
                    series_id,
                    logical_chapter_id,
                    chapter_number,
                    [source_json],
                    now,
                )
                logger.debug("feed_entry_created", series_id=str(series_id), source=source.name)
            elif not any(s.get("name") == source.name for s in row["sources"]):
                row = await conn.fetchrow(
                    """
                    UPDATE feed_entries
                    SET sources = sources || $2::jsonb, last_updated_at = $3
                    WHERE id = $1
                    RETURNING *
                    """,
                    row["id"],
                    [source_json],
                    now,
                )
                logger.debug("feed_entry_source_added", series_id=str(series_id), source=source.name)
        except Exception as e:
            logger.error("feed_upsert_failed", series_id=str(series_id), error=str(e))
            raise StorageError(f"Failed to record feed source: {e}") from e

        return FeedEntry.model_validate(dict(row))
