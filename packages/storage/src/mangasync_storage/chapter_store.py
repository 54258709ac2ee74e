"""ChapterStore - logical chapters and their per-source instances.

A LogicalChapter is unique per (series_id, chapter_number) and its number
never changes; a ChapterSource is unique per (series_source_id, chapter_id).
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

import asyncpg
from mangasync_common import StorageError, get_logger
from mangasync_contracts import ChapterSource, LogicalChapter

logger = get_logger(__name__)


class ChapterStore:
    """Storage operations for LogicalChapter and ChapterSource entities."""

    @staticmethod
    async def exists(conn: asyncpg.Connection, series_id: UUID, chapter_number: Decimal) -> bool:
        try:
            return bool(
                await conn.fetchval(
                    """
                    SELECT EXISTS (
                        SELECT 1 FROM logical_chapters
                        WHERE series_id = $1 AND chapter_number = $2
                    )
                    """,
                    series_id,
                    chapter_number,
                )
            )
        except Exception as e:
            logger.error("chapter_exists_failed", series_id=str(series_id), error=str(e))
            raise StorageError(f"Failed to check chapter: {e}") from e

    @staticmethod
    async def list_numbers(conn: asyncpg.Connection, series_id: UUID) -> list[Decimal]:
        """All known chapter numbers of a series, ascending."""
        try:
            rows = await conn.fetch(
                """
                SELECT chapter_number FROM logical_chapters
                WHERE series_id = $1
                ORDER BY chapter_number ASC
                """,
                series_id,
            )
            return [r["chapter_number"] for r in rows]
        except Exception as e:
            logger.error("chapter_list_failed", series_id=str(series_id), error=str(e))
            raise StorageError(f"Failed to list chapters: {e}") from e

    @staticmethod
    async def next_chapter_discovered_at(
        conn: asyncpg.Connection, series_id: UUID, chapter_number: Decimal
    ) -> Optional[datetime]:
        """Earliest discovered_at among sources of the next higher chapter."""
        try:
            return await conn.fetchval(
                """
                SELECT MIN(cs.discovered_at)
                FROM chapter_sources cs
                WHERE cs.chapter_id = (
                    SELECT id FROM logical_chapters
                    WHERE series_id = $1 AND chapter_number > $2
                    ORDER BY chapter_number ASC
                    LIMIT 1
                )
                """,
                series_id,
                chapter_number,
            )
        except Exception as e:
            logger.error("chapter_next_discovered_failed", series_id=str(series_id), error=str(e))
            raise StorageError(f"Failed to read next chapter: {e}") from e

    @staticmethod
    async def upsert_logical(
        conn: asyncpg.Connection,
        *,
        series_id: UUID,
        chapter_number: Decimal,
        chapter_title: Optional[str] = None,
        published_at: Optional[datetime] = None,
    ) -> LogicalChapter:
        """Insert the chapter or refresh its title / published date.

        The chapter number is the conflict key and is never rewritten.
        """
        try:
            row = await conn.fetchrow(
                """
                INSERT INTO logical_chapters (series_id, chapter_number, chapter_title, published_at)
                VALUES ($1, $2, $3, $4)
                ON CONFLICT (series_id, chapter_number) DO UPDATE
                    SET chapter_title = COALESCE(EXCLUDED.chapter_title, logical_chapters.chapter_title),
                        published_at = COALESCE(EXCLUDED.published_at, logical_chapters.published_at)
                RETURNING *
                """,
                series_id,
                chapter_number,
                chapter_title,
                published_at,
            )
            return LogicalChapter.model_validate(dict(row))
        except Exception as e:
            logger.error("chapter_upsert_failed", series_id=str(series_id), error=str(e))
            raise StorageError(f"Failed to upsert chapter: {e}") from e

    @staticmethod
    async def upsert_source(
        conn: asyncpg.Connection,
        *,
        chapter_id: UUID,
        series_source_id: UUID,
        chapter_url: str,
        chapter_title: Optional[str] = None,
        source_published_at: Optional[datetime] = None,
        discovered_at: datetime,
    ) -> tuple[ChapterSource, bool]:
        """Insert a source instance, or refresh the existing one.

        An existing row keeps its original discovered_at.

        Returns:
            ``(chapter_source, created)``
        """
        try:
            row = await conn.fetchrow(
                """
                INSERT INTO chapter_sources (
                    chapter_id, series_source_id, chapter_url, chapter_title,
                    source_published_at, discovered_at, last_checked_at, is_available
                ) VALUES ($1, $2, $3, $4, $5, $6, now(), TRUE)
                ON CONFLICT (series_source_id, chapter_id) DO UPDATE
                    SET chapter_url = EXCLUDED.chapter_url,
                        chapter_title = COALESCE(EXCLUDED.chapter_title, chapter_sources.chapter_title),
                        is_available = TRUE,
                        last_checked_at = now()
                RETURNING *, (xmax = 0) AS inserted
                """,
                chapter_id,
                series_source_id,
                chapter_url,
                chapter_title,
                source_published_at,
                discovered_at,
            )
        except Exception as e:
            logger.error("chapter_source_upsert_failed", chapter_id=str(chapter_id), error=str(e))
            raise StorageError(f"Failed to upsert chapter source: {e}") from e

        data = dict(row)
        created = bool(data.pop("inserted"))
        return ChapterSource.model_validate(data), created
