"""SeriesStore - operations for the canonical ``series`` table.

Provides:
- Lookup by id, external id, or case-insensitive exact title
- Create with the merged canonical fields
- Partial update of mergeable fields
"""

from typing import Any, Optional
from uuid import UUID

import asyncpg
from mangasync_common import StorageError, get_logger
from mangasync_contracts import Series

logger = get_logger(__name__)

_UPDATABLE_FIELDS = (
    "title",
    "alternative_titles",
    "description",
    "cover_url",
    "type",
    "status",
    "genres",
    "tags",
    "content_rating",
    "external_id",
)


class SeriesStore:
    """Storage operations for Series entities.

    All methods take a connection so callers control the transaction.
    """

    @staticmethod
    async def get(conn: asyncpg.Connection, series_id: UUID) -> Optional[Series]:
        try:
            row = await conn.fetchrow("SELECT * FROM series WHERE id = $1", series_id)
            return _row_to_series(row) if row else None
        except Exception as e:
            logger.error("series_get_failed", series_id=str(series_id), error=str(e))
            raise StorageError(f"Failed to get series: {e}") from e

    @staticmethod
    async def find_by_external_id(conn: asyncpg.Connection, external_id: str) -> Optional[Series]:
        try:
            row = await conn.fetchrow(
                "SELECT * FROM series WHERE external_id = $1 FOR UPDATE", external_id
            )
            return _row_to_series(row) if row else None
        except Exception as e:
            logger.error("series_find_external_failed", external_id=external_id, error=str(e))
            raise StorageError(f"Failed to find series by external id: {e}") from e

    @staticmethod
    async def find_by_title(conn: asyncpg.Connection, title: str) -> Optional[Series]:
        """Case-insensitive exact title match (oldest series wins)."""
        try:
            row = await conn.fetchrow(
                """
                SELECT * FROM series
                WHERE lower(title) = lower($1)
                ORDER BY created_at ASC
                LIMIT 1
                FOR UPDATE
                """,
                title,
            )
            return _row_to_series(row) if row else None
        except Exception as e:
            logger.error("series_find_title_failed", title=title[:50], error=str(e))
            raise StorageError(f"Failed to find series by title: {e}") from e

    @staticmethod
    async def find_by_alternative_title(conn: asyncpg.Connection, title: str) -> Optional[Series]:
        """Case-insensitive exact match against any alternative title."""
        try:
            row = await conn.fetchrow(
                """
                SELECT * FROM series s
                WHERE EXISTS (
                    SELECT 1 FROM unnest(s.alternative_titles) AS alt
                    WHERE lower(alt) = lower($1)
                )
                ORDER BY created_at ASC
                LIMIT 1
                """,
                title,
            )
            return _row_to_series(row) if row else None
        except Exception as e:
            logger.error("series_find_alt_title_failed", title=title[:50], error=str(e))
            raise StorageError(f"Failed to find series by alternative title: {e}") from e

    @staticmethod
    async def create(
        conn: asyncpg.Connection,
        *,
        title: str,
        alternative_titles: Optional[list[str]] = None,
        description: Optional[str] = None,
        cover_url: Optional[str] = None,
        type: str = "manga",
        status: Optional[str] = None,
        genres: Optional[list[str]] = None,
        tags: Optional[list[str]] = None,
        content_rating: Optional[str] = None,
        external_id: Optional[str] = None,
    ) -> Series:
        """Insert a new canonical series.

        Raises:
            StorageError: On failure, including a duplicate external id
        """
        try:
            row = await conn.fetchrow(
                """
                INSERT INTO series (
                    title, alternative_titles, description, cover_url, type,
                    status, genres, tags, content_rating, external_id
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                RETURNING *
                """,
                title,
                alternative_titles or [],
                description,
                cover_url,
                type,
                status,
                genres or [],
                tags or [],
                content_rating,
                external_id,
            )
        except asyncpg.UniqueViolationError as e:
            logger.error("series_create_duplicate", external_id=external_id, error=str(e))
            raise StorageError(f"Series with external_id '{external_id}' already exists") from e
        except Exception as e:
            logger.error("series_create_failed", title=title[:50], error=str(e))
            raise StorageError(f"Failed to create series: {e}") from e

        logger.info("series_created", series_id=str(row["id"]), title=title[:50])
        return _row_to_series(row)

    @staticmethod
    async def update(conn: asyncpg.Connection, series_id: UUID, fields: dict[str, Any]) -> Series:
        """Update the given mergeable fields and bump ``updated_at``.

        Raises:
            ValueError: If ``fields`` names a non-updatable column
            StorageError: If the series does not exist or the update fails
        """
        unknown = set(fields) - set(_UPDATABLE_FIELDS)
        if unknown:
            raise ValueError(f"Not updatable: {sorted(unknown)}")

        set_clauses = ["updated_at = now()"]
        params: list[Any] = []
        for name in _UPDATABLE_FIELDS:
            if name in fields:
                params.append(fields[name])
                set_clauses.append(f"{name} = ${len(params)}")
        params.append(series_id)

        try:
            row = await conn.fetchrow(
                f"""
                UPDATE series SET {', '.join(set_clauses)}
                WHERE id = ${len(params)}
                RETURNING *
                """,
                *params,
            )
        except Exception as e:
            logger.error("series_update_failed", series_id=str(series_id), error=str(e))
            raise StorageError(f"Failed to update series: {e}") from e

        if row is None:
            raise StorageError(f"Series not found: {series_id}")
        return _row_to_series(row)


def _row_to_series(row: asyncpg.Record) -> Series:
    """Convert database row to Series model."""
    return Series(
        id=row["id"],
        title=row["title"],
        alternative_titles=list(row["alternative_titles"] or []),
        description=row["description"],
        cover_url=row["cover_url"],
        type=row["type"],
        status=row["status"],
        genres=list(row["genres"] or []),
        tags=list(row["tags"] or []),
        content_rating=row["content_rating"],
        external_id=row["external_id"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )
