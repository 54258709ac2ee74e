"""LibraryStore - read access to user libraries (owned by the API service)."""

from uuid import UUID

import asyncpg
from mangasync_common import StorageError, get_logger
from mangasync_contracts import Recipient

logger = get_logger(__name__)


class LibraryStore:
    """Subscriber queries over ``library_entries`` joined with ``users``."""

    @staticmethod
    async def list_recipients(conn: asyncpg.Connection, series_id: UUID) -> list[Recipient]:
        """Users following the series with new-chapter notifications enabled."""
        try:
            rows = await conn.fetch(
                """
                SELECT u.id AS user_id,
                       u.is_premium,
                       u.safe_browsing_mode,
                       le.preferred_source AS series_preferred_source,
                       u.preferred_source AS global_preferred_source
                FROM library_entries le
                JOIN users u ON u.id = le.user_id
                WHERE le.series_id = $1 AND le.notify_new_chapters
                """,
                series_id,
            )
            return [Recipient.model_validate(dict(r)) for r in rows]
        except Exception as e:
            logger.error("recipient_list_failed", series_id=str(series_id), error=str(e))
            raise StorageError(f"Failed to list recipients: {e}") from e


class PgRecipientResolver:
    """RecipientResolver backed by the library tables."""

    def __init__(self, pool: asyncpg.Pool):
        self._pool = pool

    async def resolve(self, series_id: UUID) -> list[Recipient]:
        async with self._pool.acquire() as conn:
            return await LibraryStore.list_recipients(conn, series_id)
