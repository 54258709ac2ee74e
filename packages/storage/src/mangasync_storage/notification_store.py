"""NotificationStore - persisted user notifications.

At most one NEW_CHAPTER row exists per (user, series, chapter_number),
enforced by a unique index; inserts that lose a race are ignored.
"""

import json
from decimal import Decimal
from typing import Iterable
from uuid import UUID

import asyncpg
from mangasync_common import StorageError, get_logger
from mangasync_contracts import Notification, NotificationType

logger = get_logger(__name__)


class NotificationStore:
    """Storage operations for Notification entities."""

    @staticmethod
    async def existing_priorities(
        conn: asyncpg.Connection,
        user_ids: list[UUID],
        series_id: UUID,
        chapter_number: Decimal,
    ) -> dict[UUID, int]:
        """Priority of each recipient's existing NEW_CHAPTER notification, if any."""
        if not user_ids:
            return {}
        try:
            rows = await conn.fetch(
                """
                SELECT user_id, priority FROM notifications
                WHERE user_id = ANY($1::uuid[])
                  AND series_id = $2
                  AND chapter_number = $3
                  AND type = $4
                """,
                user_ids,
                series_id,
                chapter_number,
                NotificationType.NEW_CHAPTER.value,
            )
            return {r["user_id"]: r["priority"] for r in rows}
        except Exception as e:
            logger.error("notification_lookup_failed", series_id=str(series_id), error=str(e))
            raise StorageError(f"Failed to load existing notifications: {e}") from e

    @staticmethod
    async def replace(
        conn: asyncpg.Connection,
        *,
        series_id: UUID,
        chapter_number: Decimal,
        superseded_user_ids: list[UUID],
        notifications: Iterable[Notification],
    ) -> int:
        """Delete superseded rows and insert new ones; call inside a transaction.

        Returns:
            Number of rows actually inserted
        """
        rows = list(notifications)
        try:
            if superseded_user_ids:
                await conn.execute(
                    """
                    DELETE FROM notifications
                    WHERE user_id = ANY($1::uuid[])
                      AND series_id = $2
                      AND chapter_number = $3
                      AND type = $4
                    """,
                    superseded_user_ids,
                    series_id,
                    chapter_number,
                    NotificationType.NEW_CHAPTER.value,
                )

            if not rows:
                return 0

            inserted = await conn.fetch(
                """
                INSERT INTO notifications (
                    user_id, series_id, type, title, message,
                    priority, chapter_number, metadata
                )
                SELECT n.user_id, $2::uuid, n.type, n.title, n.message,
                       n.priority, $3::numeric, n.metadata::jsonb
                FROM unnest(
                    $1::uuid[], $4::text[], $5::text[], $6::text[], $7::smallint[], $8::text[]
                ) AS n(user_id, type, title, message, priority, metadata)
                ON CONFLICT (user_id, series_id, chapter_number, type) DO NOTHING
                RETURNING id
                """,
                [n.user_id for n in rows],
                series_id,
                chapter_number,
                [n.type.value for n in rows],
                [n.title for n in rows],
                [n.message for n in rows],
                [int(n.priority) for n in rows],
                [json.dumps(n.metadata) for n in rows],
            )
        except Exception as e:
            logger.error("notification_replace_failed", series_id=str(series_id), error=str(e))
            raise StorageError(f"Failed to write notifications: {e}") from e

        return len(inserted)
