"""Series lifecycle events.

Canonicalization announces a resolved series on the ``series_events``
Postgres channel so API instances can push it to waiting clients.
"""

import json
from typing import Optional, Protocol, runtime_checkable
from uuid import UUID

import asyncpg
from mangasync_common import get_logger

logger = get_logger(__name__)

SERIES_CHANNEL = "series_events"
SERIES_AVAILABLE = "series.available"


@runtime_checkable
class SeriesEventPublisher(Protocol):
    async def series_available(
        self, series_id: UUID, title: str, created: bool, external_id: Optional[str] = None
    ) -> None: ...


class PgNotifyPublisher:
    """Publishes events with ``pg_notify`` on a pooled connection."""

    def __init__(self, pool: asyncpg.Pool, channel: str = SERIES_CHANNEL):
        self._pool = pool
        self.channel = channel

    async def series_available(
        self, series_id: UUID, title: str, created: bool, external_id: Optional[str] = None
    ) -> None:
        payload = json.dumps(
            {
                "event": SERIES_AVAILABLE,
                "series_id": str(series_id),
                "external_id": external_id,
                "title": title,
                "created": created,
            }
        )
        async with self._pool.acquire() as conn:
            await conn.execute("SELECT pg_notify($1, $2)", self.channel, payload)
        logger.debug("series_event_published", series_id=str(series_id), created=created)
