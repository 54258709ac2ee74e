"""Gap recovery - detect missing chapter numbers and re-poll to fill them."""

from decimal import ROUND_FLOOR, Decimal
from typing import Any, Iterable, Optional

import asyncpg
from mangasync_common import get_logger
from mangasync_contracts import GapRecoveryJob, PollJob
from mangasync_storage import QueueName

from mangasync_pipeline.stores import Stores

logger = get_logger(__name__)

# Below live polling (HOT=1, WARM=2, COLD=3)
RECOVERY_POLL_PRIORITY = 5


def find_missing_chapters(numbers: Iterable[Decimal]) -> list[Decimal]:
    """Whole chapter numbers absent between consecutive known chapters.

    Only integers are ever reported: fractional chapters such as 10.5 are never
    inferred missing, but they do not hide the whole chapters around them
    (10.5 followed by 13 reports 11 and 12).

    Example:
        >>> find_missing_chapters([Decimal(1), Decimal(2), Decimal(4), Decimal(7)])
        [Decimal('3'), Decimal('5'), Decimal('6')]
    """
    ordered = sorted(set(Decimal(n) for n in numbers))
    missing: list[Decimal] = []
    for current, following in zip(ordered, ordered[1:]):
        if following - current <= 1:
            continue
        n = current.to_integral_value(rounding=ROUND_FLOOR) + 1
        while n < following:
            missing.append(Decimal(int(n)))
            n += 1
    return missing


class GapRecoverer:
    """Handler for ``gap_recovery`` jobs."""

    def __init__(self, pool: asyncpg.Pool, *, stores: Optional[Stores] = None):
        self.pool = pool
        self.stores = stores or Stores()

    async def handle(self, job: GapRecoveryJob) -> dict[str, Any]:
        async with self.pool.acquire() as conn:
            numbers = await self.stores.chapters.list_numbers(conn, job.series_id)
            if len(numbers) < 2:
                return {"status": "skipped", "reason": "not_enough_chapters"}

            gaps = find_missing_chapters(numbers)
            if not gaps:
                return {"status": "completed", "gap_count": 0, "source_count": 0}

            logger.info(
                "chapter_gaps_detected",
                series_id=str(job.series_id),
                gap_count=len(gaps),
                sample=[str(g) for g in gaps[:10]],
            )

            sources = await self.stores.sources.list_for_series(conn, job.series_id, active_only=True)
            for source in sources:
                await self.stores.queue.enqueue(
                    conn,
                    QueueName.POLL,
                    PollJob(series_source_id=source.id, is_recovery=True),
                    priority=RECOVERY_POLL_PRIORITY,
                    max_attempts=1,
                )

        return {"status": "triggered", "gap_count": len(gaps), "source_count": len(sources)}
