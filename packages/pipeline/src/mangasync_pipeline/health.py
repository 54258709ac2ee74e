"""Delivery backlog health.

The notification system degrades by backlog size (pending jobs across both
delivery lanes): above ``overloaded`` batches are delayed, above ``critical``
they run in lite mode, above ``rejected`` free batches are dropped.
"""

from dataclasses import dataclass
from typing import Any

import asyncpg
from mangasync_common import get_logger
from mangasync_storage import QueueName, QueueStore

logger = get_logger(__name__)


@dataclass(frozen=True)
class BacklogHealth:
    total_waiting: int
    is_overloaded: bool
    is_critical: bool
    is_rejected: bool


HEALTHY = BacklogHealth(total_waiting=0, is_overloaded=False, is_critical=False, is_rejected=False)


def classify_backlog(
    total_waiting: int,
    *,
    overloaded: int = 10_000,
    critical: int = 50_000,
    rejected: int = 100_000,
) -> BacklogHealth:
    return BacklogHealth(
        total_waiting=total_waiting,
        is_overloaded=total_waiting > overloaded,
        is_critical=total_waiting > critical,
        is_rejected=total_waiting > rejected,
    )


async def delivery_backlog(
    conn: asyncpg.Connection,
    *,
    overloaded: int = 10_000,
    critical: int = 50_000,
    rejected: int = 100_000,
    queue_store: Any = QueueStore,
) -> BacklogHealth:
    """Classify the current delivery backlog.

    A failed count reads as healthy: the backlog check must never block
    delivery on its own.
    """
    try:
        counts = await queue_store.pending_counts(conn, list(QueueName.DELIVERY_LANES))
    except Exception as e:
        logger.warning("backlog_check_failed", error=str(e))
        return HEALTHY

    return classify_backlog(
        sum(counts.values()),
        overloaded=overloaded,
        critical=critical,
        rejected=rejected,
    )
