"""QueueStore - durable job queue on the ``jobs`` table.

At-least-once delivery: jobs are claimed with ``FOR UPDATE SKIP LOCKED``,
completed or failed explicitly, and retried with exponential backoff until
``max_attempts``. Outstanding jobs (pending or active) are unique per
``(queue, dedup_key)``; a duplicate enqueue is a silent no-op.

Methods take a connection so an enqueue can share the caller's transaction.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional
from uuid import UUID

import asyncpg
from pydantic import BaseModel

from mangasync_common import StorageError, get_logger

logger = get_logger(__name__)


class QueueName:
    """Queue name constants."""

    CANONICALIZE = "canonicalize"
    POLL = "poll-source"
    INGEST = "chapter-ingest"
    GAP_RECOVERY = "gap-recovery"
    DISPATCH = "notification-dispatch"
    DELIVERY = "notification-delivery"
    DELIVERY_PREMIUM = "notification-delivery-premium"

    ALL = (
        CANONICALIZE,
        POLL,
        INGEST,
        GAP_RECOVERY,
        DISPATCH,
        DELIVERY,
        DELIVERY_PREMIUM,
    )
    DELIVERY_LANES = (DELIVERY, DELIVERY_PREMIUM)


class JobState:
    """Job state constants."""

    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class ClaimedJob:
    """A job leased to one worker."""

    id: UUID
    queue: str
    kind: str
    payload: dict[str, Any]
    attempts: int
    max_attempts: int


def _rowcount(result: str) -> int:
    return int(result.split()[-1]) if result else 0


class QueueStore:
    """Storage operations for the jobs table."""

    @staticmethod
    async def enqueue(
        conn: asyncpg.Connection,
        queue: str,
        job: BaseModel,
        *,
        priority: int = 0,
        delay_seconds: float = 0.0,
        max_attempts: int = 3,
        dedup_key: Optional[str] = None,
    ) -> Optional[UUID]:
        """Enqueue a job payload.

        Args:
            conn: Connection (may be inside a transaction)
            queue: Target queue name
            job: Job payload model (serialized in JSON mode)
            priority: Lower runs first
            delay_seconds: Earliest start relative to now
            max_attempts: Total attempts before the job fails permanently
            dedup_key: Defaults to ``job.dedup_key()``

        Returns:
            New job id, or None when an outstanding job with the same key exists

        Example:
            >>> await QueueStore.enqueue(conn, QueueName.POLL, PollJob(series_source_id=ssid),
            ...                          priority=1, dedup_key=f"poll:{ssid}")
        """
        key = dedup_key if dedup_key is not None else job.dedup_key()  # type: ignore[attr-defined]
        payload = job.model_dump(mode="json")

        try:
            job_id = await conn.fetchval(
                """
                INSERT INTO jobs (queue, kind, payload, dedup_key, priority, max_attempts, run_at)
                VALUES ($1, $2, $3, $4, $5, $6, now() + make_interval(secs => $7))
                ON CONFLICT (queue, dedup_key) WHERE state IN ('pending', 'active')
                DO NOTHING
                RETURNING id
                """,
                queue,
                payload["kind"],
                payload,
                key,
                priority,
                max_attempts,
                float(delay_seconds),
            )
        except Exception as e:
            logger.error("job_enqueue_failed", queue=queue, dedup_key=key, error=str(e))
            raise StorageError(f"Failed to enqueue job on {queue}: {e}") from e

        if job_id is None:
            logger.debug("job_enqueue_deduplicated", queue=queue, dedup_key=key)
            return None

        logger.debug("job_enqueued", queue=queue, job_id=str(job_id), dedup_key=key)
        return job_id

    @staticmethod
    async def claim(
        conn: asyncpg.Connection,
        queue: str,
        worker_id: str,
        limit: int = 1,
    ) -> list[ClaimedJob]:
        """Lease up to ``limit`` runnable jobs, lowest priority value first."""
        try:
            rows = await conn.fetch(
                """
                UPDATE jobs
                SET state = 'active', attempts = attempts + 1,
                    locked_at = now(), locked_by = $3
                WHERE id IN (
                    SELECT id FROM jobs
                    WHERE queue = $1 AND state = 'pending' AND run_at <= now()
                    ORDER BY priority ASC, run_at ASC
                    LIMIT $2
                    FOR UPDATE SKIP LOCKED
                )
                RETURNING id, queue, kind, payload, attempts, max_attempts
                """,
                queue,
                limit,
                worker_id,
            )
        except Exception as e:
            logger.error("job_claim_failed", queue=queue, error=str(e))
            raise StorageError(f"Failed to claim jobs on {queue}: {e}") from e

        return [
            ClaimedJob(
                id=row["id"],
                queue=row["queue"],
                kind=row["kind"],
                payload=row["payload"],
                attempts=row["attempts"],
                max_attempts=row["max_attempts"],
            )
            for row in rows
        ]

    @staticmethod
    async def complete(conn: asyncpg.Connection, job_id: UUID) -> None:
        try:
            await conn.execute(
                """
                UPDATE jobs
                SET state = 'completed', finished_at = now(), locked_at = NULL
                WHERE id = $1
                """,
                job_id,
            )
        except Exception as e:
            logger.error("job_complete_failed", job_id=str(job_id), error=str(e))
            raise StorageError(f"Failed to complete job {job_id}: {e}") from e

    @staticmethod
    async def fail(
        conn: asyncpg.Connection,
        job_id: UUID,
        error: str,
        *,
        retryable: bool = True,
        backoff_base_seconds: float = 2.0,
    ) -> str:
        """Record a failed attempt.

        Retryable failures with attempts left go back to ``pending`` with
        run_at = now + base * 2^(attempts-1); everything else is final.

        Returns:
            Resulting state (``pending`` or ``failed``)
        """
        try:
            state = await conn.fetchval(
                """
                UPDATE jobs
                SET state = CASE WHEN $3 AND attempts < max_attempts
                                 THEN 'pending' ELSE 'failed' END,
                    run_at = CASE WHEN $3 AND attempts < max_attempts
                                  THEN now() + make_interval(
                                      secs => $4 * power(2, GREATEST(attempts - 1, 0)))
                                  ELSE run_at END,
                    finished_at = CASE WHEN $3 AND attempts < max_attempts
                                       THEN NULL ELSE now() END,
                    last_error = $2,
                    locked_at = NULL,
                    locked_by = NULL
                WHERE id = $1
                RETURNING state
                """,
                job_id,
                error[:2000],
                retryable,
                float(backoff_base_seconds),
            )
        except Exception as e:
            logger.error("job_fail_failed", job_id=str(job_id), error=str(e))
            raise StorageError(f"Failed to record failure for job {job_id}: {e}") from e

        if state is None:
            raise StorageError(f"Job not found: {job_id}")
        return state

    @staticmethod
    async def pending_count(conn: asyncpg.Connection, queue: str) -> int:
        """Count waiting jobs (pending, including delayed)."""
        counts = await QueueStore.pending_counts(conn, [queue])
        return counts.get(queue, 0)

    @staticmethod
    async def pending_counts(conn: asyncpg.Connection, queues: list[str]) -> dict[str, int]:
        try:
            rows = await conn.fetch(
                """
                SELECT queue, COUNT(*) AS count
                FROM jobs
                WHERE queue = ANY($1::text[]) AND state = 'pending'
                GROUP BY queue
                """,
                list(queues),
            )
        except Exception as e:
            logger.error("job_count_failed", queues=list(queues), error=str(e))
            raise StorageError(f"Failed to count pending jobs: {e}") from e

        counts = {q: 0 for q in queues}
        counts.update({r["queue"]: r["count"] for r in rows})
        return counts

    @staticmethod
    async def oldest_pending_age(conn: asyncpg.Connection, queue: str) -> Optional[float]:
        """Seconds since the oldest runnable pending job became runnable."""
        try:
            age = await conn.fetchval(
                """
                SELECT EXTRACT(EPOCH FROM (now() - MIN(run_at)))
                FROM jobs
                WHERE queue = $1 AND state = 'pending' AND run_at <= now()
                """,
                queue,
            )
        except Exception as e:
            logger.error("job_age_failed", queue=queue, error=str(e))
            raise StorageError(f"Failed to read oldest job age: {e}") from e

        return float(age) if age is not None else None

    @staticmethod
    async def reclaim_stalled(conn: asyncpg.Connection, stalled_after_seconds: float) -> int:
        """Return jobs whose worker vanished to ``pending`` (or fail them when exhausted)."""
        try:
            result = await conn.execute(
                """
                UPDATE jobs
                SET state = CASE WHEN attempts < max_attempts THEN 'pending' ELSE 'failed' END,
                    finished_at = CASE WHEN attempts < max_attempts THEN NULL ELSE now() END,
                    last_error = 'stalled',
                    locked_at = NULL,
                    locked_by = NULL
                WHERE state = 'active'
                  AND locked_at < now() - make_interval(secs => $1)
                """,
                float(stalled_after_seconds),
            )
        except Exception as e:
            logger.error("job_reclaim_failed", error=str(e))
            raise StorageError(f"Failed to reclaim stalled jobs: {e}") from e

        reclaimed = _rowcount(result)
        if reclaimed > 0:
            logger.warning("jobs_reclaimed", count=reclaimed)
        return reclaimed

    @staticmethod
    async def purge_finished(conn: asyncpg.Connection, older_than_seconds: float) -> int:
        """Delete completed and failed jobs older than the retention window."""
        try:
            result = await conn.execute(
                """
                DELETE FROM jobs
                WHERE state IN ('completed', 'failed')
                  AND finished_at < now() - make_interval(secs => $1)
                """,
                float(older_than_seconds),
            )
        except Exception as e:
            logger.error("job_purge_failed", error=str(e))
            raise StorageError(f"Failed to purge finished jobs: {e}") from e

        purged = _rowcount(result)
        if purged > 0:
            logger.info("jobs_purged", count=purged)
        return purged
