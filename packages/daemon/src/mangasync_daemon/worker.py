"""Queue consumers.

One ``QueueConsumer`` per queue claims jobs from the ``jobs`` table and runs
them through that queue's handler, at most ``concurrency`` at a time.

Failure handling:
    - ``JobValidationError`` / ``NonRetryableError`` / non-retryable
      ``ScraperError`` are final (the job is marked failed)
    - everything else goes back to ``pending`` with exponential backoff
      until ``max_attempts``
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, Optional

import asyncpg
import structlog
from mangasync_common import JobValidationError, NonRetryableError, get_logger
from mangasync_contracts import parse_job
from mangasync_sources import ScraperError
from mangasync_storage import ClaimedJob, JobState, QueueName, QueueStore
from pydantic import ValidationError

from mangasync_daemon.metrics import ACTIVE_JOBS, JOB_COUNT, JOB_DURATION, observe_result

logger = get_logger(__name__)

Handler = Callable[[Any], Awaitable[dict]]

QUEUE_CONCURRENCY: dict[str, int] = {
    QueueName.CANONICALIZE: 2,
    QueueName.POLL: 20,
    QueueName.INGEST: 10,
    QueueName.GAP_RECOVERY: 1,
    QueueName.DISPATCH: 3,
    QueueName.DELIVERY: 5,
    QueueName.DELIVERY_PREMIUM: 15,
}


def is_final(error: BaseException) -> bool:
    """True if retrying the job cannot succeed."""
    if isinstance(error, (JobValidationError, NonRetryableError)):
        return True
    if isinstance(error, ScraperError):
        return not error.retryable
    return False


def decode_job(claimed: ClaimedJob) -> Any:
    """Validate a claimed payload; schema failures become ``JobValidationError``."""
    try:
        return parse_job(claimed.payload)
    except ValidationError as e:
        raise JobValidationError(f"Invalid {claimed.queue} payload: {e}") from e


class QueueConsumer:
    """Claim-and-run loop for one queue.

    Args:
        pool: Database pool
        queue: Queue name
        handler: ``async (job) -> dict``
        worker_id: Recorded as the lease holder on claimed jobs
        concurrency: Maximum jobs in flight
        poll_interval: Idle sleep when the queue is empty
        queue_store: Queue operations (defaults to QueueStore)
    """

    def __init__(
        self,
        pool: asyncpg.Pool,
        queue: str,
        handler: Handler,
        *,
        worker_id: str,
        concurrency: Optional[int] = None,
        poll_interval: float = 1.0,
        queue_store: Any = QueueStore,
    ):
        self.pool = pool
        self.queue = queue
        self.handler = handler
        self.worker_id = worker_id
        self.concurrency = concurrency or QUEUE_CONCURRENCY.get(queue, 1)
        self.poll_interval = poll_interval
        self.queue_store = queue_store
        self._slots = asyncio.Semaphore(self.concurrency)
        self._stopping = asyncio.Event()
        self._tasks: set[asyncio.Task] = set()

    def stop(self) -> None:
        self._stopping.set()

    async def run(self) -> None:
        """Run until ``stop()``; in-flight jobs are awaited before returning."""
        logger.info("consumer_started", queue=self.queue, concurrency=self.concurrency)
        try:
            while not self._stopping.is_set():
                await self._slots.acquire()
                if self._stopping.is_set():
                    self._slots.release()
                    break
                claimed = await self._claim()
                if claimed is None:
                    self._slots.release()
                    await self._idle()
                    continue

                task = asyncio.create_task(self._run_and_release(claimed))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
        finally:
            if self._tasks:
                await asyncio.gather(*self._tasks, return_exceptions=True)
            logger.info("consumer_stopped", queue=self.queue)

    async def _claim(self) -> Optional[ClaimedJob]:
        try:
            async with self.pool.acquire() as conn:
                jobs = await self.queue_store.claim(conn, self.queue, self.worker_id, limit=1)
        except Exception as e:
            logger.error("consumer_claim_failed", queue=self.queue, error=str(e))
            return None
        return jobs[0] if jobs else None

    async def _idle(self) -> None:
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=self.poll_interval)
        except asyncio.TimeoutError:
            pass

    async def _run_and_release(self, claimed: ClaimedJob) -> None:
        try:
            await self.process(claimed)
        finally:
            self._slots.release()

    async def process(self, claimed: ClaimedJob) -> str:
        """Run one claimed job and record its outcome.

        Returns:
            ``completed``, ``retry`` or ``failed``
        """
        payload = claimed.payload if isinstance(claimed.payload, dict) else {}
        structlog.contextvars.bind_contextvars(
            job_id=str(claimed.id),
            trace_id=payload.get("trace_id") or str(claimed.id),
            queue=self.queue,
        )
        ACTIVE_JOBS.labels(queue=self.queue).inc()
        start = time.perf_counter()
        outcome = "completed"

        try:
            job = decode_job(claimed)
            result = await self.handler(job)
        except Exception as e:
            final = is_final(e)
            logger.error(
                "job_failed",
                error=str(e),
                error_type=type(e).__name__,
                attempt=claimed.attempts,
                max_attempts=claimed.max_attempts,
                final=final,
            )
            outcome = await self._fail(claimed, e, retryable=not final)
        else:
            await self._complete(claimed)
            observe_result(self.queue, result)
            logger.info("job_completed", attempt=claimed.attempts, result=result)
        finally:
            duration = time.perf_counter() - start
            ACTIVE_JOBS.labels(queue=self.queue).dec()
            JOB_DURATION.labels(queue=self.queue, outcome=outcome).observe(duration)
            JOB_COUNT.labels(queue=self.queue, outcome=outcome).inc()
            structlog.contextvars.unbind_contextvars("job_id", "trace_id", "queue")

        return outcome

    async def _complete(self, claimed: ClaimedJob) -> None:
        async with self.pool.acquire() as conn:
            await self.queue_store.complete(conn, claimed.id)

    async def _fail(self, claimed: ClaimedJob, error: BaseException, *, retryable: bool) -> str:
        async with self.pool.acquire() as conn:
            state = await self.queue_store.fail(
                conn, claimed.id, f"{type(error).__name__}: {error}", retryable=retryable
            )
        return "retry" if state == JobState.PENDING else "failed"
