"""Tests for QueueConsumer and failure classification."""

import asyncio
from unittest.mock import AsyncMock
from uuid import uuid4

import pytest
import structlog
from mangasync_common import JobValidationError, LockUnavailableError, NonRetryableError, SourceRebindError
from mangasync_contracts import GapRecoveryJob
from mangasync_daemon.worker import QUEUE_CONCURRENCY, QueueConsumer, decode_job, is_final
from mangasync_sources import CircuitOpenError, RateLimitedError, SelectorNotFoundError
from mangasync_storage import QueueName

pytestmark = pytest.mark.unit


def _queue_store(fail_state="pending"):
    store = AsyncMock()
    store.claim.return_value = []
    store.fail.return_value = fail_state
    return store


def _payload():
    return GapRecoveryJob(series_id=uuid4()).model_dump(mode="json")


class TestConcurrency:
    def test_per_queue_limits(self):
        assert QUEUE_CONCURRENCY == {
            QueueName.CANONICALIZE: 2,
            QueueName.POLL: 20,
            QueueName.INGEST: 10,
            QueueName.GAP_RECOVERY: 1,
            QueueName.DISPATCH: 3,
            QueueName.DELIVERY: 5,
            QueueName.DELIVERY_PREMIUM: 15,
        }

    def test_consumer_defaults_to_queue_limit(self, mock_pool):
        consumer = QueueConsumer(mock_pool, QueueName.POLL, AsyncMock(), worker_id="w1")

        assert consumer.concurrency == 20


class TestIsFinal:
    @pytest.mark.parametrize(
        "error",
        [
            JobValidationError("bad"),
            NonRetryableError("mismatch"),
            SourceRebindError("mangadex", "x", "a", "b"),
            SelectorNotFoundError("mangadex", ".list"),
            CircuitOpenError("mangadex"),
        ],
    )
    def test_final(self, error):
        assert is_final(error) is True

    @pytest.mark.parametrize(
        "error",
        [LockUnavailableError("ingest:x"), RateLimitedError("mangadex"), RuntimeError("boom")],
    )
    def test_retryable(self, error):
        assert is_final(error) is False


class TestDecodeJob:
    def test_valid_payload(self, make_claimed):
        job = decode_job(make_claimed(_payload()))

        assert isinstance(job, GapRecoveryJob)

    @pytest.mark.parametrize(
        "payload",
        [
            {"kind": "nope"},
            {"kind": "gap_recovery"},
            {"kind": "gap_recovery", "series_id": str(uuid4()), "version": 2},
        ],
    )
    def test_invalid_payload(self, make_claimed, payload):
        with pytest.raises(JobValidationError):
            decode_job(make_claimed(payload))


class TestProcess:
    async def test_success_completes(self, mock_pool, make_claimed):
        store = _queue_store()
        handler = AsyncMock(return_value={"status": "completed"})
        consumer = QueueConsumer(mock_pool, QueueName.GAP_RECOVERY, handler, worker_id="w1", queue_store=store)
        claimed = make_claimed(_payload())

        outcome = await consumer.process(claimed)

        assert outcome == "completed"
        store.complete.assert_awaited_once_with(mock_pool.conn, claimed.id)
        assert isinstance(handler.await_args.args[0], GapRecoveryJob)

    async def test_invalid_payload_fails_permanently(self, mock_pool, make_claimed):
        store = _queue_store(fail_state="failed")
        handler = AsyncMock()
        consumer = QueueConsumer(mock_pool, QueueName.GAP_RECOVERY, handler, worker_id="w1", queue_store=store)

        outcome = await consumer.process(make_claimed({"kind": "gap_recovery"}))

        assert outcome == "failed"
        handler.assert_not_awaited()
        assert store.fail.await_args.kwargs["retryable"] is False

    async def test_transient_error_retried(self, mock_pool, make_claimed):
        store = _queue_store(fail_state="pending")
        handler = AsyncMock(side_effect=LockUnavailableError("gap"))
        consumer = QueueConsumer(mock_pool, QueueName.GAP_RECOVERY, handler, worker_id="w1", queue_store=store)

        outcome = await consumer.process(make_claimed(_payload()))

        assert outcome == "retry"
        assert store.fail.await_args.kwargs["retryable"] is True
        assert "LockUnavailableError" in store.fail.await_args.args[2]

    async def test_exhausted_retry_reports_failed(self, mock_pool, make_claimed):
        store = _queue_store(fail_state="failed")
        handler = AsyncMock(side_effect=RuntimeError("boom"))
        consumer = QueueConsumer(mock_pool, QueueName.GAP_RECOVERY, handler, worker_id="w1", queue_store=store)

        outcome = await consumer.process(make_claimed(_payload(), attempts=3))

        assert outcome == "failed"

    async def test_binds_job_context_during_handler(self, mock_pool, make_claimed):
        seen = {}

        async def handler(job):
            seen.update(structlog.contextvars.get_contextvars())
            return {}

        consumer = QueueConsumer(
            mock_pool, QueueName.GAP_RECOVERY, handler, worker_id="w1", queue_store=_queue_store()
        )
        claimed = make_claimed(_payload())

        await consumer.process(claimed)

        assert seen["job_id"] == str(claimed.id)
        assert seen["trace_id"] == str(claimed.id)
        assert seen["queue"] == QueueName.GAP_RECOVERY
        assert "job_id" not in structlog.contextvars.get_contextvars()


class TestRun:
    async def test_runs_claimed_jobs_until_stopped(self, mock_pool, make_claimed):
        claimed = [make_claimed(_payload()), make_claimed(_payload())]
        store = _queue_store()
        store.claim.side_effect = [[claimed[0]], [claimed[1]]] + [[]] * 1000
        done = asyncio.Event()
        processed = []

        async def handler(job):
            processed.append(job.series_id)
            if len(processed) == 2:
                done.set()
            return {}

        consumer = QueueConsumer(
            mock_pool, QueueName.GAP_RECOVERY, handler, worker_id="w1", poll_interval=0.01, queue_store=store
        )
        runner = asyncio.create_task(consumer.run())
        await asyncio.wait_for(done.wait(), timeout=2)
        consumer.stop()
        await asyncio.wait_for(runner, timeout=2)

        assert len(processed) == 2
        assert store.complete.await_count == 2

    async def test_claim_failure_does_not_stop_loop(self, mock_pool, make_claimed):
        store = _queue_store()
        store.claim.side_effect = [RuntimeError("db down"), [make_claimed(_payload())]] + [[]] * 1000
        done = asyncio.Event()

        async def handler(job):
            done.set()
            return {}

        consumer = QueueConsumer(
            mock_pool, QueueName.GAP_RECOVERY, handler, worker_id="w1", poll_interval=0.01, queue_store=store
        )
        runner = asyncio.create_task(consumer.run())
        await asyncio.wait_for(done.wait(), timeout=2)
        consumer.stop()
        await asyncio.wait_for(runner, timeout=2)

    async def test_in_flight_limited_by_concurrency(self, mock_pool, make_claimed):
        store = _queue_store()
        store.claim.side_effect = lambda *a, **kw: [make_claimed(_payload())]
        release = asyncio.Event()
        running = 0
        peak = 0

        async def handler(job):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await release.wait()
            running -= 1
            return {}

        consumer = QueueConsumer(
            mock_pool,
            QueueName.DISPATCH,
            handler,
            worker_id="w1",
            concurrency=3,
            poll_interval=0.01,
            queue_store=store,
        )
        runner = asyncio.create_task(consumer.run())
        await asyncio.sleep(0.05)
        consumer.stop()
        release.set()
        await asyncio.wait_for(runner, timeout=2)

        assert peak == 3
