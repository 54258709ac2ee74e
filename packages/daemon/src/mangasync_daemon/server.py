"""Worker process entry point.

Runs, in one asyncio process:
    - one QueueConsumer per queue (both delivery lanes share a handler)
    - the leader-elected Scheduler
    - the Heartbeat writer
    - the Prometheus metrics HTTP server

Usage:
    mangasync-worker [--queues poll-source,chapter-ingest] [--no-scheduler]
"""

import argparse
import asyncio
import os
import signal
import socket
import sys
from typing import Optional

import asyncpg
import httpx
from mangasync_common import Settings, configure_logging, get_logger, get_settings
from mangasync_pipeline import (
    Canonicalizer,
    ChapterIngestor,
    GapRecoverer,
    NotificationDeliverer,
    NotificationDispatcher,
    NotificationThrottle,
    PgNotifyPublisher,
    SourcePoller,
)
from mangasync_sources import SourceRateLimiter, build_default_registry
from mangasync_storage import (
    DatabaseConfig,
    KVStore,
    PgRecipientResolver,
    QueueName,
    apply_schema,
    close_pool,
    create_pool,
)
from prometheus_client import start_http_server as start_prometheus_server

from mangasync_daemon.heartbeat import Heartbeat
from mangasync_daemon.scheduler import Scheduler
from mangasync_daemon.worker import Handler, QueueConsumer

logger = get_logger(__name__)

HTTP_TIMEOUT = 30.0


def build_handlers(
    pool: asyncpg.Pool,
    kv: KVStore,
    settings: Settings,
    http_client: httpx.AsyncClient,
) -> dict[str, Handler]:
    """Wire every queue to its handler."""
    throttle = NotificationThrottle(
        kv,
        hourly_limit=settings.user_hourly_limit,
        daily_limit=settings.user_daily_limit,
        premium_daily_limit=settings.premium_daily_limit,
    )
    deliverer = NotificationDeliverer(
        pool,
        kv,
        throttle=throttle,
        backlog_overloaded=settings.backlog_overloaded,
        backlog_critical=settings.backlog_critical,
        backlog_rejected=settings.backlog_rejected,
        overload_delay_seconds=settings.overload_delay_seconds,
    )
    poller = SourcePoller(
        pool,
        build_default_registry(settings, http_client),
        SourceRateLimiter(kv),
        rate_limit_timeout=settings.rate_limit_timeout_seconds,
        max_ingest_backlog=settings.max_ingest_backlog,
        backlog_critical=settings.backlog_critical,
    )

    return {
        QueueName.CANONICALIZE: Canonicalizer(
            pool, kv, primary_source=settings.primary_source, publisher=PgNotifyPublisher(pool)
        ).handle,
        QueueName.POLL: poller.handle,
        QueueName.INGEST: ChapterIngestor(pool, kv).handle,
        QueueName.GAP_RECOVERY: GapRecoverer(pool).handle,
        QueueName.DISPATCH: NotificationDispatcher(
            pool,
            kv,
            PgRecipientResolver(pool),
            high_trust_threshold=settings.high_trust_threshold,
            batch_size=settings.delivery_batch_size,
            dedupe_ttl_seconds=settings.dedupe_ttl_seconds,
        ).handle,
        QueueName.DELIVERY: deliverer.handle,
        QueueName.DELIVERY_PREMIUM: deliverer.handle,
    }


def parse_queues(raw: Optional[str]) -> list[str]:
    """Comma-separated queue names, or every queue when empty.

    Raises:
        ValueError: On an unknown queue name
    """
    if not raw:
        return list(QueueName.ALL)
    queues = [q.strip() for q in raw.split(",") if q.strip()]
    unknown = sorted(set(queues) - set(QueueName.ALL))
    if unknown:
        raise ValueError(f"Unknown queue(s): {', '.join(unknown)}")
    return queues


async def run_worker(
    settings: Settings,
    queues: list[str],
    *,
    run_scheduler: bool = True,
    migrate: bool = False,
) -> None:
    """Run consumers, scheduler and heartbeat until SIGINT/SIGTERM."""
    try:
        start_prometheus_server(settings.metrics_port)
        logger.info("prometheus_metrics_started", port=settings.metrics_port)
    except OSError as e:
        logger.warning("prometheus_metrics_port_busy", port=settings.metrics_port, error=str(e))

    pool = await create_pool(DatabaseConfig(dsn=settings.database_url))
    http_client = httpx.AsyncClient(timeout=HTTP_TIMEOUT)
    worker_id = f"{socket.gethostname()}:{os.getpid()}"

    try:
        if migrate:
            await apply_schema(pool)

        kv = KVStore(pool, prefix=settings.key_prefix)
        handlers = build_handlers(pool, kv, settings, http_client)
        consumers = [QueueConsumer(pool, q, handlers[q], worker_id=worker_id) for q in queues]

        stop = asyncio.Event()

        def signal_handler():
            logger.info("shutdown_signal_received")
            stop.set()
            for consumer in consumers:
                consumer.stop()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, signal_handler)

        heartbeat = Heartbeat(
            pool,
            kv,
            interval_seconds=settings.heartbeat_interval_seconds,
            ttl_seconds=settings.heartbeat_ttl_seconds,
            backlog_critical=settings.backlog_critical,
        )
        tasks = [asyncio.create_task(c.run()) for c in consumers]
        tasks.append(asyncio.create_task(heartbeat.run(stop)))
        if run_scheduler:
            scheduler = Scheduler(
                pool,
                kv,
                interval_seconds=settings.scheduler_interval_seconds,
                lease_seconds=settings.scheduler_lease_seconds,
            )
            tasks.append(asyncio.create_task(scheduler.run(stop)))

        logger.info("worker_started", worker_id=worker_id, queues=queues, scheduler=run_scheduler)
        print(f"mangasync worker {worker_id} consuming {len(queues)} queue(s)", file=sys.stderr)

        await asyncio.gather(*tasks)

    finally:
        logger.info("worker_stopping")
        await http_client.aclose()
        await close_pool(pool)
        logger.info("worker_stopped")


def main() -> None:
    """Entry point for the mangasync-worker command."""
    parser = argparse.ArgumentParser(
        description="MangaSync worker - queue consumers, scheduler and heartbeat",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=f"""
Queues:
    {", ".join(QueueName.ALL)}

Example:
    mangasync-worker --queues {QueueName.DELIVERY},{QueueName.DELIVERY_PREMIUM} --no-scheduler
        """,
    )

    parser.add_argument(
        "--queues",
        default=None,
        help="Comma-separated queues to consume (default: all)",
    )
    parser.add_argument(
        "--no-scheduler",
        action="store_true",
        default=False,
        help="Do not take part in scheduler leader election",
    )
    parser.add_argument(
        "--migrate",
        action="store_true",
        default=False,
        help="Apply the bundled schema before starting",
    )

    args = parser.parse_args()

    settings = get_settings()
    configure_logging(settings.log_level, settings.log_format)

    try:
        queues = parse_queues(args.queues)
    except ValueError as e:
        parser.error(str(e))

    try:
        asyncio.run(run_worker(settings, queues, run_scheduler=not args.no_scheduler, migrate=args.migrate))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
