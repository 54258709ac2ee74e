"""Worker heartbeat.

Every few seconds the worker writes ``workers:heartbeat`` to the shared
key/value store with a short TTL. The API side calls ``workers_online`` to
decide whether background processing is available.
"""

import asyncio
import json
import os
import socket
import time
from typing import Any, Optional

import asyncpg
from mangasync_common import get_logger
from mangasync_pipeline import delivery_backlog
from mangasync_storage import KVStore, QueueName, QueueStore, check_connection_health

from mangasync_daemon.metrics import HEARTBEAT_TIMESTAMP, QUEUE_DEPTH

logger = get_logger(__name__)

HEARTBEAT_KEY = "workers:heartbeat"
ONLINE_WINDOW_SECONDS = 15.0


async def system_health(pool: asyncpg.Pool, *, backlog_critical: int = 50_000) -> dict[str, Any]:
    """Snapshot of database reachability and queue depths."""
    if not await check_connection_health(pool):
        return {"status": "unhealthy", "database": "unreachable"}

    async with pool.acquire() as conn:
        counts = await QueueStore.pending_counts(conn, list(QueueName.ALL))
        backlog = await delivery_backlog(conn, critical=backlog_critical)

    for queue, count in counts.items():
        QUEUE_DEPTH.labels(queue=queue).set(count)

    return {
        "status": "unhealthy" if backlog.is_critical else "healthy",
        "database": "healthy",
        "queues": counts,
        "delivery_backlog": backlog.total_waiting,
    }


async def write_heartbeat(kv: KVStore, health: Optional[dict[str, Any]] = None, ttl_seconds: float = 10.0) -> None:
    now = time.time()
    payload = {
        "timestamp": now,
        "health": health or {"status": "healthy"},
        "pid": os.getpid(),
        "hostname": socket.gethostname(),
    }
    await kv.set(HEARTBEAT_KEY, json.dumps(payload), ttl_seconds)
    HEARTBEAT_TIMESTAMP.set(now)


async def workers_online(kv: KVStore, window_seconds: float = ONLINE_WINDOW_SECONDS) -> bool:
    """True if a worker wrote a heartbeat within ``window_seconds``."""
    try:
        raw = await kv.get(HEARTBEAT_KEY)
        if not raw:
            return False
        data = json.loads(raw)
        return time.time() - float(data["timestamp"]) < window_seconds
    except Exception as e:
        logger.error("heartbeat_read_failed", error=str(e))
        return False


class Heartbeat:
    """Periodic heartbeat writer.

    Args:
        pool: Database pool (for the health snapshot)
        kv: Shared key/value store
        interval_seconds: Seconds between writes
        ttl_seconds: Heartbeat record lifetime
    """

    def __init__(
        self,
        pool: asyncpg.Pool,
        kv: KVStore,
        *,
        interval_seconds: float = 5.0,
        ttl_seconds: float = 10.0,
        backlog_critical: int = 50_000,
    ):
        self.pool = pool
        self.kv = kv
        self.interval_seconds = interval_seconds
        self.ttl_seconds = ttl_seconds
        self.backlog_critical = backlog_critical

    async def beat(self) -> None:
        health = await system_health(self.pool, backlog_critical=self.backlog_critical)
        await write_heartbeat(self.kv, health, self.ttl_seconds)
        logger.debug("heartbeat_sent", status=health["status"])

    async def run(self, stop: asyncio.Event) -> None:
        while not stop.is_set():
            try:
                await self.beat()
            except Exception as e:
                logger.warning("heartbeat_failed", error=str(e))
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass
