"""MangaSync Storage - PostgreSQL storage layer.

Version: 1.0.0

This package provides:
- Database connection management (asyncpg pooling, schema bootstrap)
- SeriesStore / SeriesSourceStore (canonical series and source links)
- ChapterStore (logical chapters and per-source instances)
- FeedStore (24h availability feed)
- NotificationStore (user notifications)
- LibraryStore / PgRecipientResolver (subscribers, read only)
- KVStore (namespaced leases, counters, token buckets)
- QueueStore (durable job queue)
- DistributedLock / with_lock, FixedWindowRateLimiter / TokenBucket

Stores are stateless; methods take a connection so that callers compose
several writes inside one transaction.
"""

from mangasync_storage.chapter_store import ChapterStore
from mangasync_storage.connection import (
    DatabaseConfig,
    apply_schema,
    check_connection_health,
    close_pool,
    create_pool,
    load_schema_sql,
)
from mangasync_storage.feed_store import FEED_WINDOW, FeedStore
from mangasync_storage.kv_store import KVStore
from mangasync_storage.library_store import LibraryStore, PgRecipientResolver
from mangasync_storage.locks import DistributedLock, with_lock
from mangasync_storage.notification_store import NotificationStore
from mangasync_storage.queue_store import ClaimedJob, JobState, QueueName, QueueStore
from mangasync_storage.rate_limit import FixedWindowRateLimiter, TokenBucket
from mangasync_storage.series_store import SeriesStore
from mangasync_storage.source_store import SeriesSourceStore

__version__ = "1.0.0"

__all__ = [
    # Connection
    "DatabaseConfig",
    "create_pool",
    "close_pool",
    "apply_schema",
    "load_schema_sql",
    "check_connection_health",
    # Catalog
    "SeriesStore",
    "SeriesSourceStore",
    "ChapterStore",
    "FeedStore",
    "FEED_WINDOW",
    # Notifications
    "NotificationStore",
    "LibraryStore",
    "PgRecipientResolver",
    # Coordination
    "KVStore",
    "DistributedLock",
    "with_lock",
    "FixedWindowRateLimiter",
    "TokenBucket",
    # Queue
    "QueueStore",
    "QueueName",
    "JobState",
    "ClaimedJob",
]
