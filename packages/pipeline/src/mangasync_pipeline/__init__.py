"""MangaSync Pipeline - background job handlers.

Version: 1.0.0

This package provides:
- Canonicalizer (series identity resolution and merge)
- ChapterIngestor (idempotent chapter ingestion)
- GapRecoverer / find_missing_chapters
- SourcePoller (scrape and fan out ingests)
- NotificationDispatcher / NotificationDeliverer (deduplicated fan-out)
- NotificationThrottle and backlog health
- Library import reconciliation

Handlers are service objects with an injected pool, key/value store and
store bundle; each exposes ``async handle(job) -> dict``.
"""

from mangasync_pipeline.canonicalize import Canonicalizer, merge_series_fields
from mangasync_pipeline.delivery import NotificationDeliverer, build_message
from mangasync_pipeline.dispatch import (
    NotificationDispatcher,
    RecipientResolver,
    can_receive,
    notification_priority,
    plan_deliveries,
)
from mangasync_pipeline.events import PgNotifyPublisher, SeriesEventPublisher
from mangasync_pipeline.gap_recovery import GapRecoverer, find_missing_chapters
from mangasync_pipeline.health import BacklogHealth, classify_backlog, delivery_backlog
from mangasync_pipeline.ingest import ChapterIngestor
from mangasync_pipeline.poll import SourcePoller
from mangasync_pipeline.reconcile import (
    STATUS_RANKS,
    ImportEntry,
    LibraryState,
    MatchResult,
    ReconcileResult,
    match_import_entry,
    normalize_status,
    reconcile_entry,
)
from mangasync_pipeline.stores import Stores
from mangasync_pipeline.throttling import (
    NotificationThrottle,
    ThrottleDecision,
    claim_chapter_notification,
    release_chapter_notification,
)

__version__ = "1.0.0"

__all__ = [
    # Handlers
    "Canonicalizer",
    "ChapterIngestor",
    "GapRecoverer",
    "SourcePoller",
    "NotificationDispatcher",
    "NotificationDeliverer",
    "Stores",
    # Canonicalization
    "merge_series_fields",
    "SeriesEventPublisher",
    "PgNotifyPublisher",
    # Gaps
    "find_missing_chapters",
    # Notifications
    "RecipientResolver",
    "can_receive",
    "notification_priority",
    "plan_deliveries",
    "build_message",
    "NotificationThrottle",
    "ThrottleDecision",
    "claim_chapter_notification",
    "release_chapter_notification",
    "BacklogHealth",
    "classify_backlog",
    "delivery_backlog",
    # Import reconciliation
    "STATUS_RANKS",
    "normalize_status",
    "LibraryState",
    "ReconcileResult",
    "reconcile_entry",
    "ImportEntry",
    "MatchResult",
    "match_import_entry",
]
