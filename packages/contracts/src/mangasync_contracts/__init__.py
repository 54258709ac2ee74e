"""MangaSync Contracts - Pure Pydantic schemas.

Version: 1.0.0 (job schemas are versioned independently via ``version``)

This package contains ONLY Pydantic schemas with no business logic.
Dependencies: pydantic only (no logging, no DB drivers).
"""

from mangasync_contracts.jobs import (
    JOB_SCHEMA_VERSION,
    NOTIFY_BUCKET_SECONDS,
    CanonicalizeJob,
    DeliveryJob,
    DispatchJob,
    GapRecoveryJob,
    IngestJob,
    JobPayload,
    PollJob,
    chapter_key,
    parse_job,
)
from mangasync_contracts.models import (
    # Catalog
    ChapterSource,
    FeedEntry,
    FeedSource,
    LogicalChapter,
    Series,
    SeriesSource,
    SyncPriority,
    # Notifications
    Notification,
    NotificationPriority,
    NotificationType,
    Recipient,
)

__version__ = "1.0.0"

__all__ = [
    # Catalog
    "Series",
    "SeriesSource",
    "SyncPriority",
    "LogicalChapter",
    "ChapterSource",
    "FeedEntry",
    "FeedSource",
    # Notifications
    "Notification",
    "NotificationPriority",
    "NotificationType",
    "Recipient",
    # Jobs
    "JOB_SCHEMA_VERSION",
    "NOTIFY_BUCKET_SECONDS",
    "JobPayload",
    "PollJob",
    "IngestJob",
    "CanonicalizeJob",
    "GapRecoveryJob",
    "DispatchJob",
    "DeliveryJob",
    "chapter_key",
    "parse_job",
]
