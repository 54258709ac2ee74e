"""Store bundle injected into job handlers.

Handlers never import store classes directly at call sites; they go through a
``Stores`` instance so tests can substitute in-memory implementations with the
same connection-first signatures.
"""

from dataclasses import dataclass
from typing import Any

from mangasync_storage import (
    ChapterStore,
    FeedStore,
    NotificationStore,
    QueueStore,
    SeriesSourceStore,
    SeriesStore,
)


@dataclass
class Stores:
    series: Any = SeriesStore
    sources: Any = SeriesSourceStore
    chapters: Any = ChapterStore
    feed: Any = FeedStore
    notifications: Any = NotificationStore
    queue: Any = QueueStore
