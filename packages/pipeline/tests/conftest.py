"""Pytest fixtures for pipeline tests.

Handlers run against in-memory stores with the same connection-first
signatures as the Postgres stores, a no-op pool/transaction, and an in-memory
key/value store with real expiry semantics.
"""

import asyncio
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional
from uuid import UUID, uuid4

import pytest
from mangasync_common import SourceRebindError, StorageError
from mangasync_contracts import (
    ChapterSource,
    FeedEntry,
    LogicalChapter,
    Recipient,
    Series,
    SeriesSource,
    SyncPriority,
)
from mangasync_pipeline import Stores

# ---------------------------------------------------------------------------
# Pool / connection
# ---------------------------------------------------------------------------


class FakeConn:
    def __init__(self):
        self.transactions = 0

    @asynccontextmanager
    async def transaction(self):
        self.transactions += 1
        yield


class FakePool:
    def __init__(self):
        self.conn = FakeConn()

    @asynccontextmanager
    async def acquire(self):
        yield self.conn


# ---------------------------------------------------------------------------
# Key/value store
# ---------------------------------------------------------------------------


class MemoryKV:
    """In-process stand-in for KVStore."""

    def __init__(self):
        self.data: dict[str, tuple[str, Optional[float]]] = {}

    def _live(self, key: str) -> Optional[str]:
        record = self.data.get(key)
        if record is None:
            return None
        value, expires = record
        if expires is not None and expires <= time.monotonic():
            return None
        return value

    async def set_if_absent(self, key, value, ttl_seconds):
        if self._live(key) is not None:
            return False
        self.data[key] = (value, time.monotonic() + ttl_seconds)
        return True

    async def set(self, key, value, ttl_seconds=None):
        expires = None if ttl_seconds is None else time.monotonic() + ttl_seconds
        self.data[key] = (value, expires)

    async def get(self, key):
        return self._live(key)

    async def delete(self, key):
        return self.data.pop(key, None) is not None

    async def compare_and_delete(self, key, expected):
        if self._live(key) != expected:
            return False
        del self.data[key]
        return True

    async def extend_if_owner(self, key, expected, ttl_seconds):
        if self._live(key) != expected:
            return False
        self.data[key] = (expected, time.monotonic() + ttl_seconds)
        return True

    async def incr_with_expiry(self, key, ttl_seconds):
        current = self._live(key)
        if current is None:
            self.data[key] = ("1", time.monotonic() + ttl_seconds)
            return 1
        _, expires = self.data[key]
        self.data[key] = (str(int(current) + 1), expires)
        return int(current) + 1


# ---------------------------------------------------------------------------
# Entity stores
# ---------------------------------------------------------------------------


class MemoryDB:
    """Shared state behind the in-memory stores, plus seeding helpers."""

    def __init__(self):
        self.series: dict[UUID, Series] = {}
        self.sources: dict[UUID, SeriesSource] = {}
        self.chapters: dict[UUID, LogicalChapter] = {}
        self.chapter_sources: dict[UUID, ChapterSource] = {}
        self.feed: list[FeedEntry] = []
        self.notifications: list[dict[str, Any]] = []

    def add_series(self, title: str = "One Piece", **fields) -> Series:
        series = Series(id=uuid4(), title=title, created_at=datetime.now(timezone.utc), **fields)
        self.series[series.id] = series
        return series

    def add_source(self, series_id: UUID, source_name: str = "mangadex", **fields) -> SeriesSource:
        fields.setdefault("source_id", uuid4().hex[:12])
        fields.setdefault("source_url", f"https://mangadex.org/title/{fields['source_id']}")
        source = SeriesSource(id=uuid4(), series_id=series_id, source_name=source_name, **fields)
        self.sources[source.id] = source
        return source

    def add_chapter(self, series_id: UUID, number, discovered_at: Optional[datetime] = None) -> LogicalChapter:
        chapter = LogicalChapter(id=uuid4(), series_id=series_id, chapter_number=Decimal(str(number)))
        self.chapters[chapter.id] = chapter
        if discovered_at is not None:
            instance = ChapterSource(
                id=uuid4(),
                chapter_id=chapter.id,
                series_source_id=uuid4(),
                chapter_url="https://mangadex.org/chapter/x",
                discovered_at=discovered_at,
            )
            self.chapter_sources[instance.id] = instance
        return chapter

    def add_notification(self, user_id: UUID, series_id: UUID, chapter_number, priority: int) -> None:
        self.notifications.append(
            {
                "user_id": user_id,
                "series_id": series_id,
                "chapter_number": Decimal(str(chapter_number)),
                "priority": priority,
            }
        )

    def chapters_of(self, series_id: UUID) -> list[LogicalChapter]:
        return [c for c in self.chapters.values() if c.series_id == series_id]


class FakeSeriesStore:
    def __init__(self, db: MemoryDB):
        self.db = db

    async def get(self, conn, series_id):
        return self.db.series.get(series_id)

    async def find_by_external_id(self, conn, external_id):
        return next((s for s in self.db.series.values() if s.external_id == external_id), None)

    async def find_by_title(self, conn, title):
        matches = [s for s in self.db.series.values() if s.title.lower() == title.lower()]
        return min(matches, key=lambda s: s.created_at) if matches else None

    async def find_by_alternative_title(self, conn, title):
        for s in self.db.series.values():
            if any(alt.lower() == title.lower() for alt in s.alternative_titles):
                return s
        return None

    async def create(self, conn, **fields):
        # Yield so concurrent handlers interleave between lookup and insert
        await asyncio.sleep(0)
        external_id = fields.get("external_id")
        if external_id and await self.find_by_external_id(conn, external_id):
            raise StorageError(f"Series with external_id '{external_id}' already exists")
        return self.db.add_series(**fields)

    async def update(self, conn, series_id, fields):
        updated = self.db.series[series_id].model_copy(update=fields)
        self.db.series[series_id] = updated
        return updated


class FakeSourceStore:
    def __init__(self, db: MemoryDB):
        self.db = db

    def _patch(self, series_source_id, **fields):
        source = self.db.sources[series_source_id]
        self.db.sources[series_source_id] = source.model_copy(update=fields)

    async def get(self, conn, series_source_id):
        return self.db.sources.get(series_source_id)

    async def find_by_source(self, conn, source_name, source_id):
        return next(
            (s for s in self.db.sources.values() if s.source_name == source_name and s.source_id == source_id),
            None,
        )

    async def list_for_series(self, conn, series_id, active_only=False):
        return [
            s for s in self.db.sources.values() if s.series_id == series_id and (s.is_active or not active_only)
        ]

    async def upsert_link(self, conn, *, series_id, source_name, source_id, source_url, **fields):
        existing = await self.find_by_source(conn, source_name, source_id)
        if existing is None:
            fields = {k: v for k, v in fields.items() if v is not None}
            return self.db.add_source(series_id, source_name, source_id=source_id, source_url=source_url, **fields)
        if existing.series_id != series_id:
            raise SourceRebindError(source_name, source_id, str(existing.series_id), str(series_id))
        self._patch(existing.id, source_url=source_url)
        return self.db.sources[existing.id]

    async def record_new_chapter(self, conn, series_source_id, next_check_at):
        source = self.db.sources[series_source_id]
        self._patch(
            series_source_id,
            source_chapter_count=source.source_chapter_count + 1,
            sync_priority=SyncPriority.HOT,
            next_check_at=next_check_at,
        )

    async def record_success(self, conn, series_source_id):
        self._patch(series_source_id, failure_count=0, last_success_at=datetime.now(timezone.utc))

    async def record_failure(self, conn, series_source_id, next_check_at=None):
        source = self.db.sources[series_source_id]
        self._patch(
            series_source_id,
            failure_count=source.failure_count + 1,
            next_check_at=next_check_at or source.next_check_at,
        )

    async def defer(self, conn, series_source_id, next_check_at):
        self._patch(series_source_id, next_check_at=next_check_at)

    async def open_circuit(self, conn, series_source_id, next_check_at):
        self._patch(series_source_id, sync_priority=SyncPriority.COLD, next_check_at=next_check_at)


class FakeChapterStore:
    def __init__(self, db: MemoryDB):
        self.db = db

    def _find(self, series_id, chapter_number):
        return next(
            (
                c
                for c in self.db.chapters.values()
                if c.series_id == series_id and c.chapter_number == Decimal(chapter_number)
            ),
            None,
        )

    async def exists(self, conn, series_id, chapter_number):
        return self._find(series_id, chapter_number) is not None

    async def list_numbers(self, conn, series_id):
        return sorted(c.chapter_number for c in self.db.chapters_of(series_id))

    async def next_chapter_discovered_at(self, conn, series_id, chapter_number):
        later = sorted(
            (c for c in self.db.chapters_of(series_id) if c.chapter_number > chapter_number),
            key=lambda c: c.chapter_number,
        )
        if not later:
            return None
        seen = [cs.discovered_at for cs in self.db.chapter_sources.values() if cs.chapter_id == later[0].id]
        return min(seen) if seen else None

    async def upsert_logical(self, conn, *, series_id, chapter_number, chapter_title=None, published_at=None):
        chapter = self._find(series_id, chapter_number)
        if chapter is None:
            chapter = LogicalChapter(
                id=uuid4(),
                series_id=series_id,
                chapter_number=chapter_number,
                chapter_title=chapter_title,
                published_at=published_at,
            )
        else:
            chapter = chapter.model_copy(
                update={
                    "chapter_title": chapter_title or chapter.chapter_title,
                    "published_at": published_at or chapter.published_at,
                }
            )
        self.db.chapters[chapter.id] = chapter
        return chapter

    async def upsert_source(
        self,
        conn,
        *,
        chapter_id,
        series_source_id,
        chapter_url,
        chapter_title=None,
        source_published_at=None,
        discovered_at,
    ):
        for cs in self.db.chapter_sources.values():
            if cs.chapter_id == chapter_id and cs.series_source_id == series_source_id:
                updated = cs.model_copy(update={"chapter_url": chapter_url, "is_available": True})
                self.db.chapter_sources[cs.id] = updated
                return updated, False
        cs = ChapterSource(
            id=uuid4(),
            chapter_id=chapter_id,
            series_source_id=series_source_id,
            chapter_url=chapter_url,
            chapter_title=chapter_title,
            source_published_at=source_published_at,
            discovered_at=discovered_at,
        )
        self.db.chapter_sources[cs.id] = cs
        return cs, True


class FakeFeedStore:
    def __init__(self, db: MemoryDB):
        self.db = db

    async def record_source(self, conn, *, series_id, logical_chapter_id, chapter_number, source, now):
        for i, entry in enumerate(self.db.feed):
            if entry.series_id == series_id and entry.chapter_number == chapter_number:
                if all(s.name != source.name for s in entry.sources):
                    entry = entry.model_copy(update={"sources": [*entry.sources, source], "last_updated_at": now})
                    self.db.feed[i] = entry
                return entry
        entry = FeedEntry(
            id=uuid4(),
            series_id=series_id,
            logical_chapter_id=logical_chapter_id,
            chapter_number=chapter_number,
            sources=[source],
            first_discovered_at=now,
            last_updated_at=now,
        )
        self.db.feed.append(entry)
        return entry


class FakeNotificationStore:
    def __init__(self, db: MemoryDB):
        self.db = db
        self.failures_left = 0

    def _matches(self, row, series_id, chapter_number):
        return row["series_id"] == series_id and row["chapter_number"] == Decimal(chapter_number)

    async def existing_priorities(self, conn, user_ids, series_id, chapter_number):
        wanted = set(user_ids)
        return {
            row["user_id"]: row["priority"]
            for row in self.db.notifications
            if row["user_id"] in wanted and self._matches(row, series_id, chapter_number)
        }

    async def replace(self, conn, *, series_id, chapter_number, superseded_user_ids, notifications):
        if self.failures_left:
            self.failures_left -= 1
            raise StorageError("could not serialize access")
        superseded = set(superseded_user_ids)
        self.db.notifications = [
            row
            for row in self.db.notifications
            if not (row["user_id"] in superseded and self._matches(row, series_id, chapter_number))
        ]
        inserted = 0
        for n in notifications:
            if await self.existing_priorities(conn, [n.user_id], series_id, chapter_number):
                continue
            self.db.notifications.append(
                {
                    "user_id": n.user_id,
                    "series_id": n.series_id,
                    "chapter_number": n.chapter_number,
                    "priority": int(n.priority),
                    "message": n.message,
                    "metadata": n.metadata,
                }
            )
            inserted += 1
        return inserted


@dataclass
class EnqueuedJob:
    queue: str
    job: Any
    priority: int
    delay_seconds: float
    max_attempts: int
    dedup_key: str


class FakeQueue:
    """In-memory queue with outstanding-job deduplication."""

    def __init__(self):
        self.jobs: list[EnqueuedJob] = []
        self.backlog: dict[str, int] = {}
        self.fail_enqueue = False

    async def enqueue(self, conn, queue, job, *, priority=0, delay_seconds=0.0, max_attempts=3, dedup_key=None):
        if self.fail_enqueue:
            raise StorageError("queue unavailable")
        key = dedup_key if dedup_key is not None else job.dedup_key()
        if any(j.queue == queue and j.dedup_key == key for j in self.jobs):
            return None
        self.jobs.append(EnqueuedJob(queue, job, priority, delay_seconds, max_attempts, key))
        return uuid4()

    async def pending_counts(self, conn, queues):
        return {q: self.backlog.get(q, 0) + sum(1 for j in self.jobs if j.queue == q) for q in queues}

    async def pending_count(self, conn, queue):
        return (await self.pending_counts(conn, [queue]))[queue]

    def on(self, queue: str) -> list[EnqueuedJob]:
        return [j for j in self.jobs if j.queue == queue]


class StaticResolver:
    """RecipientResolver returning a fixed list."""

    def __init__(self, recipients: Optional[list[Recipient]] = None):
        self.recipients = recipients or []

    async def resolve(self, series_id):
        return list(self.recipients)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def db():
    return MemoryDB()


@pytest.fixture
def queue():
    return FakeQueue()


@pytest.fixture
def stores(db, queue):
    return Stores(
        series=FakeSeriesStore(db),
        sources=FakeSourceStore(db),
        chapters=FakeChapterStore(db),
        feed=FakeFeedStore(db),
        notifications=FakeNotificationStore(db),
        queue=queue,
    )


@pytest.fixture
def pool():
    return FakePool()


@pytest.fixture
def kv():
    return MemoryKV()


@pytest.fixture
def resolver():
    return StaticResolver()
