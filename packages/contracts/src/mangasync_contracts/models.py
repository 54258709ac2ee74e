"""Core entity schemas for the canonical catalog.

Pure Pydantic models; no persistence or business logic.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class SyncPriority(str, Enum):
    """Polling tier of a series source."""

    HOT = "HOT"
    WARM = "WARM"
    COLD = "COLD"


class NotificationType(str, Enum):
    """User-visible notification kinds."""

    NEW_CHAPTER = "NEW_CHAPTER"


class NotificationPriority(int, Enum):
    """Delivery priority; lower value wins and supersedes higher values."""

    PREFERRED = 0
    TRUSTED = 1
    STANDARD = 2


class Series(BaseModel):
    """Canonical work shared across all sources."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    title: str
    alternative_titles: list[str] = Field(default_factory=list)
    description: Optional[str] = None
    cover_url: Optional[str] = None
    type: str = "manga"
    status: Optional[str] = None
    genres: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    content_rating: Optional[str] = None
    external_id: Optional[str] = Field(
        default=None, description="Well-known registry id (e.g. MangaDex), unique"
    )
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class SeriesSource(BaseModel):
    """A (source_name, source_id) pair bound to exactly one series."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    series_id: UUID
    source_name: str
    source_id: str
    source_url: str
    source_title: Optional[str] = None
    match_confidence: Optional[float] = None
    trust_score: int = Field(default=50, ge=0, le=100)
    is_active: bool = True
    failure_count: int = 0
    sync_priority: SyncPriority = SyncPriority.COLD
    next_check_at: Optional[datetime] = None
    last_checked_at: Optional[datetime] = None
    last_success_at: Optional[datetime] = None
    source_chapter_count: int = 0
    cover_url: Optional[str] = None


class LogicalChapter(BaseModel):
    """One chapter identity shared across sources; number is immutable."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    series_id: UUID
    chapter_number: Decimal
    chapter_title: Optional[str] = None
    published_at: Optional[datetime] = None


class ChapterSource(BaseModel):
    """One source's instance of a logical chapter."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    chapter_id: UUID
    series_source_id: UUID
    chapter_url: str
    chapter_title: Optional[str] = None
    source_published_at: Optional[datetime] = None
    discovered_at: datetime
    last_checked_at: Optional[datetime] = None
    is_available: bool = True


class FeedSource(BaseModel):
    """A source listed on a feed entry."""

    name: str
    url: str
    discovered_at: datetime


class FeedEntry(BaseModel):
    """24-hour aggregate of sources that reported the same chapter."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    series_id: UUID
    logical_chapter_id: UUID
    chapter_number: Decimal
    sources: list[FeedSource] = Field(default_factory=list)
    first_discovered_at: datetime
    last_updated_at: datetime


class Notification(BaseModel):
    """User-visible notification row."""

    model_config = ConfigDict(from_attributes=True)

    id: Optional[UUID] = None
    user_id: UUID
    series_id: UUID
    type: NotificationType = NotificationType.NEW_CHAPTER
    title: str
    message: str
    priority: NotificationPriority = NotificationPriority.STANDARD
    chapter_number: Decimal
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None
    read_at: Optional[datetime] = None


class Recipient(BaseModel):
    """A subscriber eligible for new-chapter notifications of one series."""

    model_config = ConfigDict(from_attributes=True)

    user_id: UUID
    is_premium: bool = False
    safe_browsing_mode: str = "sfw"
    series_preferred_source: Optional[str] = None
    global_preferred_source: Optional[str] = None

    @property
    def preferred_source(self) -> Optional[str]:
        """Series-level preference overrides the global one."""
        return self.series_preferred_source or self.global_preferred_source
