"""Versioned job payload schemas.

Every job travelling through a queue is one variant of ``JobPayload``, a
tagged union discriminated by ``kind``. ``version`` is bumped on breaking
changes so that old workers reject new payloads instead of misreading them.

Each variant exposes ``dedup_key()``: a deterministic idempotency key so that
redelivery on an at-least-once queue never double-applies an effect.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Annotated, Literal, Optional, Union
from urllib.parse import urlparse
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator

JOB_SCHEMA_VERSION = 1

# Notification-dispatch keys collapse retries inside this window
NOTIFY_BUCKET_SECONDS = 120


def chapter_key(chapter_number: Decimal) -> str:
    """Canonical string for a chapter number ("10.50" -> "10.5", "1E+2" -> "100")."""
    normalized = Decimal(chapter_number).normalize()
    return format(normalized, "f")


class _JobBase(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    version: Literal[1] = JOB_SCHEMA_VERSION


class PollJob(_JobBase):
    """Scrape one series source and emit ingest jobs."""

    kind: Literal["poll"] = "poll"
    series_source_id: UUID
    is_recovery: bool = Field(
        default=False, description="Triggered by gap recovery; ingests are replays"
    )

    def dedup_key(self) -> str:
        prefix = "gap-fill" if self.is_recovery else "poll"
        return f"{prefix}:{self.series_source_id}"


class IngestJob(_JobBase):
    """Normalize one scraped chapter into the canonical model."""

    kind: Literal["ingest"] = "ingest"
    series_source_id: UUID
    series_id: UUID
    chapter_number: Decimal = Field(ge=0)
    chapter_title: Optional[str] = None
    chapter_url: str
    published_at: Optional[datetime] = None
    is_recovery: bool = False
    trace_id: Optional[str] = None

    @field_validator("chapter_url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        parsed = urlparse(v)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError("chapter_url must be an absolute http(s) URL")
        return v

    def dedup_key(self) -> str:
        return f"ingest:{self.series_source_id}:{chapter_key(self.chapter_number)}"


class CanonicalizeJob(_JobBase):
    """Resolve a scraped series to a canonical series."""

    kind: Literal["canonicalize"] = "canonicalize"
    title: str = Field(min_length=1)
    source_name: str = Field(min_length=1)
    source_id: str = Field(min_length=1)
    source_url: str
    external_id: Optional[str] = None
    alternative_titles: list[str] = Field(default_factory=list)
    description: Optional[str] = None
    cover_url: Optional[str] = None
    type: str = "manga"
    status: Optional[str] = None
    genres: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    content_rating: Optional[str] = None
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)

    def dedup_key(self) -> str:
        return f"canonicalize:{self.source_name.lower()}:{self.source_id}"


class GapRecoveryJob(_JobBase):
    """Scan a series for missing chapters; one outstanding job per series."""

    kind: Literal["gap_recovery"] = "gap_recovery"
    series_id: UUID

    def dedup_key(self) -> str:
        return f"gap-recovery:{self.series_id}"


class DispatchJob(_JobBase):
    """Collapse duplicate release triggers and fan out to recipients."""

    kind: Literal["dispatch"] = "dispatch"
    series_id: UUID
    triggering_source_id: UUID
    chapter_number: Decimal = Field(ge=0)
    new_chapter_count: int = Field(default=1, ge=1)

    def dedup_key(self, now: Optional[datetime] = None) -> str:
        moment = now or datetime.now(timezone.utc)
        bucket = int(moment.timestamp()) // NOTIFY_BUCKET_SECONDS
        return (
            f"notify:{self.series_id}:{self.triggering_source_id}:"
            f"{chapter_key(self.chapter_number)}:{bucket}"
        )


class DeliveryJob(_JobBase):
    """Persist notifications for one bounded batch of recipients."""

    kind: Literal["delivery"] = "delivery"
    series_id: UUID
    source_id: UUID
    source_name: Optional[str] = None
    chapter_number: Decimal = Field(ge=0)
    new_chapter_count: int = Field(default=1, ge=1)
    recipient_ids: list[UUID]
    is_premium: bool = False
    priority: int = Field(default=2, ge=0, le=2)
    batch_index: int = Field(default=0, ge=0)

    def dedup_key(self) -> str:
        lane = "premium" if self.is_premium else "standard"
        return (
            f"deliver:{self.series_id}:{chapter_key(self.chapter_number)}:"
            f"{lane}:p{self.priority}:{self.batch_index}"
        )


JobPayload = Annotated[
    Union[PollJob, IngestJob, CanonicalizeJob, GapRecoveryJob, DispatchJob, DeliveryJob],
    Field(discriminator="kind"),
]

_job_adapter: TypeAdapter[JobPayload] = TypeAdapter(JobPayload)


def parse_job(payload: dict) -> JobPayload:
    """Validate a raw payload into its job variant.

    Raises:
        pydantic.ValidationError: unknown kind, wrong version or bad fields
    """
    return _job_adapter.validate_python(payload)
