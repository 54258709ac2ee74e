"""Library import reconciliation.

Imported reading-list rows (from other trackers) are matched to canonical
series deterministically, then merged into existing library entries without
ever regressing the user's progress.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import UUID

import asyncpg
from pydantic import BaseModel, Field

from mangasync_pipeline.stores import Stores

STATUS_RANKS: dict[str, int] = {
    "planning": 0,
    "paused": 1,
    "dropped": 2,
    "reading": 3,
    "completed": 4,
}


def normalize_status(status: str) -> str:
    """Map a foreign tracker's status label onto ours (defaults to ``reading``)."""
    s = (status or "").lower().strip()
    if "watch" in s or "read" in s:
        return "reading"
    if "complet" in s:
        return "completed"
    if "plan" in s or "want" in s:
        return "planning"
    if "drop" in s:
        return "dropped"
    if "hold" in s or "pause" in s:
        return "paused"
    return "reading"


class LibraryState(BaseModel):
    """Status and progress of one library row, existing or imported."""

    status: str
    progress: float = Field(default=0.0, ge=0)
    last_updated: Optional[datetime] = None


@dataclass
class ReconcileResult:
    should_update: bool
    reason: str
    update: dict[str, Any] = field(default_factory=dict)


def _timestamp(value: Optional[datetime]) -> float:
    if value is None:
        return 0.0
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.timestamp()


def reconcile_entry(existing: LibraryState, imported: LibraryState) -> ReconcileResult:
    """Decide whether an imported row may overwrite an existing one.

    Rules, in order:

    - A completed entry is only downgraded when progress increases
    - Newer timestamp or higher progress applies, except a progress
      regression without a newer timestamp
    - Identical status and progress is skipped
    - Same progress with a more advanced status updates the status only
    """
    existing_rank = STATUS_RANKS.get(existing.status, -1)
    imported_rank = STATUS_RANKS.get(imported.status, -1)

    progress_increased = imported.progress > existing.progress
    time_increased = _timestamp(imported.last_updated) > _timestamp(existing.last_updated)

    if existing.status == "completed" and imported.status != "completed" and not progress_increased:
        return ReconcileResult(False, "terminal_status_protected")

    if time_increased or progress_increased:
        if imported.progress < existing.progress and not time_increased:
            return ReconcileResult(False, "progress_regression_blocked")
        return ReconcileResult(
            True,
            "timestamp_advanced" if time_increased else "progress_increased",
            {"status": imported.status, "progress": imported.progress},
        )

    if imported.progress == existing.progress and imported_rank == existing_rank:
        return ReconcileResult(False, "already_up_to_date")

    if imported_rank > existing_rank and imported.progress == existing.progress:
        return ReconcileResult(True, "status_advanced", {"status": imported.status})

    return ReconcileResult(False, "no_significant_change")


class ImportEntry(BaseModel):
    """One row of an external reading list."""

    title: str = Field(min_length=1)
    status: str = "reading"
    progress: float = Field(default=0.0, ge=0)
    last_updated: Optional[datetime] = None
    external_id: Optional[str] = None


@dataclass(frozen=True)
class MatchResult:
    series_id: Optional[UUID]
    confidence: str
    match_type: str


NO_MATCH = MatchResult(series_id=None, confidence="none", match_type="none")


async def match_import_entry(
    conn: asyncpg.Connection, entry: ImportEntry, stores: Optional[Stores] = None
) -> MatchResult:
    """Match an import row: external id, then exact title, then alternative title.

    Anything less certain is left unmatched rather than guessed.
    """
    stores = stores or Stores()

    if entry.external_id:
        series = await stores.series.find_by_external_id(conn, entry.external_id)
        if series is not None:
            return MatchResult(series.id, "high", "external_id")

    title = " ".join(entry.title.split())
    series = await stores.series.find_by_title(conn, title)
    if series is not None:
        return MatchResult(series.id, "high", "exact_title")

    series = await stores.series.find_by_alternative_title(conn, title)
    if series is not None:
        return MatchResult(series.id, "medium", "alias")

    return NO_MATCH
