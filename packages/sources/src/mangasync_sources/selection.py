"""Best-source selection for reading a chapter.

Order of precedence:
1. The user's per-series preferred source (if available)
2. The user's global preferred source (if available)
3. Highest trust score, ties broken by most recent discovery
"""

from datetime import datetime
from typing import Literal, Optional, Sequence

from pydantic import BaseModel

SelectionReason = Literal["preferred_series", "preferred_global", "trust_score", "none"]


class SourceCandidate(BaseModel):
    """One source offering the chapter."""

    source_name: str
    chapter_url: str
    discovered_at: datetime
    is_available: bool = True
    trust_score: Optional[int] = None


class SeriesSourceTrust(BaseModel):
    """Series-level trust used when a candidate carries no score of its own."""

    source_name: str
    trust_score: int


class SourceSelection(BaseModel):
    source: Optional[SourceCandidate]
    reason: SelectionReason
    is_fallback: bool


def _trust(candidate: SourceCandidate, series_sources: Sequence[SeriesSourceTrust]) -> int:
    if candidate.trust_score is not None:
        return candidate.trust_score
    for ss in series_sources:
        if ss.source_name == candidate.source_name:
            return ss.trust_score
    return 0


def select_best_source(
    sources: Sequence[SourceCandidate],
    series_sources: Sequence[SeriesSourceTrust] = (),
    preferred_series: Optional[str] = None,
    preferred_global: Optional[str] = None,
) -> SourceSelection:
    """Choose the source a user should read the chapter on.

    ``is_fallback`` is True when the user expressed a preference that could
    not be honored at its own level.
    """
    available = [s for s in sources if s.is_available]
    if not available:
        return SourceSelection(source=None, reason="none", is_fallback=False)

    if preferred_series:
        for candidate in available:
            if candidate.source_name == preferred_series:
                return SourceSelection(source=candidate, reason="preferred_series", is_fallback=False)

    if preferred_global:
        for candidate in available:
            if candidate.source_name == preferred_global:
                return SourceSelection(
                    source=candidate,
                    reason="preferred_global",
                    is_fallback=bool(preferred_series),
                )

    best = max(
        available,
        key=lambda c: (_trust(c, series_sources), c.discovered_at.timestamp()),
    )
    return SourceSelection(
        source=best,
        reason="trust_score",
        is_fallback=bool(preferred_series or preferred_global),
    )
