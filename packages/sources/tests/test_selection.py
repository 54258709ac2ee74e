"""Tests for best-source selection."""

from datetime import datetime, timedelta, timezone

import pytest

from mangasync_sources.selection import (
    SeriesSourceTrust,
    SourceCandidate,
    select_best_source,
)

pytestmark = pytest.mark.unit

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _candidate(name, trust=None, discovered=T0, available=True):
    return SourceCandidate(
        source_name=name,
        chapter_url=f"https://{name}.test/c/1",
        discovered_at=discovered,
        is_available=available,
        trust_score=trust,
    )


@pytest.fixture
def a_and_b():
    return [_candidate("A", trust=90), _candidate("B", trust=70)]


class TestPreferences:
    def test_series_preference_wins(self, a_and_b):
        result = select_best_source(a_and_b, preferred_series="B")

        assert result.source.source_name == "B"
        assert result.reason == "preferred_series"
        assert result.is_fallback is False

    def test_global_preference_when_series_preference_absent(self, a_and_b):
        result = select_best_source(a_and_b, preferred_series="C", preferred_global="A")

        assert result.source.source_name == "A"
        assert result.reason == "preferred_global"
        assert result.is_fallback is True

    def test_global_preference_alone_is_not_fallback(self, a_and_b):
        result = select_best_source(a_and_b, preferred_global="B")

        assert result.source.source_name == "B"
        assert result.is_fallback is False

    def test_no_preference_picks_highest_trust(self, a_and_b):
        result = select_best_source(a_and_b)

        assert result.source.source_name == "A"
        assert result.reason == "trust_score"
        assert result.is_fallback is False

    def test_unmatched_preferences_fall_back_to_trust(self, a_and_b):
        result = select_best_source(a_and_b, preferred_series="C", preferred_global="D")

        assert result.source.source_name == "A"
        assert result.reason == "trust_score"
        assert result.is_fallback is True


class TestFiltering:
    def test_unavailable_preferred_source_skipped(self):
        sources = [_candidate("A", trust=90), _candidate("B", trust=70, available=False)]

        result = select_best_source(sources, preferred_series="B")

        assert result.source.source_name == "A"
        assert result.is_fallback is True

    def test_empty_returns_none(self):
        result = select_best_source([])

        assert result.source is None
        assert result.reason == "none"
        assert result.is_fallback is False

    def test_all_unavailable_returns_none(self):
        result = select_best_source([_candidate("A", available=False)], preferred_series="A")

        assert result.reason == "none"


class TestTrustResolution:
    def test_series_source_trust_used_when_candidate_has_none(self):
        sources = [_candidate("A"), _candidate("B")]
        series_sources = [
            SeriesSourceTrust(source_name="A", trust_score=40),
            SeriesSourceTrust(source_name="B", trust_score=80),
        ]

        result = select_best_source(sources, series_sources)

        assert result.source.source_name == "B"

    def test_unknown_trust_counts_as_zero(self):
        sources = [_candidate("A"), _candidate("B", trust=1)]

        assert select_best_source(sources).source.source_name == "B"

    def test_tie_broken_by_latest_discovery(self):
        sources = [
            _candidate("old", trust=50, discovered=T0),
            _candidate("new", trust=50, discovered=T0 + timedelta(hours=1)),
        ]

        assert select_best_source(sources).source.source_name == "new"
