"""Tests for SeriesStore - canonical series lookups and updates."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock
from uuid import uuid4

import asyncpg
import pytest

from mangasync_common import StorageError
from mangasync_storage.series_store import SeriesStore

pytestmark = pytest.mark.unit


def _series_row(**overrides):
    now = datetime.now(timezone.utc)
    row = {
        "id": uuid4(),
        "title": "Solo Leveling",
        "alternative_titles": ["Na Honjaman Level Up"],
        "description": None,
        "cover_url": None,
        "type": "manhwa",
        "status": "completed",
        "genres": None,
        "tags": [],
        "content_rating": "safe",
        "external_id": "md-123",
        "created_at": now,
        "updated_at": now,
    }
    row.update(overrides)
    return row


class TestGet:
    async def test_found(self):
        row = _series_row()
        conn = AsyncMock()
        conn.fetchrow = AsyncMock(return_value=row)

        series = await SeriesStore.get(conn, row["id"])

        assert series.id == row["id"]
        assert series.genres == []
        assert series.alternative_titles == ["Na Honjaman Level Up"]

    async def test_missing(self):
        conn = AsyncMock()
        conn.fetchrow = AsyncMock(return_value=None)

        assert await SeriesStore.get(conn, uuid4()) is None

    async def test_error_wrapped(self):
        conn = AsyncMock()
        conn.fetchrow = AsyncMock(side_effect=RuntimeError("connection lost"))

        with pytest.raises(StorageError, match="connection lost"):
            await SeriesStore.get(conn, uuid4())


class TestLookups:
    async def test_find_by_title_is_case_insensitive_query(self):
        conn = AsyncMock()
        conn.fetchrow = AsyncMock(return_value=_series_row())

        series = await SeriesStore.find_by_title(conn, "solo leveling")

        assert series.title == "Solo Leveling"
        sql = conn.fetchrow.await_args.args[0]
        assert "lower(title) = lower($1)" in sql
        assert "FOR UPDATE" in sql

    async def test_find_by_alternative_title(self):
        conn = AsyncMock()
        conn.fetchrow = AsyncMock(return_value=_series_row())

        series = await SeriesStore.find_by_alternative_title(conn, "na honjaman level up")

        assert series is not None
        assert "unnest(s.alternative_titles)" in conn.fetchrow.await_args.args[0]

    async def test_find_by_external_id_missing(self):
        conn = AsyncMock()
        conn.fetchrow = AsyncMock(return_value=None)

        assert await SeriesStore.find_by_external_id(conn, "md-999") is None


class TestCreate:
    async def test_defaults_empty_lists(self):
        conn = AsyncMock()
        conn.fetchrow = AsyncMock(return_value=_series_row(alternative_titles=[]))

        await SeriesStore.create(conn, title="Solo Leveling")

        args = conn.fetchrow.await_args.args
        assert args[1] == "Solo Leveling"
        assert args[2] == []
        assert args[5] == "manga"
        assert args[7] == [] and args[8] == []

    async def test_duplicate_external_id(self):
        conn = AsyncMock()
        conn.fetchrow = AsyncMock(side_effect=asyncpg.UniqueViolationError("duplicate key"))

        with pytest.raises(StorageError, match="already exists"):
            await SeriesStore.create(conn, title="Solo Leveling", external_id="md-123")


class TestUpdate:
    async def test_only_named_fields_set(self):
        row = _series_row(description="Hunters and gates")
        conn = AsyncMock()
        conn.fetchrow = AsyncMock(return_value=row)

        series = await SeriesStore.update(conn, row["id"], {"description": "Hunters and gates"})

        assert series.description == "Hunters and gates"
        sql = conn.fetchrow.await_args.args[0]
        assert "description = $1" in sql
        assert "updated_at = now()" in sql
        assert "WHERE id = $2" in sql
        assert conn.fetchrow.await_args.args[1:] == ("Hunters and gates", row["id"])

    async def test_unknown_field_rejected(self):
        conn = AsyncMock()

        with pytest.raises(ValueError, match="id"):
            await SeriesStore.update(conn, uuid4(), {"id": uuid4()})

        conn.fetchrow.assert_not_awaited()

    async def test_missing_series(self):
        conn = AsyncMock()
        conn.fetchrow = AsyncMock(return_value=None)

        with pytest.raises(StorageError, match="not found"):
            await SeriesStore.update(conn, uuid4(), {"status": "ongoing"})
