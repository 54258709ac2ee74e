"""Tests for worker wiring and CLI parsing."""

from unittest.mock import MagicMock

import httpx
import pytest
from mangasync_common import Settings
from mangasync_daemon.server import build_handlers, parse_queues
from mangasync_storage import QueueName

pytestmark = pytest.mark.unit


class TestParseQueues:
    def test_default_is_every_queue(self):
        assert parse_queues(None) == list(QueueName.ALL)
        assert parse_queues("") == list(QueueName.ALL)

    def test_comma_separated(self):
        assert parse_queues(f" {QueueName.POLL} ,{QueueName.INGEST},") == [QueueName.POLL, QueueName.INGEST]

    def test_unknown_queue_rejected(self):
        with pytest.raises(ValueError, match="bogus"):
            parse_queues(f"{QueueName.POLL},bogus")


class TestBuildHandlers:
    async def test_every_queue_has_a_handler(self, kv):
        async with httpx.AsyncClient() as client:
            handlers = build_handlers(MagicMock(), kv, Settings(), client)

        assert set(handlers) == set(QueueName.ALL)
        assert all(callable(h) for h in handlers.values())

    async def test_delivery_lanes_share_one_handler(self, kv):
        async with httpx.AsyncClient() as client:
            handlers = build_handlers(MagicMock(), kv, Settings(), client)

        standard = handlers[QueueName.DELIVERY]
        premium = handlers[QueueName.DELIVERY_PREMIUM]
        assert standard.__self__ is premium.__self__

    async def test_settings_flow_into_handlers(self, kv):
        settings = Settings(user_daily_limit=7, backlog_critical=123, primary_source="Comick")
        async with httpx.AsyncClient() as client:
            handlers = build_handlers(MagicMock(), kv, settings, client)

        deliverer = handlers[QueueName.DELIVERY].__self__
        assert deliverer.backlog_critical == 123
        assert handlers[QueueName.CANONICALIZE].__self__.primary_source == "comick"
        assert handlers[QueueName.POLL].__self__.backlog_critical == 123
