"""Pytest fixtures for storage tests."""

import time
from typing import Optional

import pytest


class MemoryKV:
    """In-process stand-in for KVStore with the same expiry semantics."""

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

    async def get(self, key):
        return self._live(key)

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


@pytest.fixture
def memory_kv():
    return MemoryKV()
