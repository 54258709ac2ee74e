"""Rate limiting primitives backed by the shared key/value store."""

from __future__ import annotations

from mangasync_common import get_logger

from mangasync_storage.kv_store import KVStore

logger = get_logger(__name__)


class FixedWindowRateLimiter:
    """At most ``limit`` hits per ``window_seconds`` per identifier.

    The window starts at the first hit (the counter's expiry is set on first
    increment), so the count is exact across workers.

    Example:
        >>> hourly = FixedWindowRateLimiter(kv, "user-hourly", limit=100, window_seconds=3600)
        >>> if not await hourly.hit(str(user_id)):
        ...     return  # throttled
    """

    def __init__(self, kv: KVStore, name: str, limit: int, window_seconds: float):
        if limit < 1:
            raise ValueError("limit must be >= 1")
        self.kv = kv
        self.name = name
        self.limit = limit
        self.window_seconds = window_seconds

    def _key(self, identifier: str) -> str:
        return f"ratelimit:{self.name}:{identifier}"

    async def hit(self, identifier: str = "global") -> bool:
        """Count one hit. Returns True while the post-increment count is within the limit."""
        count = await self.kv.incr_with_expiry(self._key(identifier), self.window_seconds)
        allowed = count <= self.limit
        if not allowed:
            logger.debug("rate_limited", limiter=self.name, identifier=identifier, count=count)
        return allowed


class TokenBucket:
    """Shared token bucket: ``rate`` tokens/second, bursts up to ``capacity``."""

    def __init__(self, kv: KVStore, name: str, rate: float, capacity: float):
        if rate <= 0 or capacity < 1:
            raise ValueError("rate must be > 0 and capacity >= 1")
        self.kv = kv
        self.name = name
        self.rate = rate
        self.capacity = capacity

    async def try_acquire(self) -> tuple[bool, float]:
        """Returns ``(acquired, seconds_until_next_token)``."""
        return await self.kv.take_token(f"bucket:{self.name}", self.rate, self.capacity)
