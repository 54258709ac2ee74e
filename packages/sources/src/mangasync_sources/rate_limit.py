"""Per-source request pacing shared across all workers.

Each source gets a token bucket in the shared store. Limits come from
built-in defaults and can be overridden per source with an environment
variable ``RATE_LIMIT_<SOURCE>=requests_per_second,burst_size,cooldown_ms``,
e.g. ``RATE_LIMIT_MANGADEX=5,10,200``.
"""

from __future__ import annotations

import asyncio
import os
import time
from dataclasses import dataclass
from typing import Mapping, Optional

from mangasync_common import get_logger
from mangasync_storage import KVStore, TokenBucket

logger = get_logger(__name__)


@dataclass(frozen=True)
class SourceRateConfig:
    requests_per_second: int
    burst_size: int
    cooldown_ms: int


DEFAULT_SOURCE_LIMITS: dict[str, SourceRateConfig] = {
    "mangadex": SourceRateConfig(5, 10, 200),
    "mangapark": SourceRateConfig(2, 5, 500),
    "comick": SourceRateConfig(3, 6, 333),
    "mangasee": SourceRateConfig(1, 3, 1000),
}

# Unknown sources get the most conservative pacing
DEFAULT_LIMIT = SourceRateConfig(1, 2, 1000)


def get_source_rate_config(
    source_name: str, env: Optional[Mapping[str, str]] = None
) -> SourceRateConfig:
    """Env override first, then the per-source default, then ``DEFAULT_LIMIT``."""
    env = os.environ if env is None else env
    normalized = source_name.lower()
    env_key = f"RATE_LIMIT_{normalized.upper()}"
    raw = env.get(env_key)

    if raw:
        try:
            parts = [int(p.strip()) for p in raw.split(",")]
        except ValueError:
            parts = []
        if len(parts) == 3 and all(p > 0 for p in parts):
            return SourceRateConfig(*parts)
        logger.warning("rate_limit_override_invalid", env_key=env_key, value=raw)

    return DEFAULT_SOURCE_LIMITS.get(normalized, DEFAULT_LIMIT)


class SourceRateLimiter:
    """Waits for a request slot for a source, up to a timeout."""

    def __init__(self, kv: KVStore, env: Optional[Mapping[str, str]] = None):
        self.kv = kv
        self._env = env
        self._buckets: dict[str, tuple[TokenBucket, SourceRateConfig]] = {}

    def _bucket(self, source_name: str) -> tuple[TokenBucket, SourceRateConfig]:
        normalized = source_name.lower()
        if normalized not in self._buckets:
            config = get_source_rate_config(normalized, self._env)
            bucket = TokenBucket(
                self.kv,
                f"source:{normalized}",
                rate=config.requests_per_second,
                capacity=config.burst_size,
            )
            self._buckets[normalized] = (bucket, config)
        return self._buckets[normalized]

    async def acquire(self, source_name: str, timeout: float = 30.0) -> bool:
        """Take a token, sleeping between attempts.

        On success the source's cooldown is observed before returning.

        Returns:
            False if no token became available within ``timeout`` seconds
        """
        bucket, config = self._bucket(source_name)
        deadline = time.monotonic() + timeout

        while True:
            acquired, wait = await bucket.try_acquire()
            if acquired:
                if config.cooldown_ms > 0:
                    await asyncio.sleep(config.cooldown_ms / 1000)
                return True

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.warning("rate_limit_timeout", source=source_name, timeout=timeout)
                return False
            await asyncio.sleep(min(max(wait, 0.01), remaining))
