"""KVStore - shared key/value records with expiry.

Backs leases (locks, dedup markers, leader election), fixed-window counters,
heartbeats and token buckets. Every key is namespaced with the deployment
prefix (``mangasync:<environment>:``). Expired rows are invisible to reads and
are removed by ``purge_expired``.

Each method is a single atomic statement, so concurrent workers on separate
connections observe set-if-absent and compare-and-delete semantics.
"""

from __future__ import annotations

from typing import Optional

import asyncpg
from mangasync_common import StorageError, get_logger

logger = get_logger(__name__)

_LIVE = "(expires_at IS NULL OR expires_at > now())"


class KVStore:
    """Namespaced key/value operations over the ``kv_leases`` table."""

    def __init__(self, pool: asyncpg.Pool, prefix: str = "mangasync:development:"):
        self._pool = pool
        self.prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    async def set_if_absent(self, key: str, value: str, ttl_seconds: float) -> bool:
        """Store ``value`` only when no live record exists.

        An expired record is overwritten in place.

        Returns:
            True if this call created (or reclaimed) the record
        """
        try:
            async with self._pool.acquire() as conn:
                row = await conn.fetchval(
                    """
                    INSERT INTO kv_leases (key, value, expires_at)
                    VALUES ($1, $2, now() + make_interval(secs => $3))
                    ON CONFLICT (key) DO UPDATE
                        SET value = EXCLUDED.value, expires_at = EXCLUDED.expires_at
                        WHERE kv_leases.expires_at IS NOT NULL
                          AND kv_leases.expires_at <= now()
                    RETURNING key
                    """,
                    self._key(key),
                    value,
                    float(ttl_seconds),
                )
                return row is not None
        except Exception as e:
            logger.error("kv_set_if_absent_failed", key=key, error=str(e))
            raise StorageError(f"Failed to set key {key}: {e}") from e

    async def set(self, key: str, value: str, ttl_seconds: Optional[float] = None) -> None:
        """Unconditionally store ``value``; ``ttl_seconds=None`` never expires."""
        try:
            async with self._pool.acquire() as conn:
                await conn.execute(
                    """
                    INSERT INTO kv_leases (key, value, expires_at)
                    VALUES (
                        $1, $2,
                        CASE WHEN $3::float8 IS NULL THEN NULL
                             ELSE now() + make_interval(secs => $3::float8) END
                    )
                    ON CONFLICT (key) DO UPDATE
                        SET value = EXCLUDED.value, expires_at = EXCLUDED.expires_at
                    """,
                    self._key(key),
                    value,
                    None if ttl_seconds is None else float(ttl_seconds),
                )
        except Exception as e:
            logger.error("kv_set_failed", key=key, error=str(e))
            raise StorageError(f"Failed to set key {key}: {e}") from e

    async def get(self, key: str) -> Optional[str]:
        try:
            async with self._pool.acquire() as conn:
                return await conn.fetchval(
                    f"SELECT value FROM kv_leases WHERE key = $1 AND {_LIVE}",
                    self._key(key),
                )
        except Exception as e:
            logger.error("kv_get_failed", key=key, error=str(e))
            raise StorageError(f"Failed to get key {key}: {e}") from e

    async def delete(self, key: str) -> bool:
        try:
            async with self._pool.acquire() as conn:
                result = await conn.execute("DELETE FROM kv_leases WHERE key = $1", self._key(key))
                return result == "DELETE 1"
        except Exception as e:
            logger.error("kv_delete_failed", key=key, error=str(e))
            raise StorageError(f"Failed to delete key {key}: {e}") from e

    async def compare_and_delete(self, key: str, expected: str) -> bool:
        """Delete the record only while it is live and holds ``expected``."""
        try:
            async with self._pool.acquire() as conn:
                row = await conn.fetchval(
                    f"""
                    DELETE FROM kv_leases
                    WHERE key = $1 AND value = $2 AND {_LIVE}
                    RETURNING key
                    """,
                    self._key(key),
                    expected,
                )
                return row is not None
        except Exception as e:
            logger.error("kv_compare_and_delete_failed", key=key, error=str(e))
            raise StorageError(f"Failed to release key {key}: {e}") from e

    async def extend_if_owner(self, key: str, expected: str, ttl_seconds: float) -> bool:
        """Push the expiry of a live record holding ``expected`` to now + ttl."""
        try:
            async with self._pool.acquire() as conn:
                row = await conn.fetchval(
                    """
                    UPDATE kv_leases
                    SET expires_at = now() + make_interval(secs => $3)
                    WHERE key = $1 AND value = $2 AND expires_at > now()
                    RETURNING key
                    """,
                    self._key(key),
                    expected,
                    float(ttl_seconds),
                )
                return row is not None
        except Exception as e:
            logger.error("kv_extend_failed", key=key, error=str(e))
            raise StorageError(f"Failed to extend key {key}: {e}") from e

    async def incr_with_expiry(self, key: str, ttl_seconds: float) -> int:
        """Atomically increment a counter, setting its expiry on first increment.

        An expired counter restarts at 1 with a fresh window.

        Returns:
            Post-increment count
        """
        try:
            async with self._pool.acquire() as conn:
                count = await conn.fetchval(
                    """
                    INSERT INTO kv_leases (key, value, expires_at)
                    VALUES ($1, '1', now() + make_interval(secs => $2))
                    ON CONFLICT (key) DO UPDATE
                        SET value = CASE
                                WHEN kv_leases.expires_at IS NOT NULL
                                     AND kv_leases.expires_at <= now() THEN '1'
                                ELSE (kv_leases.value::bigint + 1)::text
                            END,
                            expires_at = CASE
                                WHEN kv_leases.expires_at IS NOT NULL
                                     AND kv_leases.expires_at <= now() THEN EXCLUDED.expires_at
                                ELSE kv_leases.expires_at
                            END
                    RETURNING value::bigint
                    """,
                    self._key(key),
                    float(ttl_seconds),
                )
                return int(count)
        except Exception as e:
            logger.error("kv_incr_failed", key=key, error=str(e))
            raise StorageError(f"Failed to increment key {key}: {e}") from e

    async def take_token(self, key: str, rate: float, capacity: float) -> tuple[bool, float]:
        """Take one token from a shared token bucket.

        The bucket refills continuously at ``rate`` tokens/second up to
        ``capacity``; it starts full.

        Returns:
            ``(acquired, wait_seconds)``; ``wait_seconds`` is the time until the
            next token when not acquired, else 0.
        """
        full_key = self._key(key)
        try:
            async with self._pool.acquire() as conn:
                async with conn.transaction():
                    await conn.execute(
                        """
                        INSERT INTO rate_buckets (key, tokens, refilled_at)
                        VALUES ($1, $2, now())
                        ON CONFLICT (key) DO NOTHING
                        """,
                        full_key,
                        float(capacity),
                    )
                    row = await conn.fetchrow(
                        """
                        SELECT tokens, EXTRACT(EPOCH FROM (now() - refilled_at)) AS elapsed
                        FROM rate_buckets WHERE key = $1
                        FOR UPDATE
                        """,
                        full_key,
                    )
                    tokens = min(float(capacity), row["tokens"] + float(row["elapsed"]) * rate)
                    acquired = tokens >= 1.0
                    if acquired:
                        tokens -= 1.0
                    await conn.execute(
                        "UPDATE rate_buckets SET tokens = $2, refilled_at = now() WHERE key = $1",
                        full_key,
                        tokens,
                    )
            wait = 0.0 if acquired else (1.0 - tokens) / rate
            return acquired, wait
        except Exception as e:
            logger.error("kv_take_token_failed", key=key, error=str(e))
            raise StorageError(f"Failed to take token {key}: {e}") from e

    async def purge_expired(self) -> int:
        """Delete expired records. Returns number deleted."""
        try:
            async with self._pool.acquire() as conn:
                result = await conn.execute(
                    "DELETE FROM kv_leases WHERE expires_at IS NOT NULL AND expires_at <= now()"
                )
                deleted = int(result.split()[-1]) if result else 0
                if deleted > 0:
                    logger.info("kv_purged", deleted=deleted)
                return deleted
        except Exception as e:
            logger.error("kv_purge_failed", error=str(e))
            raise StorageError(f"Failed to purge expired keys: {e}") from e
