"""Notification dedup markers and per-user throttling.

Throttles are checked in a fixed order and short-circuit on the first hit:

1. One notification per series per user per hour (set-if-absent marker)
2. Per-user hourly cap (fixed-window counter)
3. Per-user daily cap (fixed-window counter, higher ceiling for premium)

All state lives in the shared key/value store so every worker sees the same
counters.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional
from uuid import UUID

from mangasync_common import get_logger
from mangasync_contracts import chapter_key
from mangasync_storage import FixedWindowRateLimiter, KVStore

logger = get_logger(__name__)

HOUR_SECONDS = 60 * 60
DAY_SECONDS = 24 * HOUR_SECONDS
DEFAULT_DEDUPE_TTL = 7 * DAY_SECONDS

SERIES_HOURLY_LIMIT = "series_hourly_limit"
USER_HOURLY_LIMIT = "user_hourly_limit"
USER_DAILY_LIMIT = "user_daily_limit"


def dedupe_key(series_id: UUID, chapter_number: Decimal) -> str:
    return f"notify:dedupe:{series_id}:{chapter_key(chapter_number)}"


async def claim_chapter_notification(
    kv: KVStore,
    series_id: UUID,
    chapter_number: Decimal,
    ttl_seconds: float = DEFAULT_DEDUPE_TTL,
) -> bool:
    """Claim the right to fan out one chapter's notifications.

    Exactly one caller wins per (series, chapter) within the TTL, however many
    sources report the chapter.
    """
    return await kv.set_if_absent(dedupe_key(series_id, chapter_number), "1", ttl_seconds)


async def release_chapter_notification(kv: KVStore, series_id: UUID, chapter_number: Decimal) -> None:
    await kv.delete(dedupe_key(series_id, chapter_number))


@dataclass(frozen=True)
class ThrottleDecision:
    throttled: bool
    reason: Optional[str] = None


ALLOWED = ThrottleDecision(throttled=False)


class NotificationThrottle:
    """Per-user notification ceilings.

    Args:
        kv: Shared key/value store
        hourly_limit: Notifications per user per hour
        daily_limit: Notifications per free user per day
        premium_daily_limit: Notifications per premium user per day
    """

    def __init__(
        self,
        kv: KVStore,
        *,
        hourly_limit: int = 100,
        daily_limit: int = 50,
        premium_daily_limit: int = 500,
    ):
        self.kv = kv
        self._hourly = FixedWindowRateLimiter(kv, "notify:user-hourly", hourly_limit, HOUR_SECONDS)
        # Both daily limiters count against the same key
        self._daily = FixedWindowRateLimiter(kv, "notify:user-daily", daily_limit, DAY_SECONDS)
        self._premium_daily = FixedWindowRateLimiter(
            kv, "notify:user-daily", premium_daily_limit, DAY_SECONDS
        )

    async def check(
        self,
        user_id: UUID,
        series_id: UUID,
        is_premium: bool = False,
        claim: Optional[str] = None,
    ) -> ThrottleDecision:
        """Consume one notification from the user's allowances.

        Args:
            claim: Identifies the caller (a delivery job's dedup key). A series
                marker already holding the same claim was taken by an earlier
                attempt of that caller, so the check passes without counting
                the notification twice.

        Returns:
            ThrottleDecision; ``reason`` names the first ceiling hit
        """
        series_marker = f"throttle:user:{user_id}:series:{series_id}"
        marker_value = claim or "1"
        if not await self.kv.set_if_absent(series_marker, marker_value, HOUR_SECONDS):
            if claim is not None and await self.kv.get(series_marker) == claim:
                return ALLOWED
            return ThrottleDecision(True, SERIES_HOURLY_LIMIT)

        reason = None
        if not await self._hourly.hit(str(user_id)):
            reason = USER_HOURLY_LIMIT
        else:
            daily = self._premium_daily if is_premium else self._daily
            if not await daily.hit(str(user_id)):
                reason = USER_DAILY_LIMIT

        if reason is None:
            return ALLOWED

        # Nothing is sent for this series, so its hourly slot stays free
        await self.kv.compare_and_delete(series_marker, marker_value)
        return ThrottleDecision(True, reason)
