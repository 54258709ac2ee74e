"""MangaDex API scraper (httpx).

Fetches the manga record for the title and its English chapter feed. HTTP
status codes map onto the scraper error taxonomy:

- 429 -> RateLimitedError (does not trip the circuit breaker)
- 401/403 -> ProxyBlockedError
- other non-2xx, timeouts, transport errors -> retryable ScraperError
"""

from __future__ import annotations

import re
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

import httpx
from mangasync_common import get_logger

from mangasync_sources.base import ScrapedChapter, ScrapedSeries
from mangasync_sources.circuit import CircuitBreaker
from mangasync_sources.errors import (
    CircuitOpenError,
    ProxyBlockedError,
    RateLimitedError,
    ScraperError,
)

logger = get_logger(__name__)

SOURCE_NAME = "mangadex"
DEFAULT_BASE_URL = "https://api.mangadex.org"
DEFAULT_USER_AGENT = "mangasync/1.0"
FEED_PAGE_SIZE = 500
MAX_FEED_PAGES = 20

UUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    re.IGNORECASE,
)

_CONTENT_RATINGS = ("safe", "suggestive", "erotica", "pornographic")


def _parse_chapter_number(raw: Optional[str]) -> Decimal:
    """MangaDex chapter strings; oneshots (null) and junk map to 0."""
    if not raw:
        return Decimal(0)
    try:
        value = Decimal(raw.strip())
    except InvalidOperation:
        return Decimal(0)
    if not value.is_finite() or value < 0:
        return Decimal(0)
    return value


def _parse_timestamp(raw: Optional[str]) -> Optional[datetime]:
    if not raw:
        return None
    try:
        return datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None


def _pick_title(attributes: dict[str, Any]) -> str:
    titles = attributes.get("title") or {}
    if titles.get("en"):
        return titles["en"]
    for value in titles.values():
        if value:
            return value
    return ""


class MangaDexScraper:
    """Scraper for api.mangadex.org.

    Example:
        >>> async with httpx.AsyncClient() as client:
        ...     scraper = MangaDexScraper(client=client)
        ...     series = await scraper.scrape_series("a1c7c817-4e59-43b7-9365-09675a149a6f")
    """

    name = SOURCE_NAME

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        *,
        base_url: str = DEFAULT_BASE_URL,
        user_agent: Optional[str] = None,
        timeout: float = 30.0,
        breaker: Optional[CircuitBreaker] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._headers = {
            "User-Agent": user_agent or DEFAULT_USER_AGENT,
            "Accept": "application/json",
        }
        self.breaker = breaker or CircuitBreaker()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _get(self, path: str, params: Any = None) -> dict[str, Any]:
        response = await self._client.get(f"{self.base_url}{path}", params=params, headers=self._headers)

        if response.status_code == 429:
            raise RateLimitedError(SOURCE_NAME)
        if response.status_code in (401, 403):
            raise ProxyBlockedError(SOURCE_NAME)
        if response.status_code >= 400:
            raise ScraperError(
                f"HTTP {response.status_code} from {path}",
                SOURCE_NAME,
                retryable=True,
                code=f"HTTP_{response.status_code}",
            )
        return response.json()

    async def _fetch_feed(self, source_id: str) -> list[ScrapedChapter]:
        chapters: list[ScrapedChapter] = []
        offset = 0
        for _ in range(MAX_FEED_PAGES):
            params: list[tuple[str, Any]] = [
                ("limit", FEED_PAGE_SIZE),
                ("offset", offset),
                ("translatedLanguage[]", "en"),
                ("order[chapter]", "asc"),
            ]
            params.extend(("contentRating[]", rating) for rating in _CONTENT_RATINGS)

            page = await self._get(f"/manga/{source_id}/feed", params=params)
            items = page.get("data") or []
            for item in items:
                attributes = item.get("attributes") or {}
                raw_number = attributes.get("chapter")
                chapters.append(
                    ScrapedChapter(
                        chapter_number=_parse_chapter_number(raw_number),
                        chapter_title=attributes.get("title") or f"Chapter {raw_number}",
                        chapter_url=f"https://mangadex.org/chapter/{item['id']}",
                        published_at=_parse_timestamp(attributes.get("publishAt")),
                    )
                )

            offset += len(items)
            total = page.get("total", 0)
            if not items or offset >= total:
                break
        return chapters

    async def scrape_series(self, source_id: str) -> ScrapedSeries:
        """Fetch title and chapter list.

        Raises:
            CircuitOpenError: Too many recent failures
            ScraperError: Invalid id (non-retryable) or upstream failure
        """
        if self.breaker.is_open():
            raise CircuitOpenError(SOURCE_NAME)

        if not UUID_PATTERN.match(source_id or ""):
            raise ScraperError(
                "Invalid MangaDex ID format", SOURCE_NAME, retryable=False, code="INVALID_SOURCE_ID"
            )

        logger.info("mangadex_fetch_started", source_id=source_id)

        try:
            manga = await self._get(f"/manga/{source_id}")
            title = _pick_title((manga.get("data") or {}).get("attributes") or {})
            chapters = await self._fetch_feed(source_id)
        except RateLimitedError:
            raise
        except ScraperError:
            self.breaker.record_failure()
            raise
        except (httpx.HTTPError, ValueError, KeyError) as e:
            self.breaker.record_failure()
            logger.error("mangadex_fetch_failed", source_id=source_id, error=str(e))
            raise ScraperError(f"MangaDex fetch failed: {e}", SOURCE_NAME, retryable=True) from e

        self.breaker.record_success()
        logger.info("mangadex_fetch_completed", source_id=source_id, chapters=len(chapters))
        return ScrapedSeries(source_id=source_id, title=title, chapters=chapters)
