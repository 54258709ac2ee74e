"""Scraper lookup by source name."""

from typing import Iterator, Optional

import httpx
from mangasync_common import Settings

from mangasync_sources.base import Scraper
from mangasync_sources.mangadex import MangaDexScraper


class ScraperRegistry:
    """Case-insensitive mapping of source name to scraper."""

    def __init__(self) -> None:
        self._scrapers: dict[str, Scraper] = {}

    def register(self, scraper: Scraper) -> None:
        self._scrapers[scraper.name.lower()] = scraper

    def get(self, source_name: str) -> Optional[Scraper]:
        return self._scrapers.get((source_name or "").lower())

    def __contains__(self, source_name: str) -> bool:
        return self.get(source_name) is not None

    def __iter__(self) -> Iterator[str]:
        return iter(self._scrapers)


def build_default_registry(settings: Settings, client: httpx.AsyncClient) -> ScraperRegistry:
    """Registry with every built-in scraper sharing one HTTP client."""
    registry = ScraperRegistry()
    registry.register(
        MangaDexScraper(
            client,
            base_url=settings.mangadex_api_url,
            user_agent=settings.mangadex_user_agent,
        )
    )
    return registry
