"""Scraper interface and scraped-data models."""

from datetime import datetime
from decimal import Decimal
from typing import Optional, Protocol, runtime_checkable

from pydantic import BaseModel, Field


class ScrapedChapter(BaseModel):
    """One chapter as reported by a source."""

    chapter_number: Decimal = Field(ge=0)
    chapter_title: Optional[str] = None
    chapter_url: str
    published_at: Optional[datetime] = None


class ScrapedSeries(BaseModel):
    """A source's view of one series and its chapter list."""

    source_id: str
    title: str
    chapters: list[ScrapedChapter] = Field(default_factory=list)


@runtime_checkable
class Scraper(Protocol):
    """Fetches a series' chapter list from one upstream source."""

    name: str

    async def scrape_series(self, source_id: str) -> ScrapedSeries:
        """Raises ScraperError (or a subclass) on upstream failure."""
        ...
