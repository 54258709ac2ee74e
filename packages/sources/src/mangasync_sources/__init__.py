"""MangaSync Sources - upstream scrapers and source-level policy.

Version: 1.0.0

This package provides:
- Scraper protocol and MangaDexScraper (httpx)
- Scraper error taxonomy with retry semantics
- Per-source circuit breaker and shared rate limiting
- Source URL / id allow-listing and cover URL checks
- Title normalization and best-source selection
"""

from mangasync_sources.base import ScrapedChapter, ScrapedSeries, Scraper
from mangasync_sources.circuit import CircuitBreaker
from mangasync_sources.covers import (
    IMAGE_WHITELIST,
    choose_cover,
    is_placeholder_cover,
    is_valid_cover_url,
    is_whitelisted_domain,
)
from mangasync_sources.errors import (
    CircuitOpenError,
    ProxyBlockedError,
    RateLimitedError,
    ScraperError,
    SelectorNotFoundError,
)
from mangasync_sources.mangadex import MangaDexScraper
from mangasync_sources.rate_limit import (
    DEFAULT_LIMIT,
    DEFAULT_SOURCE_LIMITS,
    SourceRateConfig,
    SourceRateLimiter,
    get_source_rate_config,
)
from mangasync_sources.registry import ScraperRegistry, build_default_registry
from mangasync_sources.selection import (
    SeriesSourceTrust,
    SourceCandidate,
    SourceSelection,
    select_best_source,
)
from mangasync_sources.titles import normalize_title
from mangasync_sources.validation import ALLOWED_HOSTS, validate_source_id, validate_source_url

__version__ = "1.0.0"

__all__ = [
    # Scrapers
    "Scraper",
    "ScrapedSeries",
    "ScrapedChapter",
    "MangaDexScraper",
    "ScraperRegistry",
    "build_default_registry",
    "CircuitBreaker",
    # Errors
    "ScraperError",
    "RateLimitedError",
    "ProxyBlockedError",
    "SelectorNotFoundError",
    "CircuitOpenError",
    # Rate limiting
    "SourceRateConfig",
    "SourceRateLimiter",
    "DEFAULT_SOURCE_LIMITS",
    "DEFAULT_LIMIT",
    "get_source_rate_config",
    # Validation
    "ALLOWED_HOSTS",
    "validate_source_id",
    "validate_source_url",
    "IMAGE_WHITELIST",
    "is_whitelisted_domain",
    "is_valid_cover_url",
    "is_placeholder_cover",
    "choose_cover",
    # Matching / selection
    "normalize_title",
    "SourceCandidate",
    "SeriesSourceTrust",
    "SourceSelection",
    "select_best_source",
]
