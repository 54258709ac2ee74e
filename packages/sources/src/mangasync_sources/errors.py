"""Scraper error taxonomy.

``retryable`` tells the queue consumer whether a failed poll should be
retried with backoff; ``code`` is a stable machine-readable tag used in logs
and metrics.
"""

from typing import Optional

from mangasync_common import MangaSyncError


class ScraperError(MangaSyncError):
    """Base exception for upstream source failures."""

    def __init__(
        self,
        message: str,
        source: str,
        retryable: bool = True,
        code: Optional[str] = None,
    ):
        self.message = message
        self.source = source
        self.retryable = retryable
        self.code = code
        super().__init__(message)

    def __str__(self) -> str:
        tag = f" [{self.code}]" if self.code else ""
        return f"{self.source}: {self.message}{tag}"


class RateLimitedError(ScraperError):
    """Upstream answered 429."""

    def __init__(self, source: str):
        super().__init__("Rate limit exceeded", source, retryable=True, code="RATE_LIMIT")


class ProxyBlockedError(ScraperError):
    """Request blocked by a proxy or WAF (401/403)."""

    def __init__(self, source: str):
        super().__init__("Request blocked by proxy/WAF", source, retryable=True, code="PROXY_BLOCKED")


class SelectorNotFoundError(ScraperError):
    """Page layout changed; retrying will not help until the scraper is fixed."""

    def __init__(self, source: str, selector: str):
        self.selector = selector
        super().__init__(
            f"Selector not found: {selector}", source, retryable=False, code="SELECTOR_NOT_FOUND"
        )


class CircuitOpenError(ScraperError):
    """The in-process circuit breaker for this source is open."""

    def __init__(self, source: str):
        super().__init__(
            f"Circuit breaker is open for source: {source}", source, retryable=False, code="CIRCUIT_OPEN"
        )
