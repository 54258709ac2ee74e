"""Outbound request guards: only known source hosts and well-formed ids."""

import re
from urllib.parse import urlparse

ALLOWED_HOSTS = frozenset(
    {
        "mangapark.io",
        "www.mangapark.io",
        "mangadex.org",
        "api.mangadex.org",
        "comick.io",
        "api.comick.io",
        "mangasee123.com",
    }
)

SOURCE_ID_PATTERN = re.compile(r"^[a-zA-Z0-9_-]{1,100}$")


def validate_source_id(source_id: str) -> bool:
    return bool(SOURCE_ID_PATTERN.match(source_id or ""))


def validate_source_url(url: str) -> bool:
    """True if ``url`` is http(s) and its host is on the allow-list."""
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    if parsed.scheme not in ("http", "https"):
        return False
    return (parsed.hostname or "").lower() in ALLOWED_HOSTS
