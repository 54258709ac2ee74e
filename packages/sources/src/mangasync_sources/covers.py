"""Cover image URL checks.

Only covers served from known image hosts are stored; MangaDex placeholder
artwork is recognized so that it never replaces a real cover.
"""

from typing import Optional
from urllib.parse import urlparse

IMAGE_WHITELIST = (
    "cdn.mangadex.org",
    "uploads.mangadex.org",
    "mangadex.org",
    "cdn.mangaupdates.com",
    "www.mangaupdates.com",
    "cdn.myanimelist.net",
    "s4.anilist.co",
    "img.anili.st",
    "media.kitsu.io",
    "i.imgur.com",
    "imgur.com",
    "webtoon-phinf.pstatic.net",
    "swebtoon-phinf.pstatic.net",
    "us-a.tapas.io",
    "meo.comick.pictures",
    "meo3.comick.pictures",
    "cover.mangasee123.com",
)

_PLACEHOLDER_MARKERS = (
    "/img/avatar",
    "placeholder",
    "no-cover",
    "nocover",
    "cover-missing",
    "default-cover",
)


def is_whitelisted_domain(url: str) -> bool:
    """True if the URL host is a whitelisted domain or one of its subdomains."""
    try:
        hostname = (urlparse(url).hostname or "").lower()
    except ValueError:
        return False
    if not hostname:
        return False
    return any(hostname == d or hostname.endswith(f".{d}") for d in IMAGE_WHITELIST)


def is_valid_cover_url(url: Optional[str]) -> bool:
    if not url:
        return False
    try:
        scheme = urlparse(url).scheme
    except ValueError:
        return False
    return scheme in ("http", "https") and is_whitelisted_domain(url)


def is_placeholder_cover(url: Optional[str]) -> bool:
    if not url:
        return False
    lowered = url.lower()
    return any(marker in lowered for marker in _PLACEHOLDER_MARKERS)


def choose_cover(
    existing: Optional[str],
    incoming: Optional[str],
    *,
    incoming_is_primary: bool,
) -> Optional[str]:
    """Pick the cover to store when merging a source's metadata into a series.

    - Primary source: a real incoming cover wins, then a real existing one,
      then any valid incoming cover.
    - Other sources: a valid incoming cover only fills a missing or invalid
      cover, or replaces a placeholder with a real image.
    """
    valid_incoming = incoming if is_valid_cover_url(incoming) else None
    incoming_real = valid_incoming is not None and not is_placeholder_cover(valid_incoming)
    existing_valid = is_valid_cover_url(existing)
    existing_real = existing_valid and not is_placeholder_cover(existing)

    if incoming_is_primary:
        if incoming_real:
            return valid_incoming
        if existing_real:
            return existing
        if valid_incoming:
            return valid_incoming
        return existing

    if valid_incoming and not existing_valid:
        return valid_incoming
    if incoming_real and is_placeholder_cover(existing):
        return valid_incoming
    return existing
