"""Title normalization used for matching and lock keys."""

import re
import unicodedata

_WHITESPACE = re.compile(r"\s+")


def normalize_title(title: str) -> str:
    """NFKC-fold, case-fold and collapse whitespace.

    >>> normalize_title("  One　PIECE ")
    'one piece'
    """
    folded = unicodedata.normalize("NFKC", title or "").casefold()
    return _WHITESPACE.sub(" ", folded).strip()
