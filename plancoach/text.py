import re
import unicodedata
from typing import Optional


def normalize(text: Optional[str]) -> str:
    """Lowercase, strip diacritics, fold curly apostrophes and collapse whitespace."""
    if not text:
        return ""
    value = text.replace("’", "'").replace("‘", "'").lower()
    value = unicodedata.normalize("NFKD", value)
    value = "".join(ch for ch in value if not unicodedata.combining(ch))
    return re.sub(r"\s+", " ", value).strip()


def normalize_title(title: Optional[str]) -> str:
    """Key used for case-insensitive title comparisons (duplicates, lookups)."""
    return re.sub(r"\s+", " ", (title or "").strip()).casefold()


def contains_phrase(haystack: str, needle: str) -> bool:
    """Word-boundary containment on already-normalized text."""
    if not needle:
        return False
    return re.search(r"(?<!\w)" + re.escape(needle) + r"(?!\w)", haystack) is not None


def truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[: max(0, limit - 1)].rstrip() + "…"
