"""Utility helpers for the mediabridge service."""

from __future__ import annotations

import re
import unicodedata
from datetime import date
from typing import Any

from rapidfuzz import fuzz

YEAR_SUFFIX_RE = re.compile(r"[\(\[\-]\s*\d{4}\s*[\)\]]?")
TRAILING_YEAR_RE = re.compile(r"\s+\d{4}$")
SEASON_MARKER_RES = (
    re.compile(r"\s+\d+(?:st|nd|rd|th)\s+season\b"),
    re.compile(r"\s+season\s+\d+\b"),
    re.compile(r"\s+s\d+\b"),
)
NON_ALPHANUMERIC_RE = re.compile(r"[^a-z0-9\s]")
WHITESPACE_RE = re.compile(r"\s+")


def normalize_title(value: str | None) -> str:
    """Return a comparison key for a title.

    Year suffixes such as ``(2019)`` and season markers such as ``Season 2``
    are dropped, diacritics are folded to ASCII and punctuation removed.
    """

    if not value:
        return ""
    value = value.lower().strip()
    value = YEAR_SUFFIX_RE.sub(" ", value)
    value = TRAILING_YEAR_RE.sub("", value)
    for pattern in SEASON_MARKER_RES:
        value = pattern.sub("", value)
    value = unicodedata.normalize("NFKD", value)
    value = value.encode("ascii", "ignore").decode("ascii")
    value = NON_ALPHANUMERIC_RE.sub(" ", value)
    return WHITESPACE_RE.sub(" ", value).strip()


def title_similarity(first: str | None, second: str | None) -> float:
    """Return a similarity score in ``[0, 1]`` for two titles."""

    left = normalize_title(first)
    right = normalize_title(second)
    if not left or not right:
        return 0.0
    if left == right:
        return 1.0
    # token_set_ratio scores any subset as a perfect match, which would pair
    # "Naruto" with "Naruto Shippuden", so only order-aware ratios are used.
    score = max(fuzz.ratio(left, right), fuzz.token_sort_ratio(left, right))
    return score / 100.0


def extract_year(value: Any) -> int | None:
    """Return the year from a date, ISO string or bare year."""

    if value is None:
        return None
    if isinstance(value, date):
        return value.year
    if isinstance(value, int):
        return value if value > 0 else None
    if not isinstance(value, str) or len(value) < 4:
        return None
    try:
        return int(value[:4])
    except ValueError:
        return None


def parse_date(value: Any) -> date | None:
    """Parse the leading ``YYYY-MM-DD`` portion of a provider date string."""

    if not isinstance(value, str) or len(value) < 10:
        return None
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        return None


def coerce_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
