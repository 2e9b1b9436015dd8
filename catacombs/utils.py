"""Utility helpers for the catalog service."""

from __future__ import annotations

import math
import re
import unicodedata
from typing import Any

_WHITESPACE_RE = re.compile(r"\s+")
_QUOTES_RE = re.compile(r"['\"’]")
_PUNCTUATION_RE = re.compile(r"[:;,.!?¿¡()/\\\[\]\-–—]")
_YEAR_RE = re.compile(r"(18|19|20|21)\d{2}")


def strip_accents(value: str) -> str:
    """Decompose accented characters and drop the combining marks."""

    decomposed = unicodedata.normalize("NFD", value)
    return "".join(char for char in decomposed if not unicodedata.combining(char))


def normalize_lookup(value: str | None) -> str:
    """Lowercase and collapse whitespace; used for cache keys and names."""

    if not value:
        return ""
    return _WHITESPACE_RE.sub(" ", value).strip().lower()


def normalize_title(raw: str | None) -> str | None:
    """Return an accent- and punctuation-insensitive form of a title."""

    if not raw:
        return None
    cleaned = strip_accents(raw).lower()
    cleaned = _QUOTES_RE.sub("", cleaned)
    cleaned = _PUNCTUATION_RE.sub(" ", cleaned)
    cleaned = _WHITESPACE_RE.sub(" ", cleaned).strip()
    return cleaned or None


def normalize_header(value: str) -> str:
    """Canonical form for spreadsheet column headers."""

    return normalize_lookup(strip_accents(value))


def safe_number(value: Any) -> float | None:
    """Parse a number, returning ``None`` for blank or non-finite input."""

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        text = str(value).strip().replace(",", ".")
        if not text:
            return None
        try:
            number = float(text)
        except ValueError:
            return None
    if not math.isfinite(number):
        return None
    return number


def safe_int(value: Any) -> int | None:
    number = safe_number(value)
    if number is None or not number.is_integer():
        return None
    return int(number)


def parse_year(value: Any) -> int | None:
    """Extract a year from ``YYYY-MM-DD`` dates, OMDb ranges or plain values."""

    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if not value:
        return None
    text = str(value).strip()
    head = text.split("-")[0].split("–")[0].strip()
    if head.isdigit() and len(head) == 4:
        return int(head)
    match = _YEAR_RE.search(text)
    if not match:
        return None
    return int(match.group(0))
