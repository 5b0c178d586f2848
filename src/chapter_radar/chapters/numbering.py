"""Chapter number normalization into canonical reconciliation keys."""

from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from enum import Enum

ONESHOT_KEY = "oneshot"

_PREFIXED_NUMBER_RE = re.compile(
    r"^(?:chapter|chap|ch|episode|ep)?[\s.:_#-]*(\d+(?:\.\d+)?)$",
    re.IGNORECASE,
)
_EMBEDDED_NUMBER_RE = re.compile(
    r"(?:chapter|chap|ch|episode|ep)\.?\s*#?\s*(\d+(?:\.\d+)?)",
    re.IGNORECASE,
)
_BARE_NUMBER_RE = re.compile(r"^\s*#?\s*(\d+(?:\.\d+)?)\s*$")
_SPECIAL_RE = re.compile(
    r"\b(extra|special|side[\s-]?story|omake|bonus|one[\s-]?shot|prologue|epilogue)\b"
    r"(?:\s*#?\s*(\d+(?:\.\d+)?))?",
    re.IGNORECASE,
)
_WHITESPACE_RE = re.compile(r"\s+")


class ChapterKind(str, Enum):
    NUMERIC = "numeric"
    SPECIAL = "special"


@dataclass(slots=True, frozen=True)
class ChapterKey:
    """Canonical identity of a chapter number within one series."""

    kind: ChapterKind
    value: str
    sort_value: float | None = None


def normalize_chapter_number(raw: str | float | None) -> ChapterKey:
    """Normalize a reported chapter number.

    Numeric designators become canonical decimal strings (``"010"`` -> ``"10"``,
    ``"1105.50"`` -> ``"1105.5"``); ``"1105.5"`` and ``"1105"`` stay distinct.
    Anything else is a special slug (``"Extra 1"`` -> ``"extra-1"``). Special
    slugs always contain a non-digit character, so they can never collide with
    a numeric key.
    """

    if raw is None:
        return ChapterKey(kind=ChapterKind.SPECIAL, value=ONESHOT_KEY)
    text = unicodedata.normalize("NFKC", str(raw)).strip()
    if not text:
        return ChapterKey(kind=ChapterKind.SPECIAL, value=ONESHOT_KEY)

    match = _PREFIXED_NUMBER_RE.match(text)
    if match is not None:
        canonical = _canonical_decimal(match.group(1))
        if canonical is not None:
            return ChapterKey(
                kind=ChapterKind.NUMERIC,
                value=canonical,
                sort_value=float(canonical),
            )

    slug = _WHITESPACE_RE.sub("-", text.lower())
    return ChapterKey(kind=ChapterKind.SPECIAL, value=slug)


def extract_chapter_number(text: str | None) -> str | None:
    """Pull a chapter designator out of free text such as a link label or feed title."""

    if not text:
        return None
    cleaned = unicodedata.normalize("NFKC", text).strip()
    match = _EMBEDDED_NUMBER_RE.search(cleaned)
    if match is not None:
        return match.group(1)
    match = _BARE_NUMBER_RE.match(cleaned)
    if match is not None:
        return match.group(1)
    match = _SPECIAL_RE.search(cleaned)
    if match is not None:
        label = _WHITESPACE_RE.sub("-", match.group(1).lower())
        if match.group(2):
            return f"{label}-{match.group(2)}"
        return label
    return None


def _canonical_decimal(value: str) -> str | None:
    try:
        number = Decimal(value)
        if number == number.to_integral_value():
            return str(number.quantize(Decimal(1)))
        return format(number.normalize(), "f")
    except InvalidOperation:
        return None
