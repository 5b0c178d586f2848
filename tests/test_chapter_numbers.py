from __future__ import annotations

import allure
import pytest

from chapter_radar.chapters.numbering import (
    ONESHOT_KEY,
    ChapterKind,
    extract_chapter_number,
    normalize_chapter_number,
)

pytestmark = [
    allure.epic("Chapter Reconciliation"),
    allure.feature("Chapter Number Normalization"),
]


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("10", "10"),
        ("010", "10"),
        ("10.0", "10"),
        ("1105.50", "1105.5"),
        ("Chapter 42", "42"),
        ("ch.7", "7"),
        ("Ep 3", "3"),
        (12, "12"),
        (12.5, "12.5"),
    ],
)
def test_numeric_designators_collapse_to_canonical_decimal(raw: object, expected: str) -> None:
    key = normalize_chapter_number(raw)  # type: ignore[arg-type]

    assert key.kind is ChapterKind.NUMERIC
    assert key.value == expected
    assert key.sort_value == float(expected)


def test_decimal_chapter_never_merges_with_integer_chapter() -> None:
    assert normalize_chapter_number("1105.5") != normalize_chapter_number("1105")
    assert normalize_chapter_number("1105.5").value != normalize_chapter_number("1105").value


def test_special_slug_never_collides_with_numeric_key() -> None:
    special = normalize_chapter_number("Extra 1")

    assert special.kind is ChapterKind.SPECIAL
    assert special.value == "extra-1"
    assert special.sort_value is None
    assert special.value != normalize_chapter_number("1").value


@pytest.mark.parametrize("raw", [None, "", "   "])
def test_missing_number_is_a_oneshot(raw: str | None) -> None:
    key = normalize_chapter_number(raw)

    assert key.kind is ChapterKind.SPECIAL
    assert key.value == ONESHOT_KEY


def test_normalizing_a_key_again_is_stable() -> None:
    for raw in ("0042", "Extra 1", "12.50", None):
        first = normalize_chapter_number(raw)
        assert normalize_chapter_number(first.value) == first


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("One Piece Chapter 1105.5: Title", "1105.5"),
        ("Vol.3 Ch.27 - The Return", "27"),
        ("#15", "15"),
        ("Side Story 2", "side-story-2"),
        ("Special", "special"),
        ("Announcement", None),
        (None, None),
    ],
)
def test_extract_chapter_number_from_free_text(text: str | None, expected: str | None) -> None:
    assert extract_chapter_number(text) == expected
