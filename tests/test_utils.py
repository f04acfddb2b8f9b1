"""Tests for title normalisation and similarity helpers."""

from __future__ import annotations

from datetime import date

import pytest

from app.utils import coerce_int, extract_year, normalize_title, parse_date, title_similarity


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("Attack on Titan (2013)", "attack on titan"),
        ("Attack on Titan Season 2", "attack on titan"),
        ("Mob Psycho 100 2nd Season", "mob psycho 100"),
        ("Pokémon: The Series", "pokemon the series"),
        ("Re:Zero - Starting Life", "re zero starting life"),
        (None, ""),
    ],
)
def test_normalize_title(raw: str | None, expected: str) -> None:
    assert normalize_title(raw) == expected


def test_similarity_is_exact_for_equivalent_titles() -> None:
    assert title_similarity("Fullmetal Alchemist", "FULLMETAL ALCHEMIST!") == 1.0


def test_similarity_ignores_word_order() -> None:
    assert title_similarity("Alchemist Fullmetal", "Fullmetal Alchemist") == 1.0


def test_subset_titles_are_not_perfect_matches() -> None:
    """A franchise sequel must not score like the original title."""

    score = title_similarity("Naruto", "Naruto Shippuden")

    assert 0.0 < score < 0.8


def test_similarity_handles_missing_values() -> None:
    assert title_similarity("", "Bleach") == 0.0
    assert title_similarity(None, None) == 0.0


def test_extract_year_variants() -> None:
    assert extract_year(date(2002, 10, 3)) == 2002
    assert extract_year("2007-02-15") == 2007
    assert extract_year(1999) == 1999
    assert extract_year("n/a") is None
    assert extract_year(None) is None


def test_parse_date_uses_leading_iso_portion() -> None:
    assert parse_date("2019-04-06T00:00:00+00:00") == date(2019, 4, 6)
    assert parse_date("2019") is None
    assert parse_date(None) is None


def test_coerce_int_rejects_booleans_and_garbage() -> None:
    assert coerce_int("12") == 12
    assert coerce_int(True) is None
    assert coerce_int("twelve") is None
