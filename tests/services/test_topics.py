"""Tests for the subject taxonomy and identity normalizers."""

import pytest

from services.resources.topics import (
    canonical_subject_name,
    canonical_topics_with_weakness,
    grade_name,
    map_to_canonical_topic,
    normalize_for_match,
    normalize_topic_id,
    normalize_url,
    phase_name,
    subject_topics,
    zero_padded_doc_id,
)


def test_normalize_for_match_strips_accents() -> None:
    assert normalize_for_match("  Matemáticas ") == "matematicas"
    assert normalize_for_match("Biología") == normalize_for_match("biologia")


def test_normalize_topic_id() -> None:
    assert normalize_topic_id("Álgebra y Cálculo") == "álgebra-y-cálculo"
    assert normalize_topic_id("  El tiempo, y las culturas! ") == (
        "el-tiempo-y-las-culturas"
    )
    assert len(normalize_topic_id("x" * 300)) == 100


def test_normalize_url_dedup_key() -> None:
    assert normalize_url("HTTPS://Example.COM/a/b/#top") == "https://example.com/a/b"
    assert normalize_url("https://example.com/a?x=1") == "https://example.com/a?x=1"


def test_zero_padded_doc_id() -> None:
    assert zero_padded_doc_id("link", 1) == "link01"
    assert zero_padded_doc_id("video", 20) == "video20"


@pytest.mark.parametrize(
    ("grade", "expected"),
    [
        (None, "Undécimo"),
        ("6", "Sexto"),
        ("1", "Undécimo"),
        ("decimo", "Décimo"),
        ("Noveno", "Noveno"),
        ("desconocido", "Undécimo"),
    ],
)
def test_grade_name(grade: str | None, expected: str) -> None:
    assert grade_name(grade) == expected


def test_phase_name() -> None:
    assert phase_name("first") == "Fase I"
    assert phase_name("Fase II") == "Fase II"


def test_subject_lookup_ignores_accents() -> None:
    assert canonical_subject_name("matematicas") == "Matemáticas"
    assert canonical_subject_name("Biología") == "Biologia"
    assert canonical_subject_name("Artes") is None
    assert subject_topics("Ingles") == [f"Parte {i}" for i in range(1, 8)]


class TestCanonicalTopics:
    def test_exact_match(self) -> None:
        assert map_to_canonical_topic("Matemáticas", "geometría") == "Geometría"

    def test_containment(self) -> None:
        assert (
            map_to_canonical_topic("Biologia", "Las células eucariotas")
            == "Las células"
        )

    def test_keyword_table(self) -> None:
        assert (
            map_to_canonical_topic("Matemáticas", "Ecuaciones lineales")
            == "Álgebra y Cálculo"
        )

    def test_unknown(self) -> None:
        assert map_to_canonical_topic("Matemáticas", "Poesía") is None
        assert map_to_canonical_topic("Artes", "Color") is None

    def test_with_weakness_dedupes_in_order(self) -> None:
        assert canonical_topics_with_weakness(
            "Matemáticas", ["Estadística descriptiva", "Geometría", "estadistica"]
        ) == ["Estadistica", "Geometría"]
