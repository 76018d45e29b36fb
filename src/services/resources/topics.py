"""Subject/topic taxonomy and the normalizers used for cache identities."""

from __future__ import annotations

import re
import unicodedata
from urllib.parse import urlsplit, urlunsplit


TOPIC_ID_MAX_LENGTH = 100
_TOPIC_ID_INVALID = re.compile(r"[^a-z0-9áéíóúñü]+")

SUBJECT_TOPICS: dict[str, list[str]] = {
    "Matemáticas": ["Álgebra y Cálculo", "Geometría", "Estadistica"],
    "Lenguaje": ["Textos literarios", "Textos informativos", "Textos filosoficos"],
    "Ciencias Sociales": [
        "El espacio, el territorio, el ambiente y la población",
        "El poder, la economia y las organicaciones sociales",
        "El tiempo y las culturas",
        "Competencias ciudadanas",
    ],
    "Biologia": ["Las células", "Los organismos", "Los ecosistemas"],
    "Quimica": [
        "Aspectos analíticos de sustancias",
        "Aspecto físico-químicos de sustancias",
        "Aspectos analíticos de mezclas",
        "Aspectos físico-químicos de mezclas",
    ],
    "Física": [
        "Mecanica clasica",
        "termodinamica",
        "Eventos ondulatorios",
        "Eventos electromagneticos",
    ],
    "Inglés": [f"Parte {i}" for i in range(1, 8)],
}

# Granular keyword -> canonical topic, for subjects whose topic names rarely
# appear verbatim in generated content
TOPIC_KEYWORDS: dict[str, dict[str, str]] = {
    "Matemáticas": {
        "algebra": "Álgebra y Cálculo",
        "calculo": "Álgebra y Cálculo",
        "ecuaciones": "Álgebra y Cálculo",
        "geometria": "Geometría",
        "estadistica": "Estadistica",
    },
    "Lenguaje": {
        "literario": "Textos literarios",
        "informativo": "Textos informativos",
        "filosofico": "Textos filosoficos",
    },
}

GRADE_CODE_TO_NAME = {
    "6": "Sexto",
    "7": "Séptimo",
    "8": "Octavo",
    "9": "Noveno",
    "10": "Décimo",
    "11": "Undécimo",
    "0": "Décimo",
    "1": "Undécimo",
}
DEFAULT_GRADE_NAME = "Undécimo"

PHASE_NAMES = {"first": "Fase I", "second": "Fase II", "third": "Fase III"}


def normalize_for_match(text: str) -> str:
    """Lower-case, trim and strip diacritics (NFD + drop combining marks)."""
    decomposed = unicodedata.normalize("NFD", text.strip().lower())
    return "".join(c for c in decomposed if not unicodedata.combining(c))


def normalize_topic_id(topic: str) -> str:
    """Stable document id segment for a topic name."""
    slug = _TOPIC_ID_INVALID.sub("-", topic.strip().lower()).strip("-")
    return slug[:TOPIC_ID_MAX_LENGTH]


def normalize_url(url: str) -> str:
    """Dedup key for a URL: lower-case scheme/host, no fragment or trailing slash."""
    parts = urlsplit(url.strip())
    path = parts.path.rstrip("/")
    return urlunsplit(
        (parts.scheme.lower(), parts.netloc.lower(), path, parts.query, "")
    )


def zero_padded_doc_id(prefix: str, order: int) -> str:
    return f"{prefix}{order:02d}"


def phase_name(phase: str) -> str:
    return PHASE_NAMES.get(phase, phase)


def grade_name(grade: str | None) -> str:
    """Grade name used in resource paths; accepts a code or a name."""
    if not grade:
        return DEFAULT_GRADE_NAME
    g = grade.strip()
    if g in GRADE_CODE_TO_NAME.values():
        return g
    if g in GRADE_CODE_TO_NAME:
        return GRADE_CODE_TO_NAME[g]
    by_name = {normalize_for_match(n): n for n in GRADE_CODE_TO_NAME.values()}
    return by_name.get(normalize_for_match(g), DEFAULT_GRADE_NAME)


def subject_topics(subject: str) -> list[str] | None:
    target = normalize_for_match(subject)
    for name, topics in SUBJECT_TOPICS.items():
        if normalize_for_match(name) == target:
            return topics
    return None


def canonical_subject_name(subject: str) -> str | None:
    target = normalize_for_match(subject)
    for name in SUBJECT_TOPICS:
        if normalize_for_match(name) == target:
            return name
    return None


def map_to_canonical_topic(subject: str, granular_topic: str) -> str | None:
    """Map a granular topic name onto the subject's fixed topic list.

    Exact match first, then containment either way, then the keyword table.
    """
    subject_name = canonical_subject_name(subject)
    if subject_name is None:
        return None
    topics = SUBJECT_TOPICS[subject_name]
    granular = normalize_for_match(granular_topic)
    if not granular:
        return None

    for topic in topics:
        if normalize_for_match(topic) == granular:
            return topic

    for topic in topics:
        canonical = normalize_for_match(topic)
        if canonical in granular or granular in canonical:
            return topic

    for keyword, topic in TOPIC_KEYWORDS.get(subject_name, {}).items():
        if keyword in granular:
            return topic
    return None


def canonical_topics_with_weakness(subject: str, weak_topics: list[str]) -> list[str]:
    """Canonical topics for a list of weak granular topics, deduplicated in order."""
    seen: set[str] = set()
    result: list[str] = []
    for weak in weak_topics:
        canonical = map_to_canonical_topic(subject, weak)
        if canonical and canonical not in seen:
            seen.add(canonical)
            result.append(canonical)
    return result
