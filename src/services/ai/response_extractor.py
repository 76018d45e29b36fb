"""Recover structured JSON objects from free-form model output.

Model answers are token-budget constrained, so truncation and small
syntactic drift are routine. ``extract`` runs an ordered cascade of pure
strategies, each one more aggressive than the last, and stops at the first
result that satisfies the caller's ``ExtractionSchema``:

1. ``fence_isolation``     strip Markdown fences, cut first ``{`` .. last ``}``
2. ``structural_balance``  close unterminated strings, brackets and braces
3. ``loose_syntax``        single quotes, trailing commas, cut-off tails
4. ``partial_fields``      regex out the minimally required fields
5. ``json_repair``         general purpose repair of the isolated span

The successful stage is reported back so callers can decide how much to
trust the result. Records synthesized for missing content are flagged with
``synthesized=True`` and never presented as model-authored.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, Literal

from json_repair import repair_json

from services.ai.exceptions import ProtocolError, bounded_excerpt


logger = logging.getLogger(__name__)

FailureKind = Literal[
    "encoded_noise",
    "no_json_structure",
    "malformed_json",
    "missing_required_fields",
]

FENCE_PATTERN = re.compile(r"```(?:json|JSON)?\s*")
ENCODED_PATTERN = re.compile(r"^[A-Za-z0-9+/=]+$")
ENCODED_SAMPLE_SIZE = 100
ENCODED_MIN_LENGTH = 20
SINGLE_QUOTED_KEY = re.compile(r"([{,]\s*)'(\w+)'\s*:")
SINGLE_QUOTED_VALUE = re.compile(r":\s*'([^']*)'")
TRAILING_COMMA = re.compile(r",(\s*[}\]])")

DEFAULT_PLACEHOLDER_TEMPLATE = (
    "La opción {option_id} es incorrecta porque no corresponde a la "
    "respuesta correcta."
)

_CLOSERS = {"{": "}", "[": "]"}


@dataclass(frozen=True, slots=True)
class PlaceholderSpec:
    """Array-of-records field that may be rebuilt from the caller's own data."""

    field: str
    option_ids: tuple[str, ...]
    key: str = "optionId"
    value: str = "explanation"
    template: str = DEFAULT_PLACEHOLDER_TEMPLATE

    def build(self) -> list[dict[str, str]]:
        return [
            {self.key: option_id, self.value: self.template.format(option_id=option_id)}
            for option_id in self.option_ids
        ]

    def valid_records(self, value: Any) -> list[dict[str, Any]]:
        if not isinstance(value, list):
            return []
        return [
            item
            for item in value
            if isinstance(item, dict)
            and isinstance(item.get(self.key), str)
            and isinstance(item.get(self.value), str)
            and item[self.value].strip()
        ]


@dataclass(frozen=True, slots=True)
class PartialFieldSpec:
    """One long free-text field plus one array-of-records field."""

    text_field: str
    record_field: str
    record_key: str = "optionId"
    record_value: str = "explanation"
    defaults: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class ExtractionSchema:
    required_fields: tuple[str, ...] = ()
    defaults: Mapping[str, Any] = field(default_factory=dict)
    placeholder: PlaceholderSpec | None = None
    partial: PartialFieldSpec | None = None

    def apply_defaults(self, data: dict[str, Any]) -> dict[str, Any]:
        for key, value in self.defaults.items():
            if data.get(key) is None:
                data[key] = list(value) if isinstance(value, list) else value
        return data

    def missing_fields(self, data: Mapping[str, Any]) -> list[str]:
        return [f for f in self.required_fields if data.get(f) in (None, "")]


@dataclass(frozen=True, slots=True)
class ExtractionSuccess:
    data: dict[str, Any]
    strategy: str
    synthesized: bool = False

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True, slots=True)
class ExtractionFailure:
    kind: FailureKind
    excerpt: str

    @property
    def ok(self) -> bool:
        return False

    def to_error(self) -> ProtocolError:
        messages = {
            "encoded_noise": "La respuesta parece contenido codificado o truncado",
            "no_json_structure": "No se encontró una estructura JSON en la respuesta",
            "malformed_json": "No se pudo reparar el JSON de la respuesta",
            "missing_required_fields": "La respuesta no contiene los campos requeridos",
        }
        error = ProtocolError(
            f"{messages[self.kind]}. Inicio de la respuesta: {self.excerpt}",
            error_code=self.kind,
        )
        error.excerpt = self.excerpt
        return error


ExtractionOutcome = ExtractionSuccess | ExtractionFailure

# A strategy turns the isolated span (plus the untouched raw text) into a
# candidate object or raises ValueError.
Strategy = Callable[[str, str, ExtractionSchema], dict[str, Any]]


def strip_code_fences(text: str) -> str:
    return FENCE_PATTERN.sub("", text).replace("```", "").strip()


def isolate_json_span(text: str) -> str | None:
    """First ``{`` through last ``}``; to end of text when no ``}`` follows."""
    start = text.find("{")
    if start == -1:
        return None
    end = text.rfind("}")
    if end < start:
        return text[start:]
    return text[start : end + 1]


def looks_encoded(text: str) -> bool:
    sample = text.strip()[:ENCODED_SAMPLE_SIZE]
    return len(sample) >= ENCODED_MIN_LENGTH and bool(ENCODED_PATTERN.match(sample))


def balance_structure(span: str) -> str:
    """Append whatever closers are needed to end every open string/array/object."""
    stack: list[str] = []
    in_string = False
    escaped = False
    for char in span:
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char in _CLOSERS:
            stack.append(_CLOSERS[char])
        elif char in "]}" and stack and stack[-1] == char:
            stack.pop()

    balanced = span
    if in_string:
        balanced += '"'
    if stack:
        balanced = balanced.rstrip().rstrip(",:")
    return balanced + "".join(reversed(stack))


def _loads_object(text: str) -> dict[str, Any]:
    data = json.loads(text)
    if not isinstance(data, dict):
        raise ValueError(f"expected a JSON object, got {type(data).__name__}")
    return data


def parse_direct(span: str, raw_text: str, schema: ExtractionSchema) -> dict[str, Any]:
    return _loads_object(span)


def parse_balanced(
    span: str, raw_text: str, schema: ExtractionSchema
) -> dict[str, Any]:
    return _loads_object(balance_structure(span))


def parse_loose(span: str, raw_text: str, schema: ExtractionSchema) -> dict[str, Any]:
    text = SINGLE_QUOTED_KEY.sub(r'\1"\2":', span)
    text = SINGLE_QUOTED_VALUE.sub(r': "\1"', text)
    text = TRAILING_COMMA.sub(r"\1", text)
    if not text.rstrip().endswith("}"):
        # Cut-off tail: keep everything up to the last complete string value
        last_quote = text.rfind('"')
        if last_quote > 0:
            text = text[: last_quote + 1]
    text = TRAILING_COMMA.sub(r"\1", balance_structure(text))
    return _loads_object(text)


def _unescape(value: str) -> str:
    try:
        return str(json.loads(f'"{value}"'))
    except json.JSONDecodeError:
        return value.replace('\\"', '"').replace("\\n", "\n")


def parse_partial(span: str, raw_text: str, schema: ExtractionSchema) -> dict[str, Any]:
    spec = schema.partial
    if spec is None:
        raise ValueError("no partial field description for this schema")

    text_match = re.search(
        rf'"{re.escape(spec.text_field)}"\s*:\s*"((?:[^"\\]|\\.)*)"', raw_text
    )
    if text_match is None:
        raise ValueError(f"field {spec.text_field!r} not found")

    record_pattern = re.compile(
        rf'\{{\s*"{re.escape(spec.record_key)}"\s*:\s*"([^"]+)"\s*,\s*'
        rf'"{re.escape(spec.record_value)}"\s*:\s*"((?:[^"\\]|\\.)*)"\s*\}}'
    )
    records = [
        {spec.record_key: key, spec.record_value: _unescape(value)}
        for key, value in record_pattern.findall(raw_text)
    ]

    data: dict[str, Any] = dict(spec.defaults)
    data[spec.text_field] = _unescape(text_match.group(1))
    data[spec.record_field] = records
    return data


def parse_repaired(
    span: str, raw_text: str, schema: ExtractionSchema
) -> dict[str, Any]:
    repaired = repair_json(span, return_objects=True)
    if not isinstance(repaired, dict) or not repaired:
        raise ValueError("json_repair could not recover an object")
    return repaired


STRATEGIES: tuple[tuple[str, Strategy], ...] = (
    ("fence_isolation", parse_direct),
    ("structural_balance", parse_balanced),
    ("loose_syntax", parse_loose),
    ("partial_fields", parse_partial),
    ("json_repair", parse_repaired),
)


def _fill_placeholders(data: dict[str, Any], spec: PlaceholderSpec) -> bool:
    """Replace an empty or malformed record array. Returns True if synthesized."""
    current = data.get(spec.field)
    valid = spec.valid_records(current)
    if valid:
        if isinstance(current, list) and len(valid) != len(current):
            data[spec.field] = valid
        return False
    if not spec.option_ids:
        return False
    data[spec.field] = spec.build()
    return True


def extract(
    raw_text: str, schema: ExtractionSchema | None = None
) -> ExtractionOutcome:
    """Run the extraction cascade over ``raw_text``."""
    schema = schema or ExtractionSchema()
    cleaned = strip_code_fences(raw_text or "")
    span = isolate_json_span(cleaned)
    if span is None:
        kind: FailureKind = (
            "encoded_noise" if looks_encoded(cleaned) else "no_json_structure"
        )
        logger.warning("No JSON object in model response (%s)", kind)
        return ExtractionFailure(kind=kind, excerpt=bounded_excerpt(raw_text or ""))

    last_kind: FailureKind = "malformed_json"
    for name, strategy in STRATEGIES:
        try:
            data = strategy(span, raw_text, schema)
        except (ValueError, TypeError, RecursionError) as exc:
            logger.debug("Extraction stage %s failed: %s", name, exc)
            continue

        synthesized = False
        if schema.placeholder is not None:
            synthesized = _fill_placeholders(data, schema.placeholder)
        schema.apply_defaults(data)
        missing = schema.missing_fields(data)
        if missing:
            logger.debug("Extraction stage %s missing fields: %s", name, missing)
            last_kind = "missing_required_fields"
            continue

        if name != "fence_isolation":
            logger.info(
                "Recovered model response with %s%s",
                name,
                " (synthesized placeholders)" if synthesized else "",
            )
        return ExtractionSuccess(data=data, strategy=name, synthesized=synthesized)

    logger.warning("Extraction cascade exhausted (%s)", last_kind)
    return ExtractionFailure(kind=last_kind, excerpt=bounded_excerpt(raw_text))
