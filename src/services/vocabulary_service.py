"""Academic vocabulary bank: cached definitions and usage examples per subject.

Words live under ``definitionswords/{subject}/palabras/{word}``. A lookup
that misses the bank generates the definition with Gemini, adds a best-effort
usage example and stores both, so later lookups never reach the model.
"""

from __future__ import annotations

import asyncio
import logging
import random
import re
from collections.abc import Awaitable, Callable, Sequence
from datetime import UTC, datetime

import pydantic

from core.config import Settings, get_settings
from schemas.vocabulary import VocabularyBatchResult, WordDefinition, WordResult
from services.ai.exceptions import (
    ClientConnectionError,
    ClientNotConnectedError,
    FatalError,
    PipelineError,
)
from services.ai.models import GenerationRequest
from services.ai.prompts import build_definition_prompt, build_word_example_prompt
from services.ai.response_extractor import ExtractionSchema, ExtractionSuccess, extract
from services.ai.scheduler import RateLimitedScheduler
from services.document_store import DocumentStore
from services.resources.topics import canonical_subject_name, normalize_for_match


logger = logging.getLogger(__name__)

VOCABULARY_ROOT = "definitionswords"
WORDS_COLLECTION = "palabras"
GENERATION_TIMEOUT_SECONDS = 30.0
EXAMPLE_BATCH_SIZE = 10
EXAMPLE_BATCH_DELAY_SECONDS = 2.0
EXAMPLE_WORD_DELAY_SECONDS = 0.5

UNRECOVERABLE_ERRORS = (FatalError, ClientNotConnectedError, ClientConnectionError)

# Keyed by accent-free lower-case name
SUBJECT_SLUGS = {
    "matematicas": "matematicas",
    "lectura critica": "lectura_critica",
    "ciencias naturales": "ciencias_naturales",
    "fisica": "fisica",
    "biologia": "biologia",
    "quimica": "quimica",
    "ingles": "ingles",
    "sociales y ciudadanas": "sociales_ciudadanas",
    "sociales ciudadanas": "sociales_ciudadanas",
    "ciencias sociales": "sociales_ciudadanas",
}

EXAMPLE_SCHEMA = ExtractionSchema(required_fields=("ejemplo",))

_INTERROGATIVE = re.compile(
    r"\b(?:qué|cuál|cuáles|cómo|dónde|cuándo|quién|quiénes|cuánt[oa]s?)\b",
    re.IGNORECASE,
)
_WORD_ID_INVALID = re.compile(r"[^a-z0-9_]")


def subject_slug(subject: str) -> str:
    key = normalize_for_match(subject).replace("_", " ")
    return SUBJECT_SLUGS.get(key) or re.sub(r"\s+", "_", subject.strip().lower())


def normalize_word(word: str) -> str:
    normalized = word.strip().lower()
    if not normalized:
        raise ValueError("Word must not be empty")
    return normalized


def word_id(word: str) -> str:
    """Document id for a word: accent-free, spaces as ``_``, nothing else."""
    slug = _WORD_ID_INVALID.sub("", re.sub(r"\s+", "_", normalize_for_match(word)))
    if not slug:
        raise ValueError(f"Word {word!r} has no usable characters for an id")
    return slug


def is_question(text: str) -> bool:
    if not text.strip():
        return False
    return "?" in text or "¿" in text or _INTERROGATIVE.search(text) is not None


def parse_word_example(text: str) -> tuple[str, str | None]:
    """Usage example and, only when the example asks something, its answer."""
    text = text.strip()
    outcome = extract(text, EXAMPLE_SCHEMA)
    if not isinstance(outcome, ExtractionSuccess) or not isinstance(
        outcome.data["ejemplo"], str
    ):
        logger.warning("Example response is not the expected JSON, keeping it as is")
        return text, None

    example = outcome.data["ejemplo"].strip()
    answer = outcome.data.get("respuesta")
    if not isinstance(answer, str) or not answer.strip():
        return example, None
    if not is_question(example):
        logger.warning("Dropping the answer of an example that asks nothing")
        return example, None
    return example, answer.strip()


class VocabularyService:
    def __init__(
        self,
        store: DocumentStore,
        scheduler: RateLimitedScheduler,
        settings: Settings | None = None,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self.scheduler = scheduler
        self.settings = settings or get_settings()
        self._sleep = sleep

    @staticmethod
    def words_path(subject: str) -> str:
        return f"{VOCABULARY_ROOT}/{subject_slug(subject)}/{WORDS_COLLECTION}"

    async def _active_words(self, subject: str) -> list[WordDefinition]:
        words = []
        for document in await self.store.list_collection(self.words_path(subject)):
            if document.data.get("activa") is not True:
                continue
            try:
                words.append(
                    WordDefinition.model_validate(
                        {**document.data, "id": document.doc_id}
                    )
                )
            except pydantic.ValidationError:
                logger.warning("Skipping malformed vocabulary entry %s", document.path)
        return words

    async def count_active_words(self, subject: str) -> int:
        return len(await self._active_words(subject))

    async def get_words(
        self, subject: str, limit: int = 10, exclude_ids: Sequence[str] = ()
    ) -> list[WordDefinition]:
        """Random sample of active words, skipping ``exclude_ids``."""
        excluded = set(exclude_ids)
        words = [w for w in await self._active_words(subject) if w.id not in excluded]
        random.shuffle(words)
        return words[:limit]

    async def get_word_definition(
        self, subject: str, word: str
    ) -> WordDefinition | None:
        target = normalize_word(word)
        for entry in await self._active_words(subject):
            if entry.palabra == target:
                return entry
        logger.info("No stored definition for %r in %s", target, subject)
        return await self.generate_and_save_definition(subject, word)

    async def _generate(self, prompt: str) -> str:
        generation = await self.scheduler.execute(
            GenerationRequest(
                prompt=prompt,
                timeout_override=GENERATION_TIMEOUT_SECONDS,
                max_retries=self.settings.GENERATION_MAX_RETRIES,
            )
        )
        return generation.text

    async def generate_and_save_definition(
        self, subject: str, word: str
    ) -> WordDefinition | None:
        """Generate, store and return a definition; ``None`` when generation fails.

        Permission and connection errors are raised, since every later word
        would fail the same way.
        """
        doc_id = word_id(word)
        subject_name = canonical_subject_name(subject) or subject
        try:
            definition = await self._generate(
                build_definition_prompt(word, subject_name)
            )
        except UNRECOVERABLE_ERRORS:
            raise
        except PipelineError as exc:
            logger.error(
                "Definition for %r failed (%s): %s", word, exc.error_code, exc.message
            )
            return None

        example: str | None = None
        answer: str | None = None
        try:
            example, answer = parse_word_example(
                await self._generate(build_word_example_prompt(word, subject_name))
            )
        except UNRECOVERABLE_ERRORS:
            raise
        except PipelineError as exc:
            logger.warning("No usage example for %r: %s", word, exc.message)

        entry = WordDefinition(
            palabra=normalize_word(word),
            definicion=definition.strip(),
            materia=subject_slug(subject),
            fecha_creacion=datetime.now(UTC),
            ejemplo_icfes=example,
            respuesta_ejemplo_icfes=answer,
        )
        await self.store.set(
            f"{self.words_path(subject)}/{doc_id}",
            entry.model_dump(mode="json", by_alias=True, exclude_none=True),
            merge=False,
        )
        logger.info("✅ Definition saved for %r in %s", entry.palabra, entry.materia)
        return entry.model_copy(update={"id": doc_id})

    async def generate_batch(
        self, subject: str, words: Sequence[str]
    ) -> VocabularyBatchResult:
        """Make sure every word has a definition; stored words cost no model call."""
        result = VocabularyBatchResult()
        for word in words:
            try:
                entry = await self.get_word_definition(subject, word)
            except (PipelineError, ValueError) as exc:
                error = exc.message if isinstance(exc, PipelineError) else str(exc)
                logger.error("Vocabulary word %r failed: %s", word, error)
                entry = None
            else:
                error = "No se pudo generar"

            if entry is None:
                result.failed += 1
                result.results.append(
                    WordResult(palabra=word, success=False, error=error)
                )
            else:
                result.success += 1
                result.results.append(WordResult(palabra=word, success=True))
        logger.info(
            "Vocabulary batch for %s: %d ok, %d failed",
            subject,
            result.success,
            result.failed,
        )
        return result

    async def generate_examples_for_existing_words(
        self,
        subject: str,
        *,
        limit: int | None = None,
        batch_size: int = EXAMPLE_BATCH_SIZE,
        delay_between_batches: float = EXAMPLE_BATCH_DELAY_SECONDS,
    ) -> VocabularyBatchResult:
        """Add a usage example to stored words that still lack one."""
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")

        pending = [
            w
            for w in await self._active_words(subject)
            if not (w.ejemplo_icfes or "").strip()
        ]
        selected = pending if limit is None else pending[:limit]
        result = VocabularyBatchResult(skipped=len(pending) - len(selected))
        logger.info(
            "📝 Generating examples for %d word(s) in %s", len(selected), subject
        )

        batches = [
            selected[i : i + batch_size] for i in range(0, len(selected), batch_size)
        ]
        for number, batch in enumerate(batches, 1):
            logger.info(
                "Example batch %d/%d (%d words)", number, len(batches), len(batch)
            )
            for index, word in enumerate(batch):
                await self._add_example(subject, word, result)
                if index < len(batch) - 1:
                    await self._sleep(EXAMPLE_WORD_DELAY_SECONDS)
            if number < len(batches):
                await self._sleep(delay_between_batches)
        return result

    async def _add_example(
        self, subject: str, word: WordDefinition, result: VocabularyBatchResult
    ) -> None:
        subject_name = canonical_subject_name(subject) or subject
        try:
            text = await self._generate(
                build_word_example_prompt(word.palabra, subject_name)
            )
        except PipelineError as exc:
            logger.error("Example for %r failed: %s", word.palabra, exc.message)
            result.failed += 1
            result.results.append(
                WordResult(palabra=word.palabra, success=False, error=exc.message)
            )
            return

        example, answer = parse_word_example(text)
        update = {"ejemploIcfes": example}
        if answer:
            update["respuestaEjemploIcfes"] = answer
        await self.store.set(f"{self.words_path(subject)}/{word.id}", update)
        result.success += 1
        result.results.append(WordResult(palabra=word.palabra, success=True))
