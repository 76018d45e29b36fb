"""Exam preparation tips: generation with Gemini and random retrieval."""

from __future__ import annotations

import logging
import random
import time
import uuid
from collections.abc import Sequence
from typing import Any

import pydantic

from schemas.tips import TIP_CATEGORIES, Tip, TipsGenerationResult
from services.ai.exceptions import ProtocolError
from services.ai.models import GenerationRequest
from services.ai.prompts import build_tips_prompt
from services.ai.response_extractor import ExtractionFailure, ExtractionSchema, extract
from services.ai.scheduler import RateLimitedScheduler
from services.document_store import DocumentStore, WriteBatch
from services.resources.topics import normalize_for_match


logger = logging.getLogger(__name__)

TIPS_COLLECTION = "TipsIA"
DEFAULT_TIPS_LIMIT = 10
DEFAULT_SUBJECT_TIPS_LIMIT = 5
MAX_TIPS = 20
TIPS_TIMEOUT_SECONDS = 120.0
TIPS_MAX_RETRIES = 2

# Tips are tagged with exam areas, so a subject matches through its area too
SUBJECT_TIP_TERMS = {
    normalize_for_match(subject): terms
    for subject, terms in {
        "Matemáticas": ("Matematicas",),
        "Lenguaje": ("Lectura Critica", "Lenguaje"),
        "Ciencias Sociales": ("Ciencias Sociales",),
        "Biologia": ("Ciencias Naturales", "Biologia"),
        "Quimica": ("Ciencias Naturales", "Quimica"),
        "Física": ("Ciencias Naturales", "Fisica"),
        "Inglés": ("Ingles",),
    }.items()
}

TIPS_SCHEMA = ExtractionSchema(required_fields=("tips",))


def _clamp(value: int, low: int, high: int) -> int:
    return min(max(low, value), high)


def _text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def tip_matches_subject(tip_subject: str, subject: str) -> bool:
    """Accent-insensitive match of a tip's subject, general tips always match."""
    normalized = normalize_for_match(tip_subject)
    if not normalized:
        return False
    if "general" in normalized:
        return True
    terms = SUBJECT_TIP_TERMS.get(normalize_for_match(subject), (subject,))
    return any(normalize_for_match(term) in normalized for term in terms)


def build_tip(item: Any, created_at: int) -> Tip | None:
    """Stored tip from one model item, or ``None`` when a required text is blank."""
    if not isinstance(item, dict):
        return None
    title, description, category = (
        _text(item.get(field)) for field in ("title", "description", "category")
    )
    if not (title and description and category):
        return None
    tags = item.get("tags")
    return Tip(
        title=title,
        description=description,
        subject=_text(item.get("subject")) or "General",
        topic=_text(item.get("topic")) or "General",
        level=_text(item.get("level")) or "Medio",
        category=category,
        example=_text(item.get("example")) or None,
        recommendation=_text(item.get("recommendation")) or None,
        tags=[str(t) for t in tags] if isinstance(tags, list) else ["icfes"],
        created_at=created_at,
    )


def _sample(tips: list[Tip], limit: int) -> list[Tip]:
    if len(tips) <= limit:
        return tips
    return random.sample(tips, limit)


class TipsService:
    def __init__(self, store: DocumentStore, scheduler: RateLimitedScheduler) -> None:
        self.store = store
        self.scheduler = scheduler

    async def _active_tips(self) -> list[Tip]:
        tips = []
        for document in await self.store.list_collection(TIPS_COLLECTION):
            if document.data.get("active") is not True:
                continue
            try:
                tip = Tip.model_validate({**document.data, "id": document.doc_id})
            except pydantic.ValidationError:
                logger.warning("Skipping malformed tip %s", document.path)
                continue
            tips.append(tip)
        return tips

    async def get_random_tips(self, limit: int = DEFAULT_TIPS_LIMIT) -> list[Tip]:
        return _sample(await self._active_tips(), _clamp(limit, 1, MAX_TIPS))

    async def get_tips_by_subject(
        self, subject: str, limit: int = DEFAULT_SUBJECT_TIPS_LIMIT
    ) -> list[Tip]:
        matching = [
            tip
            for tip in await self._active_tips()
            if tip_matches_subject(tip.subject, subject)
        ]
        return _sample(matching, _clamp(limit, 1, MAX_TIPS))

    async def generate_and_save_tips(
        self,
        count: int = DEFAULT_TIPS_LIMIT,
        categories: Sequence[str] | None = None,
        *,
        dry_run: bool = False,
    ) -> TipsGenerationResult:
        count = _clamp(count, 1, MAX_TIPS)
        logger.info("💡 Generating %d tip(s), dry run: %s", count, dry_run)

        generation = await self.scheduler.execute(
            GenerationRequest(
                prompt=build_tips_prompt(count, categories or TIP_CATEGORIES),
                timeout_override=TIPS_TIMEOUT_SECONDS,
                max_retries=TIPS_MAX_RETRIES,
            )
        )
        outcome = extract(generation.text, TIPS_SCHEMA)
        if isinstance(outcome, ExtractionFailure):
            raise outcome.to_error()
        items = outcome.data["tips"]
        if not isinstance(items, list):
            raise ProtocolError(
                "El campo tips no es una lista", raw_text=generation.text
            )

        created_at = int(time.time() * 1000)
        built = [build_tip(item, created_at) for item in items]
        tips = [tip for tip in built if tip is not None]
        skipped = len(items) - len(tips)
        if dry_run:
            return TipsGenerationResult(saved=0, skipped=skipped)

        batch = WriteBatch()
        for tip in tips:
            batch.set(
                f"{TIPS_COLLECTION}/{uuid.uuid4().hex}",
                tip.model_dump(by_alias=True, exclude_none=True),
                merge=False,
            )
        if batch:
            await self.store.commit_batch(batch)
        logger.info("✅ Saved %d tip(s), skipped %d", len(tips), skipped)
        return TipsGenerationResult(saved=len(tips), skipped=skipped)
