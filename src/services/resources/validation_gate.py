"""Trust, relevance and liveness checks for candidate web resources."""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Sequence
from typing import Any, TypeVar
from urllib.parse import urlparse

import httpx

from core.config import Settings, get_settings
from services.ai.exceptions import ValidationError
from services.resources.topics import normalize_for_match


logger = logging.getLogger(__name__)

PROBE_USER_AGENT = (
    "Mozilla/5.0 (compatible; SuperateBot/1.0; +https://superate.edu.co)"
)
# Hosts that refuse HEAD often answer these; retry them with GET
HEAD_REJECTED_STATUSES = {403, 405, 501}
MIN_KEYWORD_LENGTH = 3

# Words that appear in almost every educational title; matching on them
# says nothing about the topic
FILLER_WORDS = frozenset(
    {
        "guia",
        "guide",
        "ejemplo",
        "ejemplos",
        "example",
        "examples",
        "claro",
        "clara",
        "clear",
        "paso",
        "pasos",
        "step",
        "explicacion",
        "explicado",
        "tutorial",
        "video",
        "curso",
        "clase",
        "aprende",
        "aprender",
        "facil",
        "basico",
        "basica",
        "introduccion",
        "icfes",
        "saber",
        "educacion",
        "ejercicios",
        "resueltos",
        "para",
        "con",
        "los",
        "las",
        "del",
        "una",
        "como",
        "que",
        "por",
        "the",
        "and",
    }
)

CandidateT = TypeVar("CandidateT")
_WORD = re.compile(r"[a-z0-9ñ]+")


def substantive_terms(keywords: Iterable[str]) -> set[str]:
    """Normalized keyword tokens that are specific enough to signal relevance."""
    terms: set[str] = set()
    for keyword in keywords:
        for token in _WORD.findall(normalize_for_match(keyword)):
            if len(token) >= MIN_KEYWORD_LENGTH and token not in FILLER_WORDS:
                terms.add(token)
    return terms


def content_type_score(text: str, expected_content_types: Iterable[str]) -> int:
    """How many distinct expected content-type phrases appear in ``text``."""
    normalized = normalize_for_match(text)
    phrases = {normalize_for_match(p) for p in expected_content_types if p.strip()}
    return sum(1 for phrase in phrases if phrase in normalized)


def _candidate_text(candidate: Any) -> str:
    if isinstance(candidate, dict):
        title = candidate.get("title") or ""
        snippet = candidate.get("snippet") or candidate.get("description") or ""
    else:
        title = getattr(candidate, "title", "") or ""
        snippet = getattr(candidate, "snippet", None) or getattr(
            candidate, "description", ""
        )
    return f"{title} {snippet or ''}"


class ValidationGate:
    """Decides whether a candidate link is worth caching."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        trusted_domains: Sequence[str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        domains = (
            trusted_domains
            if trusted_domains is not None
            else self.settings.TRUSTED_DOMAINS
        )
        self.trusted_domains = [d.strip().lower() for d in domains if d.strip()]
        self.timeout = self.settings.LINK_PROBE_TIMEOUT_SECONDS
        self._transport = transport

    def is_trusted_domain(self, url: str) -> bool:
        try:
            host = (urlparse(url).hostname or "").lower()
        except ValueError:
            return False
        if not host:
            return False
        return any(
            host == domain or host.endswith("." + domain)
            for domain in self.trusted_domains
        )

    def is_relevant(self, text: str, keywords: Iterable[str]) -> bool:
        terms = substantive_terms(keywords)
        if not terms:
            return False
        words = set(_WORD.findall(normalize_for_match(text)))
        return not terms.isdisjoint(words)

    def rank_by_relevance(
        self,
        candidates: Sequence[CandidateT],
        topic_keywords: Iterable[str],
        expected_content_types: Iterable[str] = (),
    ) -> list[CandidateT]:
        """Drop irrelevant candidates and order the rest by content-type overlap."""
        keywords = list(topic_keywords)
        content_types = list(expected_content_types)
        relevant = [
            c for c in candidates if self.is_relevant(_candidate_text(c), keywords)
        ]
        # sorted() is stable, so ties keep the provider's order
        return sorted(
            relevant,
            key=lambda c: content_type_score(_candidate_text(c), content_types),
            reverse=True,
        )

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout,
            follow_redirects=True,
            headers={"User-Agent": PROBE_USER_AGENT},
            transport=self._transport,
        )

    async def probe(self, url: str) -> bool:
        """Cheap HEAD check, then one bounded GET if the host rejects HEAD."""
        async with self._client() as client:
            try:
                response = await client.head(url)
                if 200 <= response.status_code < 400:
                    return True
                if response.status_code not in HEAD_REJECTED_STATUSES:
                    logger.debug("Link %s answered HEAD %s", url, response.status_code)
                    return False
            except httpx.HTTPError as exc:
                logger.debug("HEAD %s failed: %s", url, type(exc).__name__)

            try:
                response = await client.get(url)
            except httpx.HTTPError as exc:
                logger.debug("GET %s failed: %s", url, type(exc).__name__)
                return False
            return 200 <= response.status_code < 400

    def check_candidate(
        self, url: str, text: str, keywords: Sequence[str] | None
    ) -> None:
        """Raise ValidationError when a candidate fails trust or relevance."""
        if not self.is_trusted_domain(url):
            raise ValidationError(f"untrusted domain: {url}")
        if keywords is not None and not self.is_relevant(text, keywords):
            raise ValidationError(f"no topic keyword in title/snippet: {url}")

    async def validate_link(
        self,
        url: str,
        *,
        title: str = "",
        snippet: str = "",
        keywords: Sequence[str] | None = None,
    ) -> bool:
        """Trust filter first, then relevance, then the liveness probe.

        ``keywords=None`` skips the relevance check (URL-only validation).
        """
        try:
            self.check_candidate(url, f"{title} {snippet}", keywords)
        except ValidationError as exc:
            logger.info("Rejected link: %s", exc.message)
            return False

        if await self.probe(url):
            return True
        logger.info("Rejected link: not reachable: %s", url)
        return False
