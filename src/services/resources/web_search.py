"""Web search provider using the Google Custom Search JSON API."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Literal

import httpx

from core.config import get_settings


logger = logging.getLogger(__name__)

GOOGLE_CSE_ENDPOINT = "https://www.googleapis.com/customsearch/v1"
API_KEY_HEADER = "X-Goog-Api-Key"
RESULTS_PER_PAGE = 10


@dataclass(frozen=True)
class WebSearchResult:
    title: str
    url: str
    snippet: str | None


@dataclass(frozen=True)
class WebSearchOutcome:
    status: Literal["ok", "unconfigured", "error"]
    provider: Literal["google_cse", "none"]
    results: list[WebSearchResult]
    message: str | None = None


def _get_credentials() -> tuple[str | None, str | None]:
    settings = get_settings()
    return settings.GOOGLE_CSE_API_KEY, settings.GOOGLE_CSE_ID


def describe_http_error(exc: httpx.HTTPError) -> str:
    """Error type and status only; request URLs can carry credentials."""
    if isinstance(exc, httpx.HTTPStatusError):
        return f"{type(exc).__name__} (status {exc.response.status_code})"
    return type(exc).__name__


async def search_web(query: str, page_index: int = 0) -> WebSearchOutcome:
    """Fetch one page (10 results) of Spanish, safe-search results."""
    api_key, engine_id = _get_credentials()
    if not api_key or not engine_id:
        return WebSearchOutcome(
            status="unconfigured",
            provider="none",
            results=[],
            message="Google Custom Search credentials are not configured.",
        )

    try:
        async with httpx.AsyncClient(timeout=10.0) as client:
            response = await client.get(
                GOOGLE_CSE_ENDPOINT,
                headers={API_KEY_HEADER: api_key},
                params={
                    "cx": engine_id,
                    "q": query,
                    "lr": "lang_es",
                    "num": RESULTS_PER_PAGE,
                    "start": 1 + RESULTS_PER_PAGE * page_index,
                    "safe": "active",
                },
            )
            response.raise_for_status()
            payload = response.json()

        if payload.get("error"):
            raise ValueError(payload["error"].get("message", "search error"))
        results = _parse_cse_results(payload)
        return WebSearchOutcome(status="ok", provider="google_cse", results=results)
    except httpx.HTTPError as exc:
        logger.warning("Custom search request failed: %s", describe_http_error(exc))
    except (KeyError, TypeError, ValueError) as exc:
        logger.warning(
            "Custom search parse failed: %s - %s",
            type(exc).__name__,
            str(exc),
        )

    return WebSearchOutcome(
        status="error",
        provider="google_cse",
        results=[],
        message="Unable to fetch search results right now.",
    )


async def search_pages(query: str, max_pages: int | None = None) -> WebSearchOutcome:
    """Collect up to ``max_pages`` pages, stopping at the first short page."""
    pages = max_pages if max_pages is not None else get_settings().WEB_SEARCH_MAX_PAGES
    collected: list[WebSearchResult] = []
    last: WebSearchOutcome | None = None
    for page_index in range(max(1, pages)):
        last = await search_web(query, page_index)
        if last.status != "ok":
            break
        collected.extend(last.results)
        if len(last.results) < RESULTS_PER_PAGE:
            break

    if collected or last is None:
        return WebSearchOutcome(status="ok", provider="google_cse", results=collected)
    return last


def _parse_cse_results(payload: dict[str, Any]) -> list[WebSearchResult]:
    results: list[WebSearchResult] = []
    for item in payload.get("items") or []:
        url = item.get("link")
        title = item.get("title")
        if not url or not title:
            continue
        results.append(
            WebSearchResult(
                title=str(title),
                url=str(url),
                snippet=item.get("snippet"),
            )
        )
    return results
