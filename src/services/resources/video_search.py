"""Video search provider using the YouTube Data API v3."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, replace
from typing import Any, Literal

import httpx

from core.config import get_settings
from services.resources.web_search import API_KEY_HEADER, describe_http_error


logger = logging.getLogger(__name__)

YOUTUBE_SEARCH_ENDPOINT = "https://www.googleapis.com/youtube/v3/search"
YOUTUBE_VIDEOS_ENDPOINT = "https://www.googleapis.com/youtube/v3/videos"
SEARCH_QUERY_SUFFIX = "educación ICFES"
MAX_RESULTS_PER_CALL = 50
DETAILS_CHUNK_SIZE = 50
DESCRIPTION_LIMIT = 200
DEFAULT_LANGUAGE = "es"

_DURATION = re.compile(r"PT(?:(\d+)H)?(?:(\d+)M)?(?:(\d+)S)?")
_VIDEO_ID = re.compile(r"(?:youtube\.com/watch\?v=|youtu\.be/)([a-zA-Z0-9_-]{11})")


@dataclass(frozen=True)
class VideoResult:
    video_id: str
    title: str
    description: str
    channel_name: str
    iso_duration: str | None = None
    language_code: str = DEFAULT_LANGUAGE

    @property
    def url(self) -> str:
        return f"https://www.youtube.com/watch?v={self.video_id}"

    @property
    def duration(self) -> str | None:
        return parse_iso_duration(self.iso_duration) if self.iso_duration else None

    def to_payload(self) -> dict[str, Any]:
        return {
            "videoId": self.video_id,
            "title": self.title,
            "url": self.url,
            "description": self.description,
            "channelTitle": self.channel_name,
            "duration": self.duration,
            "language": self.language_code,
        }


@dataclass(frozen=True)
class VideoSearchOutcome:
    status: Literal["ok", "unconfigured", "error"]
    results: list[VideoResult]
    message: str | None = None


def parse_iso_duration(duration: str) -> str:
    """``PT1H2M3S`` -> ``1:02:03``; ``PT4M5S`` -> ``4:05``."""
    match = _DURATION.fullmatch(duration or "")
    if not match:
        return "0:00"
    hours, minutes, seconds = (int(g) if g else 0 for g in match.groups())
    if hours:
        return f"{hours}:{minutes:02d}:{seconds:02d}"
    return f"{minutes}:{seconds:02d}"


def extract_video_id(url: str) -> str | None:
    match = _VIDEO_ID.search(url or "")
    return match.group(1) if match else None


def _truncate(text: str, limit: int = DESCRIPTION_LIMIT) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


def _get_api_key() -> str | None:
    settings = get_settings()
    return settings.YOUTUBE_API_KEY


async def search_videos(keywords: list[str], max_results: int) -> VideoSearchOutcome:
    """Search embeddable educational videos and enrich them with details."""
    api_key = _get_api_key()
    if not api_key:
        return VideoSearchOutcome(
            status="unconfigured",
            results=[],
            message="YouTube API key is not configured.",
        )

    query = f"{' '.join(keywords)} {SEARCH_QUERY_SUFFIX}".strip()
    try:
        async with httpx.AsyncClient(timeout=10.0) as client:
            response = await client.get(
                YOUTUBE_SEARCH_ENDPOINT,
                headers={API_KEY_HEADER: api_key},
                params={
                    "part": "snippet",
                    "q": query,
                    "type": "video",
                    "videoEmbeddable": "true",
                    "maxResults": min(max_results, MAX_RESULTS_PER_CALL),
                    "order": "relevance",
                },
            )
            response.raise_for_status()
            results = _parse_search_results(response.json())
            details = await _fetch_details(
                client, api_key, [r.video_id for r in results]
            )

        enriched = [
            replace(
                r,
                iso_duration=details.get(r.video_id, {}).get("duration"),
                language_code=details.get(r.video_id, {}).get(
                    "language", DEFAULT_LANGUAGE
                ),
            )
            for r in results
        ]
        return VideoSearchOutcome(status="ok", results=enriched)
    except httpx.HTTPError as exc:
        logger.warning("YouTube search request failed: %s", describe_http_error(exc))
    except (KeyError, TypeError, ValueError) as exc:
        logger.warning(
            "YouTube search parse failed: %s - %s",
            type(exc).__name__,
            str(exc),
        )

    return VideoSearchOutcome(
        status="error",
        results=[],
        message="Unable to fetch videos right now.",
    )


def _parse_search_results(payload: dict[str, Any]) -> list[VideoResult]:
    results: list[VideoResult] = []
    for item in payload.get("items") or []:
        video_id = (item.get("id") or {}).get("videoId")
        snippet = item.get("snippet") or {}
        title = snippet.get("title")
        if not video_id or not title:
            continue
        results.append(
            VideoResult(
                video_id=str(video_id),
                title=str(title),
                description=_truncate(str(snippet.get("description") or "")),
                channel_name=str(snippet.get("channelTitle") or ""),
            )
        )
    return results


async def _fetch_details(
    client: httpx.AsyncClient, api_key: str, video_ids: list[str]
) -> dict[str, dict[str, str]]:
    """Duration and language per video id; missing videos are simply absent."""
    details: dict[str, dict[str, str]] = {}
    for start in range(0, len(video_ids), DETAILS_CHUNK_SIZE):
        chunk = video_ids[start : start + DETAILS_CHUNK_SIZE]
        response = await client.get(
            YOUTUBE_VIDEOS_ENDPOINT,
            headers={API_KEY_HEADER: api_key},
            params={"part": "contentDetails,snippet", "id": ",".join(chunk)},
        )
        if response.status_code >= 400:
            logger.warning(
                "YouTube details request failed with status %s", response.status_code
            )
            continue
        for item in response.json().get("items") or []:
            snippet = item.get("snippet") or {}
            details[item["id"]] = {
                "duration": (item.get("contentDetails") or {}).get("duration", ""),
                "language": snippet.get("defaultAudioLanguage")
                or snippet.get("defaultLanguage")
                or DEFAULT_LANGUAGE,
            }
    return details
