"""Unit tests for the YouTube video search provider."""

from __future__ import annotations

import logging
from unittest.mock import MagicMock, patch

import httpx
import pytest

from services.resources.video_search import (
    VideoResult,
    _parse_search_results,
    extract_video_id,
    parse_iso_duration,
    search_videos,
)


def _response(payload: dict, status_code: int = 200) -> MagicMock:
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = payload
    response.raise_for_status = MagicMock()
    return response


SEARCH_PAYLOAD = {
    "items": [
        {
            "id": {"videoId": "abcdefghijk"},
            "snippet": {
                "title": "Teorema de Pitágoras",
                "description": "x" * 300,
                "channelTitle": "Profe Alex",
            },
        },
        {"id": {"videoId": "zzzzzzzzzzz"}, "snippet": {}},
        {"id": {}, "snippet": {"title": "Sin id"}},
    ]
}


class TestParsing:
    def test_parse_iso_duration(self) -> None:
        assert parse_iso_duration("PT1H2M3S") == "1:02:03"
        assert parse_iso_duration("PT4M5S") == "4:05"
        assert parse_iso_duration("PT45S") == "0:45"
        assert parse_iso_duration("garbage") == "0:00"

    def test_extract_video_id(self) -> None:
        assert extract_video_id("https://www.youtube.com/watch?v=abcdefghijk") == (
            "abcdefghijk"
        )
        assert extract_video_id("https://youtu.be/abcdefghijk?t=3") == "abcdefghijk"
        assert extract_video_id("https://vimeo.com/1") is None

    def test_parse_skips_items_without_id_or_title(self) -> None:
        results = _parse_search_results(SEARCH_PAYLOAD)
        assert [r.video_id for r in results] == ["abcdefghijk"]
        assert results[0].description.endswith("...")
        assert len(results[0].description) == 203

    def test_payload_shape(self) -> None:
        video = VideoResult(
            video_id="abcdefghijk",
            title="t",
            description="d",
            channel_name="c",
            iso_duration="PT10M",
        )
        assert video.to_payload() == {
            "videoId": "abcdefghijk",
            "title": "t",
            "url": "https://www.youtube.com/watch?v=abcdefghijk",
            "description": "d",
            "channelTitle": "c",
            "duration": "10:00",
            "language": "es",
        }


class TestSearchVideos:
    @pytest.mark.asyncio
    async def test_unconfigured_returns_status(self) -> None:
        with patch("services.resources.video_search._get_api_key", return_value=None):
            outcome = await search_videos(["geometría"], 5)

        assert outcome.status == "unconfigured"
        assert outcome.results == []

    @pytest.mark.asyncio
    async def test_results_are_enriched_with_details(self) -> None:
        details = _response(
            {
                "items": [
                    {
                        "id": "abcdefghijk",
                        "contentDetails": {"duration": "PT12M30S"},
                        "snippet": {"defaultAudioLanguage": "es-419"},
                    }
                ]
            }
        )
        with (
            patch("services.resources.video_search._get_api_key", return_value="k"),
            patch("httpx.AsyncClient") as mock_client,
        ):
            get = mock_client.return_value.__aenter__.return_value.get
            get.side_effect = [_response(SEARCH_PAYLOAD), details]

            outcome = await search_videos(["teorema", "pitágoras"], 80)

        assert outcome.status == "ok"
        video = outcome.results[0]
        assert video.duration == "12:30"
        assert video.language_code == "es-419"
        params = get.call_args_list[0][1]["params"]
        assert params["q"] == "teorema pitágoras educación ICFES"
        assert params["maxResults"] == 50
        assert params["videoEmbeddable"] == "true"

    @pytest.mark.asyncio
    async def test_failed_details_keep_search_results(self) -> None:
        with (
            patch("services.resources.video_search._get_api_key", return_value="k"),
            patch("httpx.AsyncClient") as mock_client,
        ):
            mock_client.return_value.__aenter__.return_value.get.side_effect = [
                _response(SEARCH_PAYLOAD),
                _response({}, status_code=403),
            ]
            outcome = await search_videos(["x"], 5)

        assert outcome.status == "ok"
        assert outcome.results[0].duration is None
        assert outcome.results[0].language_code == "es"

    @pytest.mark.asyncio
    async def test_http_error_returns_error_status(self) -> None:
        with (
            patch("services.resources.video_search._get_api_key", return_value="k"),
            patch("httpx.AsyncClient") as mock_client,
        ):
            mock_client.return_value.__aenter__.return_value.get.side_effect = (
                httpx.HTTPError("quota exceeded")
            )
            outcome = await search_videos(["x"], 5)

        assert outcome.status == "error"
        assert "Unable to fetch" in (outcome.message or "")

    @pytest.mark.asyncio
    async def test_rejected_request_does_not_log_api_key(
        self, caplog: pytest.LogCaptureFixture
    ) -> None:
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(403, json={"error": {"message": "quota"}})

        real_client = httpx.AsyncClient
        with (
            patch(
                "services.resources.video_search._get_api_key",
                return_value="SECRETKEY123",
            ),
            patch(
                "httpx.AsyncClient",
                side_effect=lambda **kwargs: real_client(
                    transport=httpx.MockTransport(handler), **kwargs
                ),
            ),
            caplog.at_level(logging.WARNING, logger="services.resources.video_search"),
        ):
            outcome = await search_videos(["álgebra"], 5)

        assert outcome.status == "error"
        assert "status 403" in caplog.text
        assert "SECRETKEY123" not in caplog.text
        assert "SECRETKEY123" not in str(requests[0].url)
        assert requests[0].headers["X-Goog-Api-Key"] == "SECRETKEY123"
