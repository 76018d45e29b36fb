"""Download question images so they can be sent as inline attachments."""

from __future__ import annotations

import logging
from collections.abc import Sequence

import httpx

from services.ai.models import DEFAULT_IMAGE_MIME_TYPE, Attachment


logger = logging.getLogger(__name__)

MAX_IMAGE_BYTES = 5 * 1024 * 1024


async def fetch_image(
    client: httpx.AsyncClient, url: str, context_label: str
) -> Attachment | None:
    """One image as an attachment, or None when it cannot be used."""
    try:
        response = await client.get(url)
        response.raise_for_status()
    except httpx.HTTPError as exc:
        logger.warning(
            "Image download failed for %s: %s - %s", url, type(exc).__name__, exc
        )
        return None

    if not response.content:
        logger.warning("Image %s is empty, skipping", url)
        return None
    if len(response.content) > MAX_IMAGE_BYTES:
        logger.warning(
            "Image %s too large (%d bytes), skipping", url, len(response.content)
        )
        return None

    mime_type = response.headers.get("content-type", "").split(";")[0].strip().lower()
    return Attachment(
        mime_type=mime_type or DEFAULT_IMAGE_MIME_TYPE,
        data=response.content,
        context_label=context_label,
    ).normalized()


async def fetch_images(
    images: Sequence[tuple[str, str]], *, timeout: float = 10.0
) -> list[Attachment]:
    """Download ``(url, context_label)`` pairs in order, skipping failures."""
    if not images:
        return []
    attachments: list[Attachment] = []
    async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
        for url, label in images:
            attachment = await fetch_image(client, url, label)
            if attachment is not None:
                attachments.append(attachment)
    logger.info("Downloaded %d/%d question image(s)", len(attachments), len(images))
    return attachments
