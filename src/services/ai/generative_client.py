"""Explicit client for the Gemini generative endpoint.

The client is built once, connected once and injected into the scheduler.
Two credential regimes are supported:

* API key (``GEMINI_API_KEY``) through the Generative Language API.
* Vertex AI with application default credentials. In local development a
  service account file can be pointed to with
  ``GOOGLE_APPLICATION_CREDENTIALS_PATH``; it is exported as
  ``GOOGLE_APPLICATION_CREDENTIALS`` only while a call is in flight.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Iterator, Sequence
from contextlib import AbstractContextManager, contextmanager
from typing import Any, cast

from pydantic_ai import Agent
from pydantic_ai.messages import BinaryContent
from pydantic_ai.models import Model
from pydantic_ai.models.google import GoogleModel
from pydantic_ai.providers.google import GoogleProvider

from core.config import Settings, get_settings
from services.ai.exceptions import ClientConnectionError, ClientNotConnectedError
from services.ai.models import Attachment, RawGeneration


logger = logging.getLogger(__name__)

CREDENTIALS_ENV_VAR = "GOOGLE_APPLICATION_CREDENTIALS"


class CredentialContext:
    """Scoped export of the local service-account path.

    Overlapping calls share one export; the previous value of the variable
    (or its absence) is restored when the last holder exits, on every exit
    path. Outside development this is a no-op and ADC is used as-is.
    """

    def __init__(self, settings: Settings) -> None:
        self._path = settings.GOOGLE_APPLICATION_CREDENTIALS_PATH
        self._enabled = settings.ENVIRONMENT == "development" and bool(self._path)
        self._holders = 0
        self._previous: str | None = None

    @contextmanager
    def acquire(self) -> Iterator[None]:
        if not self._enabled:
            yield
            return

        if self._holders == 0:
            self._previous = os.environ.get(CREDENTIALS_ENV_VAR)
            os.environ[CREDENTIALS_ENV_VAR] = cast(str, self._path)
        self._holders += 1
        try:
            yield
        finally:
            self._holders -= 1
            if self._holders == 0:
                if self._previous is None:
                    os.environ.pop(CREDENTIALS_ENV_VAR, None)
                else:
                    os.environ[CREDENTIALS_ENV_VAR] = self._previous


class GenerativeClient:
    """Thin wrapper over a pydantic-ai text agent backed by Gemini."""

    def __init__(
        self,
        settings: Settings | None = None,
        model: Model | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._model = model
        self._agent: Agent[None, str] | None = None
        self._credentials = CredentialContext(self.settings)

    @property
    def is_connected(self) -> bool:
        return self._agent is not None

    @property
    def model_name(self) -> str:
        return self.settings.GEMINI_MODEL

    def credentials(self) -> AbstractContextManager[None]:
        """Scoped credential context for one dispatch."""
        return self._credentials.acquire()

    def _create_model(self) -> Model:
        settings = self.settings
        if settings.GEMINI_API_KEY:
            logger.info("Using Gemini API key provider: %s", settings.GEMINI_MODEL)
            provider = GoogleProvider(api_key=settings.GEMINI_API_KEY)
        else:
            logger.info(
                "Using Vertex AI provider: %s (project=%s, region=%s)",
                settings.GEMINI_MODEL,
                settings.GEMINI_PROJECT_ID,
                settings.GEMINI_REGION,
            )
            provider = GoogleProvider(
                vertexai=True,
                project=settings.GEMINI_PROJECT_ID,
                location=settings.GEMINI_REGION,
            )
        return cast(Model, GoogleModel(settings.GEMINI_MODEL, provider=provider))

    def connect(self) -> None:
        """Build the underlying model and agent. Safe to call more than once."""
        if self._agent is not None:
            return
        try:
            with self.credentials():
                model = self._model or self._create_model()
        except Exception as exc:
            raise ClientConnectionError(
                f"Could not initialize Gemini client: {type(exc).__name__}: {exc}"
            ) from exc
        self._agent = Agent(model, output_type=str)
        logger.info("Generative client connected (%s)", self.model_name)

    async def generate(
        self, prompt: str, attachments: Sequence[Attachment] = ()
    ) -> RawGeneration:
        """Send one prompt (plus image parts) and return the raw text."""
        if self._agent is None:
            raise ClientNotConnectedError()

        parts: list[str | BinaryContent] = [prompt]
        for attachment in attachments:
            if attachment.context_label:
                parts.append(attachment.context_label)
            parts.append(
                BinaryContent(data=attachment.data, media_type=attachment.mime_type)
            )

        result: Any = await self._agent.run(parts if attachments else prompt)
        return RawGeneration(text=result.output, model_name=self.model_name)
