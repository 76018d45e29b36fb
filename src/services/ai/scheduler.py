"""Rate-limited, retrying dispatcher for the generative endpoint.

The scheduler owns three policies:

1. Throttling - at most ``GENERATION_MAX_REQUESTS_PER_WINDOW`` dispatches per
   fixed window plus a minimum spacing between consecutive dispatches.
2. Timeout escalation - attempt 1 uses a size-based base timeout, attempt 2
   ``floor(base * 1.5)`` and attempt 3 ``base * 2``.
3. Error classification - permission problems stop immediately, rate limits
   and timeouts add a fixed penalty on top of the attempt-scaled backoff.
   Attempts and waits are driven by tenacity.

Clock and sleep are injectable so throttling can be tested without waiting.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Literal

import httpx
from pydantic_ai.exceptions import ModelHTTPError, UnexpectedModelBehavior
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception,
    stop_after_attempt,
)

from core.config import Settings, get_settings
from services.ai.exceptions import (
    ClientNotConnectedError,
    FatalError,
    ProtocolError,
    TransientError,
)
from services.ai.generative_client import GenerativeClient
from services.ai.models import (
    Attachment,
    GenerationRequest,
    GenerationResult,
    UsageMetadata,
)


logger = logging.getLogger(__name__)

ErrorClass = Literal[
    "permission_denied", "rate_limited", "timeout", "network", "protocol"
]

MULTIPLE_IMAGES_THRESHOLD = 4
SINGLE_IMAGE_TIMEOUT_FACTOR = 1.5
GRPC_PERMISSION_DENIED = 7


@dataclass(slots=True)
class RateLimiterState:
    window_start: float
    request_count: int = 0
    last_request_time: float | None = None


@dataclass(frozen=True, slots=True)
class RetryAttempt:
    number: int
    timeout: float
    previous_error: ErrorClass | None = None


def classify_error(exc: BaseException) -> ErrorClass:
    """Map an exception raised during dispatch to a retry class."""
    if isinstance(exc, ProtocolError | UnexpectedModelBehavior):
        return "protocol"
    if isinstance(exc, asyncio.TimeoutError | httpx.TimeoutException):
        return "timeout"

    message = str(exc)
    lowered = message.lower()
    status = exc.status_code if isinstance(exc, ModelHTTPError) else None
    code = getattr(exc, "code", None)

    if (
        status == 403
        or code == GRPC_PERMISSION_DENIED
        or "PERMISSION_DENIED" in message
        or "permission" in lowered
    ):
        return "permission_denied"
    if (
        status == 429
        or "RESOURCE_EXHAUSTED" in message
        or "too many requests" in lowered
        or "429" in message
    ):
        return "rate_limited"
    if "timeout" in lowered or "timed out" in lowered or "deadline" in lowered:
        return "timeout"
    return "network"


def base_timeout_for(request: GenerationRequest, settings: Settings) -> float:
    """Tiered base timeout in seconds: text only, a few images, many images."""
    if request.timeout_override is not None:
        return request.timeout_override
    images = request.image_count
    if images > MULTIPLE_IMAGES_THRESHOLD:
        return settings.GENERATION_TIMEOUT_MULTIPLE_IMAGES_SECONDS
    if images > 0:
        return settings.GENERATION_TIMEOUT_SECONDS * SINGLE_IMAGE_TIMEOUT_FACTOR
    return settings.GENERATION_TIMEOUT_SECONDS


def attempt_timeout(base: float, attempt: int) -> float:
    if attempt <= 1:
        return base
    if attempt == 2:
        return float(math.floor(base * 1.5))
    return base * 2


def retry_delay(error_class: ErrorClass, attempt: int, settings: Settings) -> float:
    backoff = settings.GENERATION_RETRY_DELAY_SECONDS * attempt
    if error_class == "rate_limited":
        return settings.GENERATION_RATE_LIMIT_PENALTY_SECONDS + backoff
    if error_class == "timeout":
        return settings.GENERATION_TIMEOUT_PENALTY_SECONDS + backoff
    return backoff


def permission_denied_message(settings: Settings, cause: str) -> str:
    return (
        "Permiso denegado por Vertex AI. La cuenta de servicio "
        f"{settings.service_account_email} necesita el rol 'Vertex AI User' "
        f"(roles/aiplatform.user) en el proyecto {settings.GEMINI_PROJECT_ID}. "
        f"Detalle: {cause}"
    )


def prepare_attachments(attachments: tuple[Attachment, ...]) -> list[Attachment]:
    """Drop empty parts and coerce non-image mime types to JPEG."""
    prepared: list[Attachment] = []
    for attachment in attachments:
        if attachment.is_empty:
            logger.warning(
                "Skipping empty attachment %r", attachment.context_label or "image"
            )
            continue
        prepared.append(attachment.normalized())
    if attachments and not prepared:
        raise ValueError("Ninguna de las imágenes adjuntas es válida")
    return prepared


class RateLimitedScheduler:
    """Executes generation requests under a shared rate limit."""

    def __init__(
        self,
        client: GenerativeClient,
        settings: Settings | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.client = client
        self.settings = settings or get_settings()
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self.state = RateLimiterState(window_start=clock())

    async def wait_for_slot(self) -> None:
        """Block until one more dispatch fits in the window and spacing."""
        window = self.settings.GENERATION_WINDOW_SECONDS
        ceiling = self.settings.GENERATION_MAX_REQUESTS_PER_WINDOW
        min_delay = self.settings.GENERATION_MIN_DELAY_SECONDS

        async with self._lock:
            state = self.state
            now = self._clock()
            if now - state.window_start >= window:
                state.window_start = now
                state.request_count = 0

            if state.request_count >= ceiling:
                wait = window - (now - state.window_start)
                if wait > 0:
                    logger.info(
                        "Generation rate limit reached (%d/%d), waiting %.1fs",
                        state.request_count,
                        ceiling,
                        wait,
                    )
                    await self._sleep(wait)
                state.window_start = self._clock()
                state.request_count = 0

            if state.last_request_time is not None:
                elapsed = self._clock() - state.last_request_time
                if elapsed < min_delay:
                    await self._sleep(min_delay - elapsed)

            state.last_request_time = self._clock()
            state.request_count += 1

    def _retry_wait(self, retry_state: RetryCallState) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        error_class = classify_error(exc) if exc is not None else "network"
        return retry_delay(error_class, retry_state.attempt_number, self.settings)

    async def _dispatch(
        self,
        request: GenerationRequest,
        attachments: list[Attachment],
        attempt: RetryAttempt,
        max_attempts: int,
    ) -> GenerationResult:
        await self.wait_for_slot()
        logger.info(
            "Dispatching generation attempt %d/%d (timeout=%.0fs, images=%d)",
            attempt.number,
            max_attempts,
            attempt.timeout,
            len(attachments),
        )
        try:
            with self.client.credentials():
                raw = await asyncio.wait_for(
                    self.client.generate(request.prompt, attachments),
                    timeout=attempt.timeout,
                )
            if not raw.text or not raw.text.strip():
                raise ProtocolError("Respuesta vacía del modelo")
        except ClientNotConnectedError:
            raise
        except Exception as exc:
            error_class = classify_error(exc)
            if error_class == "permission_denied":
                logger.error("Generation permission denied: %s", exc)
                raise FatalError(
                    permission_denied_message(self.settings, str(exc))
                ) from exc
            logger.warning(
                "Generation attempt %d/%d failed (%s): %s",
                attempt.number,
                max_attempts,
                error_class,
                _describe(exc, attempt.timeout),
            )
            raise

        return GenerationResult(
            text=raw.text,
            metadata=UsageMetadata(
                model=raw.model_name,
                project=self.settings.GEMINI_PROJECT_ID,
                region=self.settings.GEMINI_REGION,
                prompt_version=self.settings.PROMPT_VERSION,
                attempt=attempt.number,
                images_processed=len(attachments),
            ),
        )

    async def execute(self, request: GenerationRequest) -> GenerationResult:
        """Run one request with throttling, escalating timeouts and retries."""
        attachments = prepare_attachments(request.attachments)
        base = base_timeout_for(request, self.settings)
        max_attempts = max(1, request.max_retries)

        retrying = AsyncRetrying(
            stop=stop_after_attempt(max_attempts),
            retry=retry_if_exception(is_retryable),
            wait=self._retry_wait,
            sleep=self._sleep,
            before_sleep=_log_retry,
        )
        previous: ErrorClass | None = None
        last_error: BaseException | None = None
        try:
            async for attempt_manager in retrying:
                number = attempt_manager.retry_state.attempt_number
                attempt = RetryAttempt(
                    number=number,
                    timeout=attempt_timeout(base, number),
                    previous_error=previous,
                )
                with attempt_manager:
                    try:
                        return await self._dispatch(
                            request, attachments, attempt, max_attempts
                        )
                    except Exception as exc:
                        previous = classify_error(exc)
                        raise
        except RetryError as exc:
            last_error = exc.last_attempt.exception()

        last_class = classify_error(last_error) if last_error else "network"
        cause = _describe(last_error, attempt_timeout(base, max_attempts))
        message = f"Error después de {max_attempts} intentos: {cause}"
        if last_class == "protocol":
            raise ProtocolError(message) from last_error
        raise TransientError(last_class, message) from last_error


def is_retryable(exc: BaseException) -> bool:
    """Fatal errors and cancellation end the call; other exceptions retry."""
    return isinstance(exc, Exception) and not isinstance(
        exc, FatalError | ClientNotConnectedError
    )


def _log_retry(retry_state: RetryCallState) -> None:
    delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
    logger.info("Retrying generation in %.0fs", delay)


def _describe(exc: BaseException | None, timeout: float) -> str:
    if exc is None:
        return "error desconocido"
    if isinstance(exc, asyncio.TimeoutError) and not str(exc):
        return f"timeout after {timeout:.0f}s"
    if isinstance(exc, ProtocolError):
        return exc.message
    return str(exc) or type(exc).__name__
