"""Error taxonomy for the generation pipeline.

Every error carries a stable ``error_code`` so batch tooling and logs can
branch on the kind of failure without parsing messages:

* ``TransientError`` - timeout / rate limit / network; retried by the scheduler.
* ``FatalError`` - permission or auth problems; never retried.
* ``ProtocolError`` - upstream text that could not be turned into a usable
  object; carries a bounded excerpt of the raw text.
* ``ValidationError`` - one candidate resource was rejected; absorbed locally.
* ``CompletenessError`` - the aggregate lacks required resources; nothing is
  persisted.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal


EXCERPT_LIMIT = 500

TransientKind = Literal["timeout", "rate_limited", "network"]


def bounded_excerpt(text: str, limit: int = EXCERPT_LIMIT) -> str:
    """Return at most ``limit`` characters of ``text`` for diagnostics."""
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


@dataclass(slots=True)
class PipelineError(Exception):
    """Base class for generation pipeline errors."""

    message: str
    error_code: str

    def __str__(self) -> str:  # pragma: no cover - trivial
        return f"{self.error_code}: {self.message}"


class TransientError(PipelineError):
    def __init__(self, kind: TransientKind, message: str) -> None:
        super().__init__(message=message, error_code=kind)

    @property
    def kind(self) -> str:
        return self.error_code


class FatalError(PipelineError):
    def __init__(
        self,
        message: str = "Permission denied by the generative endpoint",
    ) -> None:
        super().__init__(message=message, error_code="permission_denied")


class ProtocolError(PipelineError):
    def __init__(
        self,
        message: str = "Upstream response could not be interpreted",
        *,
        error_code: str = "malformed_upstream_response",
        raw_text: str = "",
    ) -> None:
        super().__init__(message=message, error_code=error_code)
        self.excerpt = bounded_excerpt(raw_text)


class ValidationError(PipelineError):
    def __init__(self, message: str = "Candidate resource rejected") -> None:
        super().__init__(message=message, error_code="resource_rejected")


class CompletenessError(PipelineError):
    def __init__(self, message: str = "Generated result is incomplete") -> None:
        super().__init__(message=message, error_code="incomplete_result")


class GenerationTimeoutError(PipelineError):
    def __init__(self, message: str = "Generation exceeded its time budget") -> None:
        super().__init__(message=message, error_code="generation_timeout")


class ClientNotConnectedError(PipelineError):
    def __init__(
        self, message: str = "Generative client used before connect()"
    ) -> None:
        super().__init__(message=message, error_code="client_not_connected")


class ClientConnectionError(PipelineError):
    def __init__(
        self, message: str = "Failed to initialize the generative client"
    ) -> None:
        super().__init__(message=message, error_code="client_connection_failed")
