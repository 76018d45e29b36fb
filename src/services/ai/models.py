"""Request/result contract objects for the generative endpoint.

* Attachment        - one binary part (image) sent alongside the prompt.
* GenerationRequest - immutable description of one call: prompt, parts,
  timeout override and retry budget.
* GenerationResult  - raw text plus usage metadata, produced once per
  successful scheduler call.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime


DEFAULT_IMAGE_MIME_TYPE = "image/jpeg"


@dataclass(frozen=True, slots=True)
class Attachment:
    mime_type: str
    data: bytes
    context_label: str = ""

    @property
    def is_empty(self) -> bool:
        return not self.data

    def normalized(self) -> Attachment:
        """Return a copy whose mime type is an image type."""
        if self.mime_type and self.mime_type.startswith("image/"):
            return self
        return Attachment(
            mime_type=DEFAULT_IMAGE_MIME_TYPE,
            data=self.data,
            context_label=self.context_label,
        )


@dataclass(frozen=True, slots=True)
class GenerationRequest:
    prompt: str
    attachments: tuple[Attachment, ...] = ()
    # Seconds; replaces the size-based base timeout when set
    timeout_override: float | None = None
    max_retries: int = 3

    @property
    def image_count(self) -> int:
        return sum(1 for a in self.attachments if not a.is_empty)


@dataclass(frozen=True, slots=True)
class UsageMetadata:
    model: str
    project: str
    region: str
    prompt_version: str
    attempt: int
    images_processed: int
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass(frozen=True, slots=True)
class GenerationResult:
    text: str
    metadata: UsageMetadata


@dataclass(frozen=True, slots=True)
class RawGeneration:
    """What the transport hands back before the scheduler validates it."""

    text: str | None
    model_name: str
