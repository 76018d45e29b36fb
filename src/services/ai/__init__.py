"""Init file for AI services."""

from .generative_client import GenerativeClient
from .response_extractor import ExtractionSchema, extract
from .scheduler import RateLimitedScheduler


__all__ = [
    "GenerativeClient",
    "RateLimitedScheduler",
    "ExtractionSchema",
    "extract",
]
