"""Resource acquisition: search providers, link validation and topic caches."""

from .resource_cache import ResourceCache, ResourceKey, ResourceKind
from .validation_gate import ValidationGate


__all__ = [
    "ResourceCache",
    "ResourceKey",
    "ResourceKind",
    "ValidationGate",
]
