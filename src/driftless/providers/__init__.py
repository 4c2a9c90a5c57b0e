"""Provider interface, registry and built-in providers."""

from .base import Provider, ProviderCapabilities
from .null import NullProvider
from .registry import ENTRY_POINT_GROUP, ProviderRegistry

__all__ = [
    "ENTRY_POINT_GROUP",
    "NullProvider",
    "Provider",
    "ProviderCapabilities",
    "ProviderRegistry",
]
