"""Provider registry keyed by resource type prefix."""

from __future__ import annotations

import logging
from importlib.metadata import entry_points

from ..exceptions import ProviderNotFoundError
from ..naming import validate_type
from .base import Provider, ProviderCapabilities

logger = logging.getLogger(__name__)

ENTRY_POINT_GROUP = "driftless.providers"


class ProviderRegistry:
    """
    Maps resource types to providers.

    Providers register for an exact type (``aws.ec2.Vpc``) or a dotted
    prefix (``aws.ec2`` or ``aws``). Lookups pick the longest matching prefix.
    """

    def __init__(self) -> None:
        self._providers: dict[str, Provider] = {}

    def register(self, pattern: str, provider: Provider) -> None:
        """Register a provider for a resource type or type prefix."""
        if not isinstance(provider, Provider):
            raise TypeError(f"{provider!r} does not implement the Provider protocol")
        if "." in pattern:
            validate_type(pattern)
        self._providers[pattern] = provider
        logger.debug("Registered provider %s for '%s'", type(provider).__name__, pattern)

    def get(self, resource_type: str) -> Provider:
        """
        Find the provider for a resource type.

        Raises:
            ProviderNotFoundError: If no registered pattern matches
        """
        segments = resource_type.split(".")
        for end in range(len(segments), 0, -1):
            provider = self._providers.get(".".join(segments[:end]))
            if provider is not None:
                return provider
        raise ProviderNotFoundError(resource_type)

    def capabilities_for(self, resource_type: str) -> ProviderCapabilities:
        return self.get(resource_type).capabilities(resource_type)

    def __contains__(self, resource_type: str) -> bool:
        try:
            self.get(resource_type)
        except ProviderNotFoundError:
            return False
        return True

    @property
    def patterns(self) -> list[str]:
        return sorted(self._providers)

    def load_entry_points(self, group: str = ENTRY_POINT_GROUP) -> int:
        """
        Register providers advertised by installed packages.

        Each entry point name is a type pattern; its value is a provider class
        or zero-argument factory.

        Returns:
            Number of providers registered
        """
        count = 0
        for ep in entry_points(group=group):
            factory = ep.load()
            self.register(ep.name, factory())
            count += 1
        return count

    @classmethod
    def default(cls) -> ProviderRegistry:
        """Registry with the built-in null provider and installed plugins."""
        from .null import NullProvider

        registry = cls()
        registry.register("null", NullProvider())
        registry.load_entry_points()
        return registry
