"""Provider protocol and capability metadata.

Providers implement create/read/update/delete for a family of resource
types. The engine never inspects resource-specific semantics; it relies on
:class:`ProviderCapabilities` to decide between in-place updates and
replacement.

Configuration values handed to providers keep secrets wrapped in
:class:`~driftless.values.Secret`; providers call ``reveal()`` where the
plaintext is needed and may return ``Secret`` values in outputs to keep
them sealed in state.
"""

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable


@dataclass(frozen=True)
class ProviderCapabilities:
    """
    What a provider can do for one resource type.

    Attributes:
        force_replacement: Properties whose change requires a new resource
        create_before_delete: Replacement creates the new resource before
            deleting the old one (zero-downtime)
        supports_abort: In-flight calls may be cancelled when a run is cancelled
    """

    force_replacement: frozenset[str] = frozenset()
    create_before_delete: bool = False
    supports_abort: bool = False

    def replacement_properties(self, changed: Iterable[str]) -> list[str]:
        """Changed properties that cannot be updated in place."""
        return sorted(set(changed) & self.force_replacement)


@runtime_checkable
class Provider(Protocol):
    """
    Protocol for resource providers.

    Example:
        class BucketProvider:
            def capabilities(self, resource_type: str) -> ProviderCapabilities:
                return ProviderCapabilities(force_replacement=frozenset({"name"}))

            async def create(self, resource_type, config):
                ...

        registry.register("aws.s3", BucketProvider())
    """

    def capabilities(self, resource_type: str) -> ProviderCapabilities:
        """Capability metadata for a resource type."""
        ...

    async def create(
        self, resource_type: str, config: dict[str, Any]
    ) -> tuple[str, dict[str, Any]]:
        """
        Create a resource.

        Returns:
            Tuple of (external_id, outputs)

        Raises:
            ProviderError: On failure; ``retryable`` marks transient errors
        """
        ...

    async def read(self, resource_type: str, external_id: str) -> dict[str, Any]:
        """
        Read current outputs of a resource.

        Raises:
            ResourceNotFoundError: If the resource no longer exists
        """
        ...

    async def update(
        self, resource_type: str, external_id: str, config: dict[str, Any]
    ) -> dict[str, Any]:
        """
        Update a resource in place.

        Raises:
            RequiresReplacement: If the change cannot be applied in place
        """
        ...

    async def delete(self, resource_type: str, external_id: str) -> None:
        """
        Delete a resource.

        Raises:
            ResourceNotFoundError: If already gone (treated as success)
        """
        ...
