"""Built-in ``null`` provider.

``null.Resource`` manages nothing external. Its outputs echo its
configuration, which makes it useful for wiring values between resources
and for exercising plans. Changing ``triggers`` forces replacement.
"""

from typing import Any

from ulid import ULID

from .base import ProviderCapabilities

NULL_CAPABILITIES = ProviderCapabilities(force_replacement=frozenset({"triggers"}))


class NullProvider:
    """Provider for ``null.*`` resource types."""

    def capabilities(self, resource_type: str) -> ProviderCapabilities:
        return NULL_CAPABILITIES

    async def create(
        self, resource_type: str, config: dict[str, Any]
    ) -> tuple[str, dict[str, Any]]:
        external_id = str(ULID())
        return external_id, {**config, "id": external_id}

    async def read(self, resource_type: str, external_id: str) -> dict[str, Any]:
        # Nothing external to inspect; stored outputs remain authoritative
        return {"id": external_id}

    async def update(
        self, resource_type: str, external_id: str, config: dict[str, Any]
    ) -> dict[str, Any]:
        return {**config, "id": external_id}

    async def delete(self, resource_type: str, external_id: str) -> None:
        return None
