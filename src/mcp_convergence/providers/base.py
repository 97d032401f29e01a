"""Base provider abstraction.

A provider performs the actual create/read/update/delete against a target
system. The engine only talks to providers through ``probe`` and ``apply``.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional

from ..engine.errors import PermanentProviderError
from ..engine.schema import Action, ResourceId, ResourceState

logger = logging.getLogger(__name__)


@dataclass
class ProviderConfig:
    """Configuration for a provider instance."""
    type: str
    name: str
    options: dict[str, Any] = field(default_factory=dict)


class Provider(ABC):
    """Abstract base class for providers."""

    # Resource types this provider manages, e.g. {"local_file", "local_directory"}
    resource_types: frozenset[str] = frozenset()

    def __init__(self, name: str, config: Optional[ProviderConfig] = None):
        self.name = name
        self.config = config or ProviderConfig(type=name, name=name)

    def supports(self, resource_type: str) -> bool:
        """Check if this provider manages a resource type."""
        return resource_type in self.resource_types

    def _check_supported(self, resource_id: ResourceId) -> None:
        if not self.supports(resource_id.type):
            raise PermanentProviderError(
                f"Provider '{self.name}' does not manage type '{resource_id.type}'",
                resource_id=str(resource_id),
            )

    @abstractmethod
    async def probe(
        self,
        resource_id: ResourceId,
        known: Optional[ResourceState] = None,
    ) -> Optional[ResourceState]:
        """Observe the actual state of a resource.

        Args:
            resource_id: Resource to observe
            known: Last-applied state, for providers that need it to locate
                the object (e.g. a file path)

        Returns:
            Observed ResourceState, or None when the resource does not exist

        Raises:
            ProviderError: transient or permanent
        """
        pass

    @abstractmethod
    async def apply(self, action: Action) -> Optional[ResourceState]:
        """Perform a create, update or delete.

        The action's resource carries attributes with interpolations already
        resolved.

        Deleting an object that no longer exists succeeds.

        Returns:
            Resulting ResourceState (attributes and outputs), None after delete

        Raises:
            ProviderError: transient or permanent
        """
        pass

    async def retire(self, action: Action) -> None:
        """Remove what an update left behind at the prior location.

        Called after every dependent of the resource has been applied, so
        nothing managed still lives at the old location.

        Raises:
            ProviderError: transient or permanent
        """
        pass

    async def close(self) -> None:
        """Release provider resources."""
        pass

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
        return False
