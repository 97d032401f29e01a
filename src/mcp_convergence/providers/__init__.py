"""Providers that perform the actual changes against target systems."""
import logging
from typing import Any, Optional

from ..engine.errors import ParseError
from ..engine.schema import ResourceId
from .base import Provider, ProviderConfig
from .local import LocalProvider
from .memory import InMemoryProvider

logger = logging.getLogger(__name__)

__all__ = [
    "Provider",
    "ProviderConfig",
    "LocalProvider",
    "InMemoryProvider",
    "ProviderRegistry",
    "create_provider",
    "PROVIDER_TYPES",
]

# Provider type registry
PROVIDER_TYPES: dict[str, type[Provider]] = {
    "local": LocalProvider,
    "memory": InMemoryProvider,
}


def create_provider(name: str, config: Optional[dict[str, Any]] = None) -> Provider:
    """Factory function to create provider instances.

    The provider type defaults to the provider name, so ``local: {root: /srv}``
    creates a LocalProvider called "local".
    """
    if config is not None and not isinstance(config, dict):
        raise ParseError(f"Options for provider '{name}' must be a mapping")
    config = dict(config or {})
    provider_type = str(config.pop("type", name)).lower()
    if provider_type not in PROVIDER_TYPES:
        raise ParseError(f"Unknown provider type: {provider_type}")

    provider_class = PROVIDER_TYPES[provider_type]
    return provider_class(name, ProviderConfig(type=provider_type, name=name, options=config))


class ProviderRegistry:
    """Look up the provider serving a resource.

    A resource of type ``local_file`` is served by the provider named
    ``local``.
    """

    def __init__(self, providers: Optional[dict[str, Provider]] = None):
        self._providers: dict[str, Provider] = dict(providers or {})

    @classmethod
    def from_config(cls, config: Optional[dict[str, Any]]) -> "ProviderRegistry":
        """Build from a declaration's ``providers:`` section."""
        registry = cls()
        for name, provider_config in (config or {}).items():
            registry.register(create_provider(name, provider_config))
        return registry

    def register(self, provider: Provider) -> None:
        self._providers[provider.name] = provider

    def names(self) -> list[str]:
        return sorted(self._providers)

    def get(self, name: str) -> Provider:
        if name not in self._providers:
            raise KeyError(f"Unknown provider: {name}")
        return self._providers[name]

    def for_resource(self, resource_id: ResourceId) -> Optional[Provider]:
        """Provider for a resource, or None when nothing serves its type.

        Providers listed in the declaration take precedence; a built-in
        provider type is created on demand when its name matches.
        """
        name = resource_id.provider_name
        provider = self._providers.get(name)
        if provider is None and name in PROVIDER_TYPES:
            provider = create_provider(name)
            self.register(provider)
            logger.debug(f"Created default provider '{name}'")
        if provider is None or not provider.supports(resource_id.type):
            return None
        return provider

    async def close_all(self) -> None:
        """Close every registered provider."""
        for provider in self._providers.values():
            try:
                await provider.close()
            except Exception as e:
                logger.warning(f"Error closing provider {provider.name}: {e}")
