"""
ProviderRegistry — discovers and provides access to all integration providers.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

from integrations.provider import IntegrationProvider
from integrations.types import ProviderNotFoundError

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Singleton registry for all integration providers."""

    _instance: Optional["ProviderRegistry"] = None

    def __new__(cls) -> "ProviderRegistry":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._providers = {}
            cls._instance._discovered = False
        return cls._instance

    def discover(self) -> None:
        """Register every built-in provider (configured or not)."""
        if self._discovered:
            return
        from integrations.providers import BUILTIN_PROVIDERS

        for provider_cls in BUILTIN_PROVIDERS:
            provider = provider_cls()
            if provider.name in self._providers:
                continue
            self.register(provider)
            if not provider.is_configured():
                logger.warning(
                    "Provider %s registered without credentials (missing client id/secret)",
                    provider.name,
                )
        self._discovered = True

    def register(self, provider: IntegrationProvider) -> None:
        if provider.name in self._providers:
            logger.warning("Provider %s already registered, replacing", provider.name)
        self._providers[provider.name] = provider
        logger.info("Provider registered: %s (%s)", provider.display_name, provider.name)

    def unregister(self, name: str) -> bool:
        return self._providers.pop(name, None) is not None

    def get(self, name: str) -> IntegrationProvider:
        provider = self._providers.get(name)
        if provider is None:
            raise ProviderNotFoundError(f"Integration provider '{name}' not found")
        return provider

    def has(self, name: str) -> bool:
        return name in self._providers

    def get_all(self) -> List[IntegrationProvider]:
        return list(self._providers.values())

    def get_by_type(self, provider_type: str) -> List[IntegrationProvider]:
        return [p for p in self._providers.values() if p.provider_type == provider_type]

    def list_providers(self) -> List[Dict[str, object]]:
        """Return info about all registered providers."""
        return [p.describe() for p in self._providers.values()]

    def clear(self) -> None:
        self._providers.clear()
        self._discovered = False
