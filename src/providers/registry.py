"""Provider Registry.

Holds the catalog of upstream models reachable through the gateway.
The registry is built once at startup from settings and never mutated.
"""

import os
from typing import Any, Iterable, Mapping, Optional

from shared.config import ProviderSettings
from shared.logging import get_logger
from shared.models import ProviderConfig, ProviderDefinition

logger = get_logger(__name__)


class ProviderRegistry:
    """
    Read-only registry of configured providers.

    A provider is enabled when a credential is available for it or when
    the process runs in test mode (calls are then mocked).
    """

    def __init__(self, providers: Iterable[ProviderConfig], test_mode: bool = False) -> None:
        self._providers: dict[str, ProviderConfig] = {}
        for provider in providers:
            if provider.key in self._providers:
                raise ValueError(f"Provider '{provider.key}' is already registered")
            self._providers[provider.key] = provider
        self.test_mode = test_mode

    @classmethod
    def from_settings(
        cls,
        settings: ProviderSettings,
        test_mode: bool = False,
        environ: Optional[Mapping[str, str]] = None
    ) -> "ProviderRegistry":
        """
        Resolve credentials for every catalog entry.

        The shared gateway key takes precedence over a provider's own
        environment variable.
        """
        environ = os.environ if environ is None else environ
        providers = [
            cls._resolve(definition, settings.api_key, test_mode, environ)
            for definition in settings.catalog
        ]
        registry = cls(providers, test_mode=test_mode)

        logger.info(
            "Provider registry initialized",
            providers=registry.keys(),
            enabled=[p.key for p in registry.list_enabled()],
            test_mode=test_mode
        )
        return registry

    @staticmethod
    def _resolve(
        definition: ProviderDefinition,
        shared_key: Optional[str],
        test_mode: bool,
        environ: Mapping[str, str]
    ) -> ProviderConfig:
        credential = shared_key
        if not credential and definition.api_key_env:
            credential = environ.get(definition.api_key_env) or None

        return ProviderConfig(
            key=definition.key,
            display_name=definition.display_name,
            upstream_model_id=definition.upstream_model_id,
            credential=credential,
            enabled=bool(credential) or test_mode,
            cost_per_1k_tokens=definition.cost_per_1k_tokens,
        )

    def get(self, key: str) -> Optional[ProviderConfig]:
        """Get a provider by key, or None if unknown."""
        return self._providers.get(key)

    def keys(self) -> list[str]:
        """All catalog keys, enabled or not, in catalog order."""
        return list(self._providers)

    def list_enabled(self) -> list[ProviderConfig]:
        """Providers that can currently be called."""
        return [p for p in self._providers.values() if p.enabled]

    def is_enabled(self, key: str) -> bool:
        provider = self._providers.get(key)
        return provider is not None and provider.enabled

    def status(self) -> list[dict[str, Any]]:
        """Provider status summary for clients."""
        return [
            {
                "key": p.key,
                "display_name": p.display_name,
                "upstream_model_id": p.upstream_model_id,
                "enabled": p.enabled,
                "configured": p.configured,
            }
            for p in self._providers.values()
        ]
