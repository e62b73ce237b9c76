"""
Provider Registry

Closed set of provider adapters, populated once at startup from settings and
frozen afterwards. Registration checks each adapter implements the whole
interface, so a broken adapter fails at boot rather than on first use.
"""
import logging
from typing import Dict, List, Mapping, Optional, Type

import httpx

from ..config import Settings
from ..exceptions import ConfigurationError, UnknownProviderError
from ..services.signature_service import SignatureVerifier
from .base import INTERFACE_METHODS, ProviderAdapter
from .cards import CardsAdapter
from .mtn_momo import MtnMomoAdapter
from .orange_money import OrangeMoneyAdapter

logger = logging.getLogger(__name__)

ADAPTERS: Dict[str, Type[ProviderAdapter]] = {
    OrangeMoneyAdapter.name: OrangeMoneyAdapter,
    MtnMomoAdapter.name: MtnMomoAdapter,
    CardsAdapter.name: CardsAdapter,
}


class ProviderRegistry:
    """Name -> adapter lookup."""

    def __init__(self):
        self._adapters: Dict[str, ProviderAdapter] = {}
        self._frozen = False

    def register(self, name: str, adapter: ProviderAdapter) -> None:
        """
        Add an adapter under a provider name.

        Raises:
            ConfigurationError: registry frozen, adapter incomplete, or live
                credentials missing
        """
        if self._frozen:
            raise ConfigurationError("Provider registry is frozen", {"provider": name})
        if not isinstance(adapter, ProviderAdapter):
            raise ConfigurationError(
                f"Adapter for {name} is not a ProviderAdapter",
                {"provider": name, "type": type(adapter).__name__}
            )

        missing = [
            method for method in INTERFACE_METHODS
            if not callable(getattr(adapter, method, None))
            or getattr(getattr(adapter, method), "__isabstractmethod__", False)
        ]
        if missing:
            raise ConfigurationError(
                f"Adapter for {name} does not implement: {', '.join(missing)}",
                {"provider": name, "missing": missing}
            )

        settings = adapter.settings
        if not settings.test_mode and not (settings.api_key and settings.webhook_secret):
            raise ConfigurationError(
                f"Provider {name} requires api_key and webhook_secret outside test mode",
                {"provider": name}
            )

        self._adapters[name] = adapter
        logger.info(f"Registered provider {name} (test_mode={settings.test_mode})")

    def resolve(self, name: str) -> ProviderAdapter:
        adapter = self._adapters.get(name)
        if adapter is None:
            raise UnknownProviderError(name)
        return adapter

    def names(self) -> List[str]:
        return sorted(self._adapters)

    def __contains__(self, name: object) -> bool:
        return name in self._adapters

    def freeze(self) -> "ProviderRegistry":
        self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    async def close(self) -> None:
        """Close every adapter's HTTP client."""
        for adapter in self._adapters.values():
            await adapter.aclose()


def build_registry(
    settings: Settings,
    signer: SignatureVerifier,
    http_clients: Optional[Mapping[str, httpx.AsyncClient]] = None,
) -> ProviderRegistry:
    """
    Build and freeze the registry for every enabled provider in settings.

    Args:
        settings: Application settings
        signer: Shared signature verifier
        http_clients: Optional pre-built clients per provider (tests)

    Returns:
        Frozen ProviderRegistry
    """
    registry = ProviderRegistry()
    for name, provider_settings in settings.providers.items():
        if not provider_settings.enabled:
            logger.info(f"Provider {name} is disabled, skipping")
            continue
        adapter_class = ADAPTERS.get(name)
        if adapter_class is None:
            raise ConfigurationError(f"No adapter available for provider: {name}", {"provider": name})
        client = (http_clients or {}).get(name)
        registry.register(name, adapter_class(provider_settings, signer, http_client=client))
    return registry.freeze()
