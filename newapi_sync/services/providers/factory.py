"""Provider adapter selection."""

from typing import Dict, List, Type

from newapi_sync.services.config_loader import AppConfig
from newapi_sync.services.providers.base import ProviderAdapter
from newapi_sync.services.providers.direct import DirectAdapter
from newapi_sync.services.providers.newapi import NewApiAdapter
from newapi_sync.services.providers.sub2api import Sub2ApiAdapter

ADAPTERS: Dict[str, Type[ProviderAdapter]] = {
    NewApiAdapter.kind: NewApiAdapter,
    DirectAdapter.kind: DirectAdapter,
    Sub2ApiAdapter.kind: Sub2ApiAdapter,
}


def create_adapter(provider_config, app_config: AppConfig) -> ProviderAdapter:
    """Build the adapter for a provider config block.

    Raises:
        ValueError: If the provider type has no adapter.
    """
    adapter_class = ADAPTERS.get(provider_config.type)
    if adapter_class is None:
        raise ValueError(f"Unsupported provider type: {provider_config.type}")
    return adapter_class(provider_config, app_config)


def create_adapters(app_config: AppConfig) -> List[ProviderAdapter]:
    """Build adapters for every configured provider in execution order.

    The sort is stable, so providers of the same kind keep their config order.
    """
    adapters = [create_adapter(p, app_config) for p in app_config.providers]
    return sorted(adapters, key=lambda adapter: adapter.order)
