"""Provider adapters."""

from newapi_sync.services.providers.base import ProviderAdapter
from newapi_sync.services.providers.direct import DirectAdapter
from newapi_sync.services.providers.factory import create_adapter, create_adapters
from newapi_sync.services.providers.newapi import CostTracker, NewApiAdapter
from newapi_sync.services.providers.sub2api import Sub2ApiAdapter

__all__ = [
    "ProviderAdapter",
    "NewApiAdapter",
    "DirectAdapter",
    "Sub2ApiAdapter",
    "CostTracker",
    "create_adapter",
    "create_adapters",
]
