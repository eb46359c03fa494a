"""Provider adapter interface and the filtering shared by all kinds."""

import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Mapping, Optional, Sequence

from newapi_sync.services.config_loader import AppConfig
from newapi_sync.services.constants import (
    apply_model_mapping,
    infer_vendor_from_model_name,
    is_text_model,
    matches_any_pattern,
    matches_blacklist,
)
from newapi_sync.services.pricing import PriceAdjustment, parse_price_adjustment
from newapi_sync.services.types import AggregationState, ProviderReport

logger = logging.getLogger(__name__)


class ProviderAdapter(ABC):
    """One configured provider, run in three stages.

    ``discover`` reads the upstream catalog and applies the provider's
    filters, ``health_probe`` tests the surviving models, and
    ``materialize`` folds the result into the shared aggregation state.
    Adapters sort by ``order``: gateways first, then direct vendor keys,
    then account aggregators that price relative to everything before them.
    """

    kind = ""
    order = 0

    def __init__(self, provider_config, app_config: AppConfig):
        """Initialize the adapter.

        Args:
            provider_config: The provider's own config block.
            app_config: Full sync config (blacklist, model mapping).
        """
        self.config = provider_config
        self.app_config = app_config
        self.adjustment: PriceAdjustment = parse_price_adjustment(provider_config.price_adjustment)
        self.report = ProviderReport(name=provider_config.name, type=self.kind)

    @property
    def name(self) -> str:
        return self.config.name

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return None

    @abstractmethod
    async def discover(self) -> None:
        """Fetch and filter the upstream catalog."""

    @abstractmethod
    async def health_probe(self) -> None:
        """Probe candidate models and keep the working ones."""

    @abstractmethod
    def materialize(self, state: AggregationState) -> None:
        """Publish channels, groups and model prices into the state."""

    async def run(self, state: AggregationState) -> ProviderReport:
        """Run all stages; failures are recorded on the report, never raised."""
        try:
            async with self:
                await self.discover()
                await self.health_probe()
                self.materialize(state)
            self.report.success = True
        except Exception as e:
            self.report.success = False
            self.report.error = str(e) or type(e).__name__
            logger.error(f"[{self.name}] Provider failed: {self.report.error}")
        return self.report

    # ------------------------------------------------------------------
    # Shared filters

    def is_blacklisted(self, text: str) -> bool:
        return matches_blacklist(text, self.app_config.blacklist, scope=self.name)

    def filter_models(
        self,
        models: Sequence[str],
        model_endpoints: Optional[Mapping[str, Sequence[str]]] = None,
        enabled_vendors: Optional[Sequence[str]] = None,
    ) -> List[str]:
        """Keep text models that pass the blacklist, vendor and model allow-lists."""
        vendors = {v.lower() for v in enabled_vendors or []}
        enabled_models = self.config.enabled_models or []
        kept = []
        for model in models:
            if not is_text_model(model, (model_endpoints or {}).get(model)):
                continue
            if self.is_blacklisted(model):
                continue
            if vendors and infer_vendor_from_model_name(model) not in vendors:
                continue
            if enabled_models and not matches_any_pattern(model, enabled_models):
                continue
            kept.append(model)
        return kept

    def map_models(self, models: Sequence[str]) -> List[str]:
        """Apply the model mapping, de-duplicating names that collapse together."""
        mapped: List[str] = []
        for model in models:
            name = apply_model_mapping(model, self.app_config.model_mapping)
            if name not in mapped:
                mapped.append(name)
        return mapped

    def mapped_endpoints(self, model_endpoints: Mapping[str, Sequence[str]]) -> Dict[str, List[str]]:
        """Re-key endpoint data by mapped model name (first original wins)."""
        result: Dict[str, List[str]] = {}
        for model, endpoints in model_endpoints.items():
            name = apply_model_mapping(model, self.app_config.model_mapping)
            if endpoints and name not in result:
                result[name] = list(endpoints)
        return result
