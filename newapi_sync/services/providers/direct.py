"""Adapter for first-party vendor API keys."""

import logging
from typing import List, Optional

from newapi_sync.services.constants import VENDOR_REGISTRY, calculate_priority_bonus, round_half_up
from newapi_sync.services.direct_client import DirectApiClient
from newapi_sync.services.exceptions import ProviderError
from newapi_sync.services.model_tester import ModelTester
from newapi_sync.services.pricing import build_price_tiers
from newapi_sync.services.providers.base import ProviderAdapter
from newapi_sync.services.types import AggregationState, TestModelsResult

logger = logging.getLogger(__name__)


class DirectAdapter(ProviderAdapter):
    """Publishes a single ``{vendor}-{provider}`` channel for one vendor key."""

    kind = "direct"
    order = 1

    def __init__(self, provider_config, app_config):
        super().__init__(provider_config, app_config)
        self.vendor = provider_config.vendor
        self.vendor_info = VENDOR_REGISTRY[self.vendor]
        self.base_url = (provider_config.base_url or self.vendor_info.default_base_url).rstrip("/")
        self.client = DirectApiClient(self.base_url, provider_config.api_key, self.vendor_info, name=provider_config.name)
        self.candidates: List[str] = []
        self.result: Optional[TestModelsResult] = None

    async def __aenter__(self):
        await self.client.__aenter__()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.client.__aexit__(exc_type, exc_val, exc_tb)

    async def discover(self) -> None:
        models = await self.client.discover_models()
        logger.info(f"[{self.name}] Discovered {len(models)} models from {self.vendor}")
        self.candidates = self.map_models(self.filter_models(models))
        if not self.candidates:
            raise ProviderError("No models passed filters")
        logger.info(f"[{self.name}] {len(self.candidates)} models after filtering")

    async def health_probe(self) -> None:
        async with ModelTester(self.base_url, self.config.api_key) as tester:
            self.result = await tester.test_models(
                self.candidates,
                self.vendor_info.channel_type,
                use_responses_api=self.vendor == "openai",
            )
        if not self.result.working_models:
            raise ProviderError(f"No working models (0/{len(self.candidates)} passed)")

        avg = f"{round_half_up(self.result.avg_response_time):.0f}ms" if self.result.avg_response_time is not None else "-"
        bonus = calculate_priority_bonus(self.result.avg_response_time)
        logger.info(f"[{self.name}] {len(self.result.working_models)}/{len(self.candidates)} working | {avg} -> +{bonus}")

    def materialize(self, state: AggregationState) -> None:
        base_ratio = self.config.group_ratio if self.config.group_ratio is not None else 1.0
        priority = calculate_priority_bonus(self.result.avg_response_time)
        channel_name = f"{self.vendor}-{self.name}"

        tiers = build_price_tiers(self.result.working_models, lambda _model: base_ratio, self.adjustment)
        published = state.add_tiers(
            tiers,
            channel_name,
            channel_type=lambda _models: self.vendor_info.channel_type,
            key=self.config.api_key,
            base_url=self.base_url,
            provider=self.name,
            description=f"{self.vendor} via {self.name} (direct)",
            priority=priority,
            weight=priority if priority > 0 else 1,
            remark=channel_name,
        )
        if not published:
            raise ProviderError(f"Effective ratio above 1 for every model (base ratio {base_ratio})")

        models = [m for ratio, group in tiers.items() if ratio <= 1 for m in group]
        # Vendor keys have no price list; earlier providers' prices win
        for model in models:
            state.set_default_model(model)

        self.report.groups = len(published)
        self.report.models = len(models)
