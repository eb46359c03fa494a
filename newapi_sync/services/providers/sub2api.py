"""Adapter for sub2api account pools.

sub2api has no price list of its own. Its groups are priced relative to
whatever the earlier providers already published for the same models,
undercut by ``priceDiscount``, which is why this adapter runs last.
"""

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import httpx

from newapi_sync.services.constants import (
    VENDOR_TO_SUB2API_PLATFORMS,
    calculate_priority_bonus,
    sanitize_group_name,
    sub2api_platform_to_channel_type,
)
from newapi_sync.services.exceptions import ProviderError
from newapi_sync.services.model_tester import ModelTester
from newapi_sync.services.pricing import build_price_tiers
from newapi_sync.services.providers.base import ProviderAdapter
from newapi_sync.services.sub2api_client import Sub2ApiClient
from newapi_sync.services.types import AggregationState, TestModelsResult

logger = logging.getLogger(__name__)


@dataclass
class Sub2ApiTarget:
    """One sub2api group reachable with one gateway key."""
    name: str
    platform: str
    api_key: str
    candidates: List[str] = field(default_factory=list)
    result: Optional[TestModelsResult] = None


class Sub2ApiAdapter(ProviderAdapter):
    """Publishes one channel per sub2api group."""

    kind = "sub2api"
    order = 2

    def __init__(self, provider_config, app_config):
        super().__init__(provider_config, app_config)
        self.client = Sub2ApiClient(
            provider_config.base_url,
            admin_api_key=provider_config.admin_api_key,
            name=provider_config.name,
        )
        self.targets: List[Sub2ApiTarget] = []

    async def __aenter__(self):
        await self.client.__aenter__()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.client.__aexit__(exc_type, exc_val, exc_tb)

    def enabled_platforms(self) -> Optional[set]:
        if not self.config.enabled_vendors:
            return None
        platforms = set()
        for vendor in self.config.enabled_vendors:
            vendor = vendor.lower()
            platforms.update(VENDOR_TO_SUB2API_PLATFORMS.get(vendor, (vendor,)))
        return platforms

    async def discover(self) -> None:
        if self.config.groups:
            await self._discover_configured_groups()
        else:
            await self._discover_admin_groups()

        self.targets = [t for t in self.targets if t.candidates]
        if not self.targets:
            raise ProviderError("No groups with candidate models")

    async def _discover_configured_groups(self) -> None:
        platforms = self.enabled_platforms()
        for group in self.config.groups:
            if platforms is not None and group.platform not in platforms:
                continue
            label = group.name or group.platform
            try:
                models = await self.client.list_gateway_models(group.key, group.platform)
            except (httpx.HTTPError, ValueError) as e:
                logger.warning(f"[{self.name}] Failed to list models for group {label}: {e}")
                continue
            self.targets.append(Sub2ApiTarget(
                name=label,
                platform=group.platform,
                api_key=group.key,
                candidates=self.map_models(self.filter_models(models)),
            ))

    async def _discover_admin_groups(self) -> None:
        platforms = self.enabled_platforms()
        groups = [g for g in await self.client.list_groups() if g.status == "active"]
        if platforms is not None:
            groups = [g for g in groups if g.platform in platforms]
        groups = [g for g in groups if not self.is_blacklisted(g.name)]
        if not groups:
            raise ProviderError("No active groups on sub2api")

        keyed = []
        for group in groups:
            api_key = await self.client.get_group_api_key(group.id)
            if not api_key:
                logger.warning(f"[{self.name}] No API key for group \"{group.name}\", skipping")
                continue
            keyed.append((group, api_key))
        if not keyed:
            raise ProviderError("No groups with active API keys")
        logger.info(f"[{self.name}] {len(keyed)} groups with API keys")

        accounts = await self.client.list_accounts()
        active = [a for a in accounts if a.status == "active"]
        logger.info(f"[{self.name}] {len(active)}/{len(accounts)} active accounts")

        platform_models: Dict[str, List[str]] = {}
        for account in active:
            models = platform_models.setdefault(account.platform, [])
            for model in await self.client.get_account_models(account.id):
                if model not in models:
                    models.append(model)

        for group, api_key in keyed:
            models = platform_models.get(group.platform) or []
            if not models:
                logger.warning(f"[{self.name}] No models for group \"{group.name}\"")
            self.targets.append(Sub2ApiTarget(
                name=group.name,
                platform=group.platform,
                api_key=api_key,
                candidates=self.map_models(self.filter_models(models)),
            ))

    async def health_probe(self) -> None:
        for target in self.targets:
            async with ModelTester(self.config.base_url, target.api_key) as tester:
                target.result = await tester.test_models(
                    target.candidates,
                    sub2api_platform_to_channel_type(target.platform),
                    use_responses_api=target.platform == "openai",
                )
            working = len(target.result.working_models)
            if not working:
                logger.warning(
                    f"[{self.name}] No working models for group \"{target.name}\" (0/{len(target.candidates)} passed)"
                )
                continue
            logger.info(f"[{self.name}/{target.platform}] {working}/{len(target.candidates)} models working")

        if not any(t.result and t.result.working_models for t in self.targets):
            raise ProviderError("No groups produced working channels")

    def channel_label(self, target: Sub2ApiTarget) -> str:
        """Platform name, or the group name when several groups share a platform."""
        if self.config.groups:
            return sanitize_group_name(target.name) or target.platform
        platform_counts = Counter(t.platform for t in self.targets)
        if platform_counts[target.platform] > 1:
            return sanitize_group_name(target.name) or target.platform
        return target.platform

    def reference_ratio(self, state: AggregationState, model: str) -> float:
        cheapest = state.cheapest_group_ratio_for(model, exclude_provider=self.name)
        return cheapest if cheapest is not None else 1.0

    def materialize(self, state: AggregationState) -> None:
        discount = self.config.price_discount
        published_models = set()

        for target in self.targets:
            if not target.result or not target.result.working_models:
                continue
            label = self.channel_label(target)
            channel_name = f"{self.name}-{label}"
            priority = calculate_priority_bonus(target.result.avg_response_time)
            channel_type = sub2api_platform_to_channel_type(target.platform)

            tiers = build_price_tiers(
                target.result.working_models,
                lambda model: self.reference_ratio(state, model),
                self.adjustment,
                discount=discount,
            )
            published = state.add_tiers(
                tiers,
                channel_name,
                channel_type=lambda _models, value=channel_type: value,
                key=target.api_key,
                base_url=self.config.base_url,
                provider=self.name,
                description=f"{target.platform} via {self.name}",
                priority=priority,
                weight=priority if priority > 0 else 1,
                remark=channel_name,
            )
            if not published:
                continue
            self.report.groups += 1
            for ratio in sorted(tiers):
                if ratio <= 1:
                    published_models.update(tiers[ratio])
            logger.info(
                f"[{self.name}/{label}] {len(target.result.working_models)} models in {len(published)} tier(s), "
                f"{discount * 100:.0f}% below reference"
            )

        for model in published_models:
            state.set_default_model(model)

        self.report.models = len(published_models)
