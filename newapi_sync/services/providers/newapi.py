"""Adapter for upstream new-api gateways."""

import logging
from typing import Dict, List, Optional

import httpx

from newapi_sync.services.constants import (
    apply_model_mapping,
    calculate_priority_bonus,
    infer_channel_type_from_models,
    infer_vendor_from_model_name,
    round_half_up,
    sanitize_group_name,
)
from newapi_sync.services.model_tester import ProbeCallback
from newapi_sync.services.newapi_client import NewApiClient
from newapi_sync.services.pricing import build_price_tiers
from newapi_sync.services.providers.base import ProviderAdapter
from newapi_sync.services.token_manager import FALLBACK_GROUP_NAME, delete_token_by_name, ensure_tokens
from newapi_sync.services.types import (
    AggregationState,
    GroupInfo,
    ProbeResult,
    TestModelsResult,
    TokenResult,
    TokenStats,
    UpstreamPricing,
)

logger = logging.getLogger(__name__)


class CostTracker:
    """Attributes upstream balance changes to probe traffic.

    Modes: ``off`` never reads the balance, ``group`` samples once after
    each group's probes, ``model`` samples after every single probe.
    """

    def __init__(self, client: NewApiClient, mode: str = "group"):
        self.client = client
        self.mode = mode
        self.balance: Optional[float] = None
        self.total = 0.0
        self._group_cost = 0.0

    @property
    def enabled(self) -> bool:
        return self.mode != "off" and self.balance is not None

    async def start(self) -> None:
        if self.mode == "off":
            return
        self.balance = await self.client.fetch_balance()
        if self.balance is not None:
            logger.info(f"[{self.client.name}] Balance: ${self.balance:.4f}")

    async def _sample(self) -> float:
        if self.balance is None:
            return 0.0
        current = await self.client.fetch_balance()
        if current is None:
            return 0.0
        cost = self.balance - current
        self.balance = current
        if cost <= 0:
            return 0.0
        self.total += cost
        self._group_cost += cost
        return cost

    def begin_group(self) -> None:
        self._group_cost = 0.0

    def probe_callback(self) -> Optional[ProbeCallback]:
        if self.mode != "model" or self.balance is None:
            return None

        async def on_probe(result: ProbeResult) -> None:
            cost = await self._sample()
            logger.debug(f"[{self.client.name}] Probe {result.model} cost ${cost:.6f}")

        return on_probe

    async def end_group(self) -> float:
        if self.mode == "group":
            await self._sample()
        return self._group_cost


class NewApiAdapter(ProviderAdapter):
    """Publishes one channel per upstream group (or per price tier of a group)."""

    kind = "newapi"
    order = 0

    def __init__(self, provider_config, app_config):
        super().__init__(provider_config, app_config)
        self.client = NewApiClient(
            provider_config.base_url,
            provider_config.system_access_token,
            provider_config.user_id,
            name=provider_config.name,
        )
        self.pricing: Optional[UpstreamPricing] = None
        self.model_endpoints: Dict[str, List[str]] = {}
        self.groups: List[GroupInfo] = []
        self.candidates: Dict[str, List[str]] = {}
        self.tokens = TokenResult()
        self.results: Dict[str, TestModelsResult] = {}

    async def __aenter__(self):
        await self.client.__aenter__()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.client.__aexit__(exc_type, exc_val, exc_tb)

    def filter_groups(self, groups: List[GroupInfo]) -> List[GroupInfo]:
        """Apply the group allow-list, the vendor allow-list and the blacklist."""
        enabled_groups = self.config.enabled_groups or []
        vendors = {v.lower() for v in self.config.enabled_vendors or []}
        kept = []
        for group in groups:
            if enabled_groups and group.name not in enabled_groups:
                continue
            if vendors and not any(infer_vendor_from_model_name(m) in vendors for m in group.models):
                continue
            if self.is_blacklisted(group.name) or self.is_blacklisted(group.description):
                logger.debug(f"[{self.name}] Group {group.name} is blacklisted")
                continue
            kept.append(group)
        return kept

    async def discover(self) -> None:
        self.pricing = await self.client.fetch_pricing()
        self.model_endpoints = {
            m.name: list(m.supported_endpoints) for m in self.pricing.models if m.supported_endpoints
        }

        groups = self.filter_groups(self.pricing.groups)

        # Groups that stay above 1.0 even at the best adjustment never get a token
        multiplier = self.adjustment.min_multiplier()
        affordable = []
        for group in groups:
            if group.ratio * multiplier > 1:
                logger.info(
                    f"[{self.name}] Skipping group {group.name}: "
                    f"ratio {group.ratio} x {multiplier:.2f} = {group.ratio * multiplier:.2f} > 1"
                )
                continue
            affordable.append(group)
        self.groups = affordable

        for group in self.groups:
            models = self.filter_models(group.models, self.model_endpoints, self.config.enabled_vendors)
            self.candidates[group.name] = self.map_models(models)

        self.tokens = await ensure_tokens(self.client, self.groups, self.name)
        self.report.tokens = TokenStats(
            created=self.tokens.created,
            existing=self.tokens.existing,
            deleted=self.tokens.deleted,
        )

    async def health_probe(self) -> None:
        tracker = CostTracker(self.client, self.config.probe_cost_sampling)
        await tracker.start()
        failed_groups: List[str] = []

        for group in self.groups:
            models = self.candidates.get(group.name) or []
            if not models:
                logger.debug(f"[{self.name}/{group.name}] No models left after filtering")
                continue
            api_key = self.tokens.tokens.get(group.name)
            if not api_key:
                logger.warning(f"[{self.name}/{group.name}] No token available, group skipped")
                continue

            tracker.begin_group()
            result = await self.client.test_models_with_key(
                api_key,
                models,
                group.channel_type,
                on_probe=tracker.probe_callback(),
            )
            cost = await tracker.end_group()

            avg = f"{round_half_up(result.avg_response_time):.0f}ms" if result.avg_response_time is not None else "-"
            cost_str = f" | ${cost:.4f}" if tracker.enabled else ""
            if not result.working_models:
                logger.info(f"[{self.name}/{group.name}] 0/{len(models)} | {avg}{cost_str} | skip")
                failed_groups.append(group.name)
                continue

            failed = [m for m in models if m not in result.working_models]
            if failed:
                logger.info(f"[{self.name}/{group.name}] Failed: {', '.join(failed)}")
            bonus = calculate_priority_bonus(result.avg_response_time)
            logger.info(
                f"[{self.name}/{group.name}] {len(result.working_models)}/{len(models)} | {avg} -> +{bonus}{cost_str}"
            )
            self.results[group.name] = result

        for group_name in failed_groups:
            token_name = self.tokens.names.get(group_name)
            if not token_name:
                continue
            try:
                if await delete_token_by_name(self.client, token_name):
                    self.report.tokens.deleted += 1
            except (httpx.HTTPError, ValueError) as e:
                logger.warning(f"[{self.name}] Failed to delete token {token_name}: {e}")

        if tracker.enabled:
            self.report.test_cost = tracker.total
            if tracker.total > 0:
                logger.info(
                    f"[{self.name}] Final balance: ${tracker.balance:.4f} | Total test cost: ${tracker.total:.4f}"
                )

    def materialize(self, state: AggregationState) -> None:
        state.record_endpoints(self.mapped_endpoints(self.model_endpoints), self.pricing.endpoint_paths)

        published_models = set()
        for group in self.groups:
            result = self.results.get(group.name)
            if result is None:
                continue

            priority = calculate_priority_bonus(result.avg_response_time)
            weight = priority if priority > 0 else 1
            tiers = build_price_tiers(
                result.working_models,
                lambda _model, ratio=group.ratio: ratio,
                self.adjustment,
                state.model_endpoints,
            )
            label = sanitize_group_name(group.name) or FALLBACK_GROUP_NAME
            published = state.add_tiers(
                tiers,
                f"{label}-{self.name}",
                channel_type=lambda models: infer_channel_type_from_models(models, state.model_endpoints),
                key=self.tokens.tokens[group.name],
                base_url=self.config.base_url,
                provider=self.name,
                description=f"{label} via {self.name}",
                priority=priority,
                weight=weight,
                remark=f"{group.name}-{self.name}",
            )
            if not published:
                logger.info(f"[{self.name}/{group.name}] Every tier is above ratio 1, not published")
                continue
            self.report.groups += 1
            for channel in state.channels:
                if channel.provider == self.name and channel.name in published:
                    published_models.update(channel.models)

        for model in self.pricing.models:
            name = apply_model_mapping(model.name, self.app_config.model_mapping)
            if name not in published_models:
                continue
            if model.ratio <= 0 and model.model_price is None:
                continue
            state.fold_model(name, model.ratio, model.completion_ratio or 1, model.model_price)

        self.report.models = len(published_models)
