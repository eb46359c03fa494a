"""Aggregation pipeline: providers in, one desired target state out."""

import logging
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from newapi_sync.services.config_loader import AppConfig
from newapi_sync.services.constants import (
    AUTO_GROUP_LABEL,
    AUTO_GROUP_NAME,
    ENDPOINT_DEFAULT_PATHS,
    infer_vendor_from_model_name,
    normalize_endpoint_type,
    round_half_up,
    stable_json,
)
from newapi_sync.services.policy import build_responses_policy
from newapi_sync.services.providers import create_adapters
from newapi_sync.services.types import (
    AggregationState,
    Channel,
    DesiredModelSpec,
    DesiredState,
    ManagedOptionMaps,
    ProviderReport,
)

logger = logging.getLogger(__name__)

OPTION_PRECISION = 4


async def run_provider_pipeline(config: AppConfig) -> Tuple[DesiredState, List[ProviderReport]]:
    """Run every configured provider and build the desired target state.

    Providers run one after another in adapter order; later providers may
    price against what earlier ones published.

    Args:
        config: Sync config (already restricted by ``--only`` when given).

    Returns:
        Tuple of (desired state, one report per provider in execution order).
    """
    state = AggregationState()
    reports: List[ProviderReport] = []
    for adapter in create_adapters(config):
        logger.info(f"[{adapter.name}] Processing {adapter.kind} provider")
        reports.append(await adapter.run(state))

    desired = build_desired_state(config, state)
    logger.info(
        f"Desired state: {len(desired.channels)} channels, {len(desired.models)} models, "
        f"{len(desired.options.group_ratio)} groups"
    )
    return desired, reports


def build_endpoint_map(
    endpoints: Optional[Sequence[str]],
    endpoint_paths: Mapping[str, str],
) -> Optional[str]:
    """Serialize a model's endpoint types into the target's ``{type: path}`` JSON.

    Paths come from the upstream's endpoint table, then from the defaults.
    Returns None when no endpoint resolves to a path.
    """
    if not endpoints:
        return None
    mapping: Dict[str, str] = {}
    for endpoint in endpoints:
        normalized = normalize_endpoint_type(endpoint)
        path = endpoint_paths.get(endpoint) or endpoint_paths.get(normalized) or ENDPOINT_DEFAULT_PATHS.get(normalized)
        if path:
            mapping[normalized] = path
    return stable_json(mapping) if mapping else None


def build_desired_state(config: AppConfig, state: AggregationState) -> DesiredState:
    """Fold the aggregation state into the desired target state.

    Args:
        config: Sync config.
        state: State after every adapter ran.

    Returns:
        DesiredState with channels de-duplicated by name (last wins).
    """
    channels_by_name: Dict[str, Channel] = {}
    for spec in state.channels:
        if spec.name in channels_by_name:
            logger.warning(f"Channel name {spec.name} published twice, keeping the last one")
        channels_by_name[spec.name] = spec.to_channel()
    channels = list(channels_by_name.values())

    options = ManagedOptionMaps()
    options.user_usable_groups[AUTO_GROUP_NAME] = AUTO_GROUP_LABEL
    for group in state.merged_groups:
        options.group_ratio[group.name] = round_half_up(group.ratio, OPTION_PRECISION)
        options.user_usable_groups[group.name] = group.description
    options.auto_groups = sorted(options.group_ratio, key=lambda name: options.group_ratio[name])

    published = []
    for channel in channels:
        for model in channel.model_list():
            if model not in published:
                published.append(model)

    for name in published:
        merged = state.merged_models.get(name)
        if merged is None:
            continue
        if merged.model_price is not None and merged.model_price > 0:
            options.model_price[name] = round_half_up(merged.model_price, OPTION_PRECISION)
        else:
            options.model_ratio[name] = round_half_up(merged.ratio, OPTION_PRECISION)
            options.completion_ratio[name] = round_half_up(merged.completion_ratio, OPTION_PRECISION)

    reverse_mapping = {mapped: original for original, mapped in config.model_mapping.items()}
    models: Dict[str, DesiredModelSpec] = {}
    for name in published:
        endpoints = state.model_endpoints.get(name) or state.model_endpoints.get(reverse_mapping.get(name, ""))
        models[name] = DesiredModelSpec(
            model_name=name,
            vendor=infer_vendor_from_model_name(name),
            endpoints=build_endpoint_map(endpoints, state.endpoint_paths),
        )

    return DesiredState(
        channels=channels,
        models=models,
        options=options,
        policy=build_responses_policy(channels, state.model_endpoints),
        managed_providers={p.name for p in config.providers},
        mapping_sources=set(config.model_mapping),
    )
