"""Diff engine: desired state vs. target snapshot.

Pure functions only. Ownership is decided by the channel ``tag`` (the name
of the provider that published it): only channels tagged with a provider in
the managed set are ever updated or deleted, and everything an out-of-scope
channel still references (groups, models, option entries) is protected.
"""

import logging
from dataclasses import replace
from typing import Any, Dict, Iterable, List, Optional, Set

from newapi_sync.services.config_loader import AppConfig
from newapi_sync.services.constants import (
    AUTO_GROUP_LABEL,
    AUTO_GROUP_NAME,
    AUTO_GROUPS_KEY,
    COMPLETION_RATIO_KEY,
    DEFAULT_USE_AUTO_GROUP_KEY,
    GROUP_RATIO_KEY,
    MODEL_PRICE_KEY,
    MODEL_RATIO_KEY,
    RESPONSES_POLICY_KEY,
    USER_USABLE_GROUPS_KEY,
    VENDOR_MATCHERS,
    parse_json,
    stable_json,
)
from newapi_sync.services.policy import merge_responses_policy
from newapi_sync.services.types import (
    Channel,
    DesiredState,
    DiffOperation,
    ModelMeta,
    SyncDiff,
    TargetSnapshot,
    Vendor,
)

logger = logging.getLogger(__name__)


def resolve_managed_providers(config: Optional[AppConfig], desired: DesiredState) -> Set[str]:
    if config is not None and config.only_providers:
        return set(config.only_providers)
    return set(desired.managed_providers)


def is_managed(channel: Channel, managed_providers: Set[str]) -> bool:
    return bool(channel.tag) and channel.tag in managed_providers


def normalize_channel(channel: Channel) -> Dict[str, Any]:
    """Comparable view of a channel without the target-assigned id."""
    mapping = channel.model_mapping if channel.model_mapping and channel.model_mapping != "{}" else None
    return {
        "name": channel.name,
        "type": int(channel.type),
        "key": channel.key,
        "base_url": (channel.base_url or "").rstrip("/"),
        "models": channel.models,
        "group": channel.group,
        "priority": channel.priority,
        "weight": channel.weight,
        "status": channel.status,
        "tag": channel.tag or None,
        "remark": channel.remark or None,
        "model_mapping": mapping,
    }


def channel_differs(existing: Channel, desired: Channel) -> bool:
    """Compare channels field by field.

    Targets that hide channel keys in listings return an empty key; the key
    is only compared when the target reported one.
    """
    left = normalize_channel(existing)
    right = normalize_channel(desired)
    if not existing.key:
        left.pop("key")
        right.pop("key")
    return left != right


def merge_protected(existing: Any, guard: Set[str], desired: Dict[str, Any]) -> Dict[str, Any]:
    """Keep existing entries whose key is in ``guard``, then overlay ``desired``."""
    merged: Dict[str, Any] = {}
    if isinstance(existing, dict):
        for key, value in existing.items():
            if key in guard:
                merged[key] = value
    merged.update(desired)
    return merged


def build_vendor_id_map(vendors: Iterable[Vendor]) -> Dict[str, int]:
    """Map lower-case vendor keys to target vendor ids.

    Vendors are matched by exact lower-case name first. Vendors without an
    exact match are then looked up by their display-name aliases, since
    targets often label vendors in Chinese.
    """
    vendors = list(vendors)
    mapping = {vendor.name.lower(): vendor.id for vendor in vendors}
    for key, matcher in VENDOR_MATCHERS.items():
        if key in mapping or not matcher.name_aliases:
            continue
        for alias in matcher.name_aliases:
            match = next((v for v in vendors if alias.lower() in v.name.lower()), None)
            if match is not None:
                mapping[key] = match.id
                break
    return mapping


def _values_equal(existing: str, desired: str) -> bool:
    """Compare option values by their decoded JSON, falling back to text."""
    if existing == desired:
        return True
    sentinel = object()
    left = parse_json(existing, sentinel)
    right = parse_json(desired, sentinel)
    if left is sentinel or right is sentinel:
        return existing.strip() == desired.strip()
    return left == right


def _endpoints_equal(existing: Optional[str], desired: Optional[str]) -> bool:
    if not existing and not desired:
        return True
    if not existing or not desired:
        return False
    return _values_equal(existing, desired)


def protected_models_of(channels: Iterable[Channel]) -> Set[str]:
    models: Set[str] = set()
    for channel in channels:
        models.update(channel.model_list())
    return models


def build_option_values(desired: DesiredState, snapshot: TargetSnapshot, managed_providers: Set[str]) -> Dict[str, str]:
    """Compute the final value of every managed option.

    Entries referenced by out-of-scope channels are carried over from the
    target's current values; desired entries are overlaid on top.
    """
    unmanaged = [c for c in snapshot.channels if not is_managed(c, managed_providers)]
    unmanaged_groups = {c.group for c in unmanaged if c.group}
    protected_models = protected_models_of(unmanaged)
    current = snapshot.options
    maps = desired.options

    group_ratio = merge_protected(parse_json(current.get(GROUP_RATIO_KEY), {}), unmanaged_groups, maps.group_ratio)
    user_groups = merge_protected(
        parse_json(current.get(USER_USABLE_GROUPS_KEY), {}),
        unmanaged_groups,
        {AUTO_GROUP_NAME: AUTO_GROUP_LABEL, **maps.user_usable_groups},
    )

    current_auto = parse_json(current.get(AUTO_GROUPS_KEY), [])
    if not isinstance(current_auto, list):
        current_auto = []
    auto_groups: List[str] = []
    for name in [g for g in current_auto if g in unmanaged_groups] + maps.auto_groups:
        if name not in auto_groups:
            auto_groups.append(name)
    auto_groups.sort(key=lambda name: group_ratio.get(name, 1))

    model_ratio = merge_protected(parse_json(current.get(MODEL_RATIO_KEY), {}), protected_models, maps.model_ratio)
    completion_ratio = merge_protected(
        parse_json(current.get(COMPLETION_RATIO_KEY), {}), protected_models, maps.completion_ratio
    )
    model_price = merge_protected(parse_json(current.get(MODEL_PRICE_KEY), {}), protected_models, maps.model_price)

    policy = merge_responses_policy(parse_json(current.get(RESPONSES_POLICY_KEY)), desired.policy, unmanaged)

    return {
        GROUP_RATIO_KEY: stable_json(group_ratio),
        USER_USABLE_GROUPS_KEY: stable_json(user_groups),
        AUTO_GROUPS_KEY: stable_json(auto_groups),
        DEFAULT_USE_AUTO_GROUP_KEY: "true" if maps.default_use_auto_group else "false",
        MODEL_RATIO_KEY: stable_json(model_ratio),
        COMPLETION_RATIO_KEY: stable_json(completion_ratio),
        MODEL_PRICE_KEY: stable_json(model_price),
        RESPONSES_POLICY_KEY: stable_json(policy.to_dict()),
    }


def diff_channels(desired: DesiredState, snapshot: TargetSnapshot, managed_providers: Set[str]) -> List[DiffOperation]:
    operations: List[DiffOperation] = []
    existing_by_name: Dict[str, Channel] = {}
    duplicates: List[Channel] = []
    for channel in snapshot.channels:
        if not is_managed(channel, managed_providers):
            continue
        if channel.name in existing_by_name:
            duplicates.append(channel)
            continue
        existing_by_name[channel.name] = channel

    desired_names = set()
    for channel in desired.channels:
        desired_names.add(channel.name)
        existing = existing_by_name.get(channel.name)
        if existing is None:
            operations.append(DiffOperation("create", channel.name, value=channel))
            continue
        if channel_differs(existing, channel):
            value = replace(channel, id=existing.id)
            operations.append(DiffOperation("update", channel.name, value=value, existing=existing))

    for existing in existing_by_name.values():
        if existing.name not in desired_names:
            operations.append(DiffOperation("delete", existing.name, existing=existing))
    # Extra in-scope channels sharing a name are always removed
    for existing in duplicates:
        operations.append(DiffOperation("delete", existing.name, existing=existing))
    return operations


def diff_models(desired: DesiredState, snapshot: TargetSnapshot, managed_providers: Set[str]) -> List[DiffOperation]:
    operations: List[DiffOperation] = []
    vendor_ids = build_vendor_id_map(snapshot.vendors)
    existing_by_name = {model.model_name: model for model in snapshot.models}

    for name, spec in desired.models.items():
        vendor_id = vendor_ids.get(spec.vendor.lower()) if spec.vendor else None
        target = ModelMeta(
            model_name=spec.model_name,
            vendor_id=vendor_id,
            endpoints=spec.endpoints,
            status=1,
            sync_official=1,
        )
        existing = existing_by_name.get(name)
        if existing is None:
            operations.append(DiffOperation("create", name, value=target))
            continue

        needs_update = (
            (existing.vendor_id or None) != target.vendor_id
            or not _endpoints_equal(existing.endpoints, target.endpoints)
            or existing.sync_official != 1
            or existing.status != 1
        )
        if needs_update:
            target.id = existing.id
            operations.append(DiffOperation("update", name, value=target, existing=existing))

    protected = protected_models_of(c for c in snapshot.channels if not is_managed(c, managed_providers))
    for existing in snapshot.models:
        name = existing.model_name
        if name in desired.models or name in protected:
            continue
        if existing.sync_official != 1 and name not in desired.mapping_sources:
            continue
        if not existing.id:
            continue
        operations.append(DiffOperation("delete", name, existing=existing))
    return operations


def diff_options(desired: DesiredState, snapshot: TargetSnapshot, managed_providers: Set[str]) -> List[DiffOperation]:
    operations: List[DiffOperation] = []
    for key, value in build_option_values(desired, snapshot, managed_providers).items():
        existing = snapshot.options.get(key)
        if existing is None:
            operations.append(DiffOperation("create", key, value=value))
        elif not _values_equal(existing, value):
            operations.append(DiffOperation("update", key, value=value, existing=existing))
    return operations


def build_sync_diff(config: Optional[AppConfig], desired: DesiredState, snapshot: TargetSnapshot) -> SyncDiff:
    """Compute the operations that bring the target to the desired state.

    Args:
        config: Sync config; its ``only_providers`` narrows the managed set.
        desired: Desired state from the pipeline.
        snapshot: Current target state.

    Returns:
        SyncDiff with channel, model and option operations. Orphan cleanup
        is always requested.
    """
    managed_providers = resolve_managed_providers(config, desired)
    diff = SyncDiff(
        channels=diff_channels(desired, snapshot, managed_providers),
        models=diff_models(desired, snapshot, managed_providers),
        options=diff_options(desired, snapshot, managed_providers),
        cleanup_orphans=True,
    )
    logger.info(
        f"Diff: channels {len(diff.channels)}, models {len(diff.models)}, options {len(diff.options)} "
        f"(managed: {', '.join(sorted(managed_providers)) or '-'})"
    )
    return diff
