"""Parsers for the pricing payloads exposed by new-api style gateways.

Two payload shapes are in circulation and the version is not advertised,
so the parser is chosen by probing the structure of the payload:

* array shape: ``data`` is a list of models with flat ratios, and the group
  table lives at the top level (``usable_group``, ``group_ratio``).
* keyed shape: ``data`` is an object with ``model_group`` (per-group
  display name, ratio and model prices) and ``model_completion_ratio``.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Sequence

from newapi_sync.services.constants import ChannelType, infer_channel_type
from newapi_sync.services.exceptions import ApiResponseError
from newapi_sync.services.types import GroupInfo, ModelInfo, UpstreamPricing

logger = logging.getLogger(__name__)


def _endpoint_paths(payload: Dict[str, Any]) -> Dict[str, str]:
    """Flatten ``supported_endpoint`` ({type: {path, method}}) into {type: path}."""
    paths: Dict[str, str] = {}
    for endpoint, info in (payload.get("supported_endpoint") or {}).items():
        if isinstance(info, dict) and info.get("path"):
            paths[endpoint] = info["path"]
        elif isinstance(info, str):
            paths[endpoint] = info
    return paths


class PricingParser(ABC):
    """Strategy for one pricing payload shape."""

    name = ""

    @abstractmethod
    def matches(self, payload: Dict[str, Any]) -> bool:
        """Return True if this parser understands the payload."""

    @abstractmethod
    def parse(self, payload: Dict[str, Any]) -> UpstreamPricing:
        """Parse the full response body (envelope included)."""


class ArrayPricingParser(PricingParser):
    """Array of models with flat ratios and endpoint types."""

    name = "array"

    def matches(self, payload: Dict[str, Any]) -> bool:
        return isinstance(payload.get("data"), list)

    def parse(self, payload: Dict[str, Any]) -> UpstreamPricing:
        entries = payload.get("data") or []
        usable_groups = payload.get("usable_group") or {}
        group_ratios = payload.get("group_ratio") or {}

        group_models: Dict[str, List[str]] = {}
        group_endpoints: Dict[str, set] = {}
        models: List[ModelInfo] = []
        model_ratios: Dict[str, float] = {}
        completion_ratios: Dict[str, float] = {}

        for entry in entries:
            name = entry.get("model_name")
            if not name:
                continue
            enable_groups = entry.get("enable_groups") or []
            endpoints = entry.get("supported_endpoint_types") or []
            for group in enable_groups:
                group_models.setdefault(group, [])
                if name not in group_models[group]:
                    group_models[group].append(name)
                group_endpoints.setdefault(group, set()).update(endpoints)

            ratio = entry.get("model_ratio") or 0
            completion = entry.get("completion_ratio") or 0
            price = entry.get("model_price") or 0
            models.append(ModelInfo(
                name=name,
                ratio=ratio,
                completion_ratio=completion,
                groups=list(enable_groups),
                vendor_id=entry.get("vendor_id"),
                supported_endpoints=list(endpoints) or None,
                model_price=price if entry.get("quota_type") == 1 and price > 0 else None,
            ))
            if ratio > 0:
                model_ratios[name] = ratio
            if completion > 0:
                completion_ratios[name] = completion

        groups = [
            GroupInfo(
                name=name,
                description=description or name,
                ratio=group_ratios.get(name, 1),
                models=group_models.get(name, []),
                channel_type=infer_channel_type(group_endpoints.get(name, ())),
            )
            for name, description in usable_groups.items()
            if name
        ]

        vendors = {v["id"]: v.get("name", "") for v in payload.get("vendors") or [] if "id" in v}

        return UpstreamPricing(
            groups=groups,
            models=models,
            group_ratios=dict(group_ratios),
            model_ratios=model_ratios,
            completion_ratios=completion_ratios,
            vendor_id_to_name=vendors,
            endpoint_paths=_endpoint_paths(payload),
            source_format=self.name,
        )


class KeyedPricingParser(PricingParser):
    """Object keyed by group, without endpoint data."""

    name = "keyed"

    def matches(self, payload: Dict[str, Any]) -> bool:
        data = payload.get("data")
        return isinstance(data, dict) and isinstance(data.get("model_group"), dict)

    def parse(self, payload: Dict[str, Any]) -> UpstreamPricing:
        data = payload["data"]
        completion = dict(data.get("model_completion_ratio") or {})
        group_ratios: Dict[str, float] = {}
        model_ratios: Dict[str, float] = {}
        groups: List[GroupInfo] = []
        models: Dict[str, ModelInfo] = {}

        for group_name, group in data["model_group"].items():
            if not group_name:
                continue
            prices = group.get("ModelPrice") or {}
            ratio = group.get("GroupRatio", 1)
            group_ratios[group_name] = ratio
            for model_name, pricing in prices.items():
                price = (pricing or {}).get("price") or 0
                if price > 0 and model_name not in model_ratios:
                    model_ratios[model_name] = price
                if model_name not in models:
                    models[model_name] = ModelInfo(
                        name=model_name,
                        ratio=price or 1,
                        completion_ratio=completion.get(model_name, 1),
                    )
                models[model_name].groups.append(group_name)
            groups.append(GroupInfo(
                name=group_name,
                description=group.get("DisplayName") or group_name,
                ratio=ratio,
                models=list(prices),
                channel_type=ChannelType.OPENAI,
            ))

        return UpstreamPricing(
            groups=groups,
            models=list(models.values()),
            group_ratios=group_ratios,
            model_ratios=model_ratios,
            completion_ratios=completion,
            endpoint_paths=_endpoint_paths(payload),
            source_format=self.name,
        )


PARSERS: Sequence[PricingParser] = (ArrayPricingParser(), KeyedPricingParser())


def parse_pricing(payload: Dict[str, Any]) -> UpstreamPricing:
    """Parse a pricing response body with the first parser that recognizes it.

    Raises:
        ApiResponseError: If no parser recognizes the payload.
    """
    for parser in PARSERS:
        if parser.matches(payload):
            pricing = parser.parse(payload)
            logger.debug(f"Parsed {parser.name} pricing: {len(pricing.groups)} groups, {len(pricing.models)} models")
            return pricing
    raise ApiResponseError("Unrecognized pricing payload shape")
