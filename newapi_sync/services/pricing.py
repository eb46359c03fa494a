"""Price adjustment resolution and price tiering."""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Dict, Mapping, Optional, Sequence, Union

from newapi_sync.services.constants import (
    infer_vendor_from_model_name,
    matches_glob_pattern,
    model_dialect,
    round_half_up,
)

logger = logging.getLogger(__name__)

DEFAULT_KEY = "default"
RATIO_PRECISION = 6


class PriceAdjustment(ABC):
    """Surcharge applied on top of a base ratio: ``ratio * (1 + value)``."""

    @abstractmethod
    def resolve(self, model: str, endpoints: Optional[Sequence[str]] = None) -> float:
        """Return the adjustment that applies to ``model``."""

    @abstractmethod
    def min_value(self) -> float:
        """Return the most favourable adjustment any model could get."""

    def min_multiplier(self) -> float:
        return 1 + self.min_value()


@dataclass(frozen=True)
class FlatAdjustment(PriceAdjustment):
    value: float = 0.0

    def resolve(self, model: str, endpoints: Optional[Sequence[str]] = None) -> float:
        return self.value

    def min_value(self) -> float:
        return self.value


@dataclass(frozen=True)
class PerKeyAdjustment(PriceAdjustment):
    """Adjustment keyed by model pattern, vendor or model type.

    Lookup order: exact model name or glob key, vendor key (e.g.
    ``anthropic``), model-type key (``openai``, ``anthropic``, ``gemini``),
    then ``default``.
    """
    overrides: Mapping[str, float] = field(default_factory=dict)
    default: float = 0.0

    def resolve(self, model: str, endpoints: Optional[Sequence[str]] = None) -> float:
        name = model.lower()
        if name in self.overrides:
            return self.overrides[name]
        for key, value in self.overrides.items():
            if "*" in key and matches_glob_pattern(name, key):
                return value

        vendor = infer_vendor_from_model_name(model)
        if vendor and vendor in self.overrides:
            return self.overrides[vendor]

        dialect = model_dialect(model, endpoints)
        if dialect in self.overrides:
            return self.overrides[dialect]

        return self.default

    def min_value(self) -> float:
        return min([self.default, *self.overrides.values()])


def parse_price_adjustment(raw: Union[None, float, Mapping[str, float]]) -> PriceAdjustment:
    """Build a PriceAdjustment from its configured form.

    Args:
        raw: None, a number, or a map that contains a ``default`` key.

    Returns:
        The matching PriceAdjustment variant.
    """
    if raw is None:
        return FlatAdjustment(0.0)
    if isinstance(raw, (int, float)):
        return FlatAdjustment(float(raw))
    values = {k.lower(): float(v) for k, v in raw.items()}
    default = values.pop(DEFAULT_KEY, 0.0)
    return PerKeyAdjustment(overrides=values, default=default)


def round_ratio(value: float, places: int = RATIO_PRECISION) -> float:
    return round_half_up(value, places)


def effective_ratio(base_ratio: float, adjustment: float, discount: float = 0.0) -> float:
    return round_ratio(base_ratio * (1 + adjustment) * (1 - discount))


def build_price_tiers(
    models: Sequence[str],
    base_ratio: Callable[[str], float],
    adjustment: PriceAdjustment,
    model_endpoints: Optional[Mapping[str, Sequence[str]]] = None,
    discount: float = 0.0,
) -> Dict[float, list]:
    """Group models by the effective ratio they would be sold at.

    Args:
        models: Working model names, in publication order.
        base_ratio: Base group ratio for a model.
        adjustment: Price adjustment of the provider.
        model_endpoints: Optional endpoint types per model, for model-type keys.
        discount: Extra fractional discount applied after the adjustment.

    Returns:
        Map of effective ratio to the models sold at that ratio.
    """
    tiers: Dict[float, list] = {}
    for model in models:
        endpoints = (model_endpoints or {}).get(model)
        ratio = effective_ratio(base_ratio(model), adjustment.resolve(model, endpoints), discount)
        tiers.setdefault(ratio, []).append(model)
    return tiers
