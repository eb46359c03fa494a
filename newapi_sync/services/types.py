"""Data structures flowing through the sync pipeline.

Upstream data (groups, models, tokens) is parsed into these types by the
clients, folded into an ``AggregationState`` by the provider adapters, turned
into a ``DesiredState`` by the pipeline and compared against a
``TargetSnapshot`` by the diff engine.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from newapi_sync.services.constants import ChannelType, split_models


@dataclass
class GroupInfo:
    """One upstream routing/pricing group."""
    name: str
    description: str
    ratio: float
    models: List[str] = field(default_factory=list)
    channel_type: int = ChannelType.OPENAI


@dataclass
class ModelInfo:
    """One upstream model with its pricing."""
    name: str
    ratio: float
    completion_ratio: float
    groups: List[str] = field(default_factory=list)
    vendor_id: Optional[int] = None
    supported_endpoints: Optional[List[str]] = None
    model_price: Optional[float] = None  # fixed per-request price, when billed per call


@dataclass
class UpstreamPricing:
    """Normalized pricing catalog of one upstream."""
    groups: List[GroupInfo]
    models: List[ModelInfo]
    group_ratios: Dict[str, float] = field(default_factory=dict)
    model_ratios: Dict[str, float] = field(default_factory=dict)
    completion_ratios: Dict[str, float] = field(default_factory=dict)
    vendor_id_to_name: Dict[int, str] = field(default_factory=dict)
    endpoint_paths: Dict[str, str] = field(default_factory=dict)
    source_format: str = ""


@dataclass
class UpstreamToken:
    """An API token on an upstream gateway."""
    id: int
    name: str
    key: str
    group: str = ""
    status: int = 1

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "UpstreamToken":
        return cls(
            id=data.get("id", 0),
            name=data.get("name", ""),
            key=data.get("key", ""),
            group=data.get("group") or "",
            status=data.get("status", 1),
        )


@dataclass
class Channel:
    """A channel as stored on the target instance."""
    name: str
    type: int
    key: str
    base_url: str
    models: str
    group: str
    priority: int = 0
    weight: int = 1
    status: int = 1
    tag: Optional[str] = None
    remark: Optional[str] = None
    model_mapping: Optional[str] = None
    id: Optional[int] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Channel":
        return cls(
            id=data.get("id"),
            name=data.get("name", ""),
            type=data.get("type", ChannelType.OPENAI),
            key=data.get("key") or "",
            base_url=data.get("base_url") or "",
            models=data.get("models") or "",
            group=data.get("group") or "",
            priority=data.get("priority") or 0,
            weight=data.get("weight") if data.get("weight") is not None else 1,
            status=data.get("status", 1),
            tag=data.get("tag") or None,
            remark=data.get("remark") or None,
            model_mapping=data.get("model_mapping") or None,
        )

    def to_payload(self, include_id: bool = True) -> Dict[str, Any]:
        """Serialize for the target channel API."""
        payload = {
            "name": self.name,
            "type": int(self.type),
            "key": self.key,
            "base_url": self.base_url,
            "models": self.models,
            "group": self.group,
            "priority": self.priority,
            "weight": self.weight,
            "status": self.status,
            "tag": self.tag,
            "remark": self.remark,
        }
        if self.model_mapping:
            payload["model_mapping"] = self.model_mapping
        if include_id and self.id is not None:
            payload["id"] = self.id
        return payload

    def model_list(self) -> List[str]:
        return split_models(self.models)


@dataclass
class ChannelSpec:
    """A channel produced by a provider adapter, before serialization."""
    name: str
    type: int
    key: str
    base_url: str
    models: List[str]
    group: str
    priority: int
    weight: int
    provider: str
    remark: str

    def to_channel(self) -> Channel:
        return Channel(
            name=self.name,
            type=self.type,
            key=self.key,
            base_url=self.base_url,
            models=",".join(self.models),
            group=self.group,
            priority=self.priority,
            weight=self.weight,
            status=1,
            tag=self.provider,
            remark=self.remark,
        )


@dataclass
class ModelMeta:
    """Model metadata as stored on the target instance."""
    model_name: str
    vendor_id: Optional[int] = None
    endpoints: Optional[str] = None
    status: int = 1
    sync_official: int = 0
    id: Optional[int] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "ModelMeta":
        return cls(
            id=data.get("id"),
            model_name=data.get("model_name", ""),
            vendor_id=data.get("vendor_id") or None,
            endpoints=data.get("endpoints") or None,
            status=data.get("status", 1),
            sync_official=data.get("sync_official") or 0,
        )

    def to_payload(self, include_id: bool = True) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model_name": self.model_name,
            "status": self.status,
            "sync_official": self.sync_official,
        }
        if self.vendor_id is not None:
            payload["vendor_id"] = self.vendor_id
        if self.endpoints is not None:
            payload["endpoints"] = self.endpoints
        if include_id and self.id is not None:
            payload["id"] = self.id
        return payload


@dataclass
class Vendor:
    id: int
    name: str


@dataclass
class DesiredModelSpec:
    model_name: str
    vendor: Optional[str] = None
    endpoints: Optional[str] = None  # serialized {endpoint_type: path}


@dataclass
class ManagedOptionMaps:
    """Structured view of the JSON-blob options this tool manages."""
    group_ratio: Dict[str, float] = field(default_factory=dict)
    user_usable_groups: Dict[str, str] = field(default_factory=dict)
    auto_groups: List[str] = field(default_factory=list)
    model_ratio: Dict[str, float] = field(default_factory=dict)
    completion_ratio: Dict[str, float] = field(default_factory=dict)
    model_price: Dict[str, float] = field(default_factory=dict)
    default_use_auto_group: bool = True


@dataclass
class PolicyState:
    """Chat-completions to Responses API routing policy."""
    enabled: bool = False
    all_channels: bool = False
    channel_types: List[int] = field(default_factory=list)
    model_patterns: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "all_channels": self.all_channels,
            "channel_types": [int(t) for t in self.channel_types],
            "model_patterns": list(self.model_patterns),
        }


@dataclass
class DesiredState:
    channels: List[Channel] = field(default_factory=list)
    models: Dict[str, DesiredModelSpec] = field(default_factory=dict)
    options: ManagedOptionMaps = field(default_factory=ManagedOptionMaps)
    policy: PolicyState = field(default_factory=PolicyState)
    managed_providers: Set[str] = field(default_factory=set)
    mapping_sources: Set[str] = field(default_factory=set)


@dataclass
class TargetSnapshot:
    channels: List[Channel] = field(default_factory=list)
    models: List[ModelMeta] = field(default_factory=list)
    vendors: List[Vendor] = field(default_factory=list)
    options: Dict[str, str] = field(default_factory=dict)


@dataclass
class DiffOperation:
    """One create, update or delete against a target resource.

    ``value`` is set for create and update, ``existing`` for update and delete.
    """
    type: str
    key: str
    value: Any = None
    existing: Any = None


@dataclass
class SyncDiff:
    channels: List[DiffOperation] = field(default_factory=list)
    models: List[DiffOperation] = field(default_factory=list)
    options: List[DiffOperation] = field(default_factory=list)
    cleanup_orphans: bool = True

    def is_empty(self) -> bool:
        return not (self.channels or self.models or self.options)

    @staticmethod
    def count(operations: Iterable[DiffOperation], op_type: str) -> int:
        return sum(1 for op in operations if op.type == op_type)


@dataclass
class ApplyError:
    phase: str  # options, channels, models, cleanup
    key: str
    message: str


@dataclass
class ResourceCounts:
    created: int = 0
    updated: int = 0
    deleted: int = 0


@dataclass
class ModelCounts(ResourceCounts):
    orphans_deleted: int = 0


@dataclass
class ApplyReport:
    dry_run: bool = False
    channels: ResourceCounts = field(default_factory=ResourceCounts)
    models: ModelCounts = field(default_factory=ModelCounts)
    options_updated: List[str] = field(default_factory=list)
    errors: List[ApplyError] = field(default_factory=list)


@dataclass
class TokenStats:
    created: int = 0
    existing: int = 0
    deleted: int = 0


@dataclass
class TokenResult:
    """Outcome of provisioning tokens for a set of groups."""
    tokens: Dict[str, str] = field(default_factory=dict)  # group name -> key
    names: Dict[str, str] = field(default_factory=dict)  # group name -> token name
    created: int = 0
    existing: int = 0
    deleted: int = 0


@dataclass
class ProviderReport:
    name: str
    type: str = ""
    success: bool = False
    groups: int = 0
    models: int = 0
    tokens: TokenStats = field(default_factory=TokenStats)
    test_cost: Optional[float] = None
    error: Optional[str] = None


@dataclass
class ProbeResult:
    model: str
    success: bool
    response_time_ms: Optional[float] = None
    error: Optional[str] = None


@dataclass
class TestModelsResult:
    working_models: List[str] = field(default_factory=list)
    avg_response_time: Optional[float] = None
    details: List[ProbeResult] = field(default_factory=list)

    __test__ = False  # keep pytest from collecting this as a test class


@dataclass
class MergedGroup:
    name: str
    ratio: float
    description: str
    provider: str


@dataclass
class MergedModel:
    ratio: float
    completion_ratio: float
    model_price: Optional[float] = None


@dataclass
class AggregationState:
    """Single-owner builder threaded through the provider adapters.

    Adapters run one at a time and only the running adapter mutates the
    state, so later adapters can price relative to what earlier ones
    committed.
    """
    merged_groups: List[MergedGroup] = field(default_factory=list)
    merged_models: Dict[str, MergedModel] = field(default_factory=dict)
    model_endpoints: Dict[str, List[str]] = field(default_factory=dict)
    endpoint_paths: Dict[str, str] = field(default_factory=dict)
    channels: List[ChannelSpec] = field(default_factory=list)

    def fold_model(
        self,
        name: str,
        ratio: float,
        completion_ratio: float,
        model_price: Optional[float] = None,
    ) -> None:
        """Merge a model's pricing, keeping the cheapest value seen."""
        existing = self.merged_models.get(name)
        if existing is None:
            self.merged_models[name] = MergedModel(ratio, completion_ratio, model_price)
            return
        if ratio < existing.ratio:
            existing.ratio = ratio
            existing.completion_ratio = completion_ratio
        if model_price is not None and model_price > 0:
            if existing.model_price is None or model_price < existing.model_price:
                existing.model_price = model_price

    def set_default_model(self, name: str, ratio: float = 1.0, completion_ratio: float = 1.0) -> None:
        """Register a model's pricing only if no earlier provider priced it."""
        if name not in self.merged_models:
            self.merged_models[name] = MergedModel(ratio, completion_ratio)

    def record_endpoints(self, model_endpoints: Dict[str, List[str]], endpoint_paths: Dict[str, str]) -> None:
        for name, endpoints in model_endpoints.items():
            if endpoints:
                self.model_endpoints.setdefault(name, list(endpoints))
        for endpoint, path in endpoint_paths.items():
            self.endpoint_paths.setdefault(endpoint, path)

    def group_ratio(self, group_name: str, default: float = 1.0) -> float:
        ratio = default
        for group in self.merged_groups:
            if group.name == group_name:
                ratio = group.ratio
        return ratio

    def cheapest_group_ratio_for(self, model: str, exclude_provider: Optional[str] = None) -> Optional[float]:
        """Cheapest group ratio of any channel already offering ``model``."""
        ratios = {group.name: group.ratio for group in self.merged_groups}
        cheapest = None
        for channel in self.channels:
            if channel.provider == exclude_provider or model not in channel.models:
                continue
            ratio = ratios.get(channel.group, 1.0)
            if cheapest is None or ratio < cheapest:
                cheapest = ratio
        return cheapest

    def add_tiers(
        self,
        tiers: Dict[float, List[str]],
        base_name: str,
        *,
        channel_type: Callable[[List[str]], int],
        key: str,
        base_url: str,
        provider: str,
        description: str,
        priority: int,
        weight: int,
        remark: str,
        max_ratio: float = 1.0,
    ) -> List[str]:
        """Publish one group and channel per price tier.

        Tiers are named ``{base_name}-t{i}`` when a group splits into more
        than one tier; tiers above ``max_ratio`` are dropped but keep their
        index so the names of the remaining tiers do not shift.

        Returns:
            Names of the tiers that were published.
        """
        published = []
        multi = len(tiers) > 1
        for index, ratio in enumerate(sorted(tiers)):
            if ratio > max_ratio:
                continue
            models = tiers[ratio]
            name = f"{base_name}-t{index}" if multi else base_name
            self.merged_groups.append(MergedGroup(name, ratio, description, provider))
            self.channels.append(ChannelSpec(
                name=name,
                type=channel_type(models),
                key=key,
                base_url=base_url,
                models=list(models),
                group=name,
                priority=priority,
                weight=weight,
                provider=provider,
                remark=remark,
            ))
            published.append(name)
        return published


@dataclass
class SyncRunResult:
    success: bool
    provider_reports: List[ProviderReport]
    desired: DesiredState
    diff: SyncDiff
    apply: ApplyReport
    elapsed_ms: float


@dataclass
class ResetResult:
    success: bool
    diff: SyncDiff
    apply: ApplyReport
    tokens_deleted: int = 0
    token_errors: List[str] = field(default_factory=list)
    elapsed_ms: float = 0.0
