"""Chat-completions to Responses API routing policy.

The target can transparently route chat-completion requests to the
Responses API for some channel types. The policy lists those channel types
and the models (as anchored regexes) the routing applies to.
"""

import re
from typing import Iterable, List, Mapping, Optional, Sequence, Set

from newapi_sync.services.constants import (
    RESPONSES_COMPATIBLE_CHANNEL_TYPES,
    RESPONSES_ENDPOINT_TYPES,
    normalize_endpoint_type,
)
from newapi_sync.services.types import Channel, PolicyState


def model_pattern(model: str) -> str:
    return f"^{re.escape(model)}$"


def _supports_responses(endpoints: Optional[Sequence[str]]) -> bool:
    # Without endpoint data the model is assumed to accept the Responses API
    if not endpoints:
        return True
    return any(normalize_endpoint_type(e) in RESPONSES_ENDPOINT_TYPES for e in endpoints)


def build_responses_policy(
    channels: Iterable[Channel],
    model_endpoints: Mapping[str, Sequence[str]],
) -> PolicyState:
    """Build the policy for a set of channels.

    Args:
        channels: Channels the policy should cover.
        model_endpoints: Endpoint types per model name.

    Returns:
        PolicyState, enabled only when at least one channel type and one
        model qualify.
    """
    channel_types: Set[int] = set()
    models: Set[str] = set()
    for channel in channels:
        if channel.type not in RESPONSES_COMPATIBLE_CHANNEL_TYPES:
            continue
        channel_types.add(int(channel.type))
        for model in channel.model_list():
            if _supports_responses(model_endpoints.get(model)):
                models.add(model)

    patterns = [model_pattern(m) for m in sorted(models)]
    return PolicyState(
        enabled=bool(channel_types and patterns),
        all_channels=False,
        channel_types=sorted(channel_types),
        model_patterns=patterns,
    )


def merge_responses_policy(
    existing: Optional[dict],
    desired: PolicyState,
    protected_channels: Iterable[Channel],
) -> PolicyState:
    """Overlay the desired policy on the entries owned by out-of-scope channels.

    Channel types and model patterns of the current target policy survive
    when an out-of-scope channel still uses them.
    """
    protected_channels = list(protected_channels)
    existing = existing if isinstance(existing, dict) else {}
    current_types = {int(t) for t in existing.get("channel_types") or [] if isinstance(t, (int, float))}
    current_patterns = {p for p in existing.get("model_patterns") or [] if isinstance(p, str)}

    kept_types: Set[int] = set()
    kept_patterns: Set[str] = set()
    for channel in protected_channels:
        if int(channel.type) in current_types:
            kept_types.add(int(channel.type))
        for model in channel.model_list():
            pattern = model_pattern(model)
            if pattern in current_patterns:
                kept_patterns.add(pattern)

    channel_types: List[int] = sorted(kept_types | set(desired.channel_types))
    patterns: List[str] = sorted(kept_patterns | set(desired.model_patterns))
    return PolicyState(
        enabled=bool(channel_types and patterns),
        all_channels=desired.all_channels,
        channel_types=channel_types,
        model_patterns=patterns,
    )
