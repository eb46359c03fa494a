"""Static lookup tables and pure classification helpers.

Everything here is deterministic and free of I/O: vendor inference from model
names, channel type inference from endpoint kinds, text-model detection,
blacklist and glob matching, and the name sanitization used for every
target-side identity (channel names, group names, token names).
"""

import fnmatch
import json
import math
import re
from dataclasses import dataclass
from enum import IntEnum
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple


# Option keys on the target that this tool owns
GROUP_RATIO_KEY = "GroupRatio"
USER_USABLE_GROUPS_KEY = "UserUsableGroups"
AUTO_GROUPS_KEY = "AutoGroups"
DEFAULT_USE_AUTO_GROUP_KEY = "DefaultUseAutoGroup"
MODEL_RATIO_KEY = "ModelRatio"
COMPLETION_RATIO_KEY = "CompletionRatio"
MODEL_PRICE_KEY = "ModelPrice"
RESPONSES_POLICY_KEY = "global.chat_completions_to_responses_policy"

MANAGED_OPTION_KEYS: Tuple[str, ...] = (
    GROUP_RATIO_KEY,
    USER_USABLE_GROUPS_KEY,
    AUTO_GROUPS_KEY,
    DEFAULT_USE_AUTO_GROUP_KEY,
    MODEL_RATIO_KEY,
    COMPLETION_RATIO_KEY,
    MODEL_PRICE_KEY,
    RESPONSES_POLICY_KEY,
)

AUTO_GROUP_NAME = "auto"
AUTO_GROUP_LABEL = "Auto (Smart Routing with Failover)"

DEFAULT_PAGE_SIZE = 100

# new-api stores quota in units of 1/500000 USD
QUOTA_PER_DOLLAR = 500000

PRIORITY_RESPONSE_TIME_DIVISOR = 10000
PRIORITY_RESPONSE_TIME_OFFSET = 100


class ChannelType(IntEnum):
    """Channel type identifiers used by new-api (constant/channel.go)."""

    UNKNOWN = 0
    OPENAI = 1
    AZURE = 3
    OLLAMA = 4
    CUSTOM = 8
    ANTHROPIC = 14
    BAIDU = 15
    ZHIPU = 16
    ALI = 17
    XUNFEI = 18
    AI360 = 19
    OPENROUTER = 20
    TENCENT = 23
    GEMINI = 24
    MOONSHOT = 25
    ZHIPU_V4 = 26
    PERPLEXITY = 27
    LINGYIWANWU = 31
    AWS = 33
    COHERE = 34
    MINIMAX = 35
    JINA = 38
    CLOUDFLARE = 39
    SILICONFLOW = 40
    VERTEX_AI = 41
    MISTRAL = 42
    DEEPSEEK = 43
    VOLCENGINE = 45
    BAIDU_V2 = 46
    XAI = 48
    SORA = 55
    CODEX = 57


# Channel types whose chat requests the target can route through the Responses API
RESPONSES_COMPATIBLE_CHANNEL_TYPES = frozenset({
    ChannelType.OPENAI,
    ChannelType.ALI,
    ChannelType.CLOUDFLARE,
    ChannelType.PERPLEXITY,
    ChannelType.VOLCENGINE,
    ChannelType.CODEX,
    ChannelType.XAI,
})

RESPONSES_ENDPOINT_TYPES = frozenset({"openai-response", "openai-response-compact"})


@dataclass(frozen=True)
class VendorInfo:
    """How to reach and probe a vendor's first-party API."""
    channel_type: int
    default_base_url: str
    model_discovery: str  # openai, anthropic or gemini


VENDOR_REGISTRY: Dict[str, VendorInfo] = {
    "openai": VendorInfo(ChannelType.OPENAI, "https://api.openai.com", "openai"),
    "anthropic": VendorInfo(ChannelType.ANTHROPIC, "https://api.anthropic.com", "anthropic"),
    "google": VendorInfo(ChannelType.GEMINI, "https://generativelanguage.googleapis.com", "gemini"),
    "deepseek": VendorInfo(ChannelType.DEEPSEEK, "https://api.deepseek.com", "openai"),
    "moonshot": VendorInfo(ChannelType.MOONSHOT, "https://api.moonshot.cn", "openai"),
    "mistral": VendorInfo(ChannelType.MISTRAL, "https://api.mistral.ai", "openai"),
    "xai": VendorInfo(ChannelType.XAI, "https://api.x.ai", "openai"),
    "siliconflow": VendorInfo(ChannelType.SILICONFLOW, "https://api.siliconflow.cn", "openai"),
    "cohere": VendorInfo(ChannelType.COHERE, "https://api.cohere.ai", "openai"),
    "zhipu": VendorInfo(ChannelType.ZHIPU_V4, "https://open.bigmodel.cn", "openai"),
    "volcengine": VendorInfo(ChannelType.VOLCENGINE, "https://ark.cn-beijing.volces.com", "openai"),
    "minimax": VendorInfo(ChannelType.MINIMAX, "https://api.minimax.chat", "openai"),
    "perplexity": VendorInfo(ChannelType.PERPLEXITY, "https://api.perplexity.ai", "openai"),
}

# Default request paths per endpoint type (mirrors new-api endpoint defaults)
ENDPOINT_DEFAULT_PATHS: Dict[str, str] = {
    "openai": "/v1/chat/completions",
    "openai-response": "/v1/responses",
    "openai-response-compact": "/v1/responses/compact",
    "anthropic": "/v1/messages",
    "gemini": "/v1beta/models/{model}:generateContent",
    "jina-rerank": "/v1/rerank",
    "image-generation": "/v1/images/generations",
    "embeddings": "/v1/embeddings",
}

# Upstream spellings that differ from the canonical endpoint type names
_ENDPOINT_ALIASES: Dict[str, str] = {
    "embedding": "embeddings",
    "openai-responses": "openai-response",
    "responses": "openai-response",
    "openai-chat": "openai",
    "claude": "anthropic",
}

TEXT_ENDPOINT_TYPES = frozenset({
    "openai",
    "anthropic",
    "gemini",
    "openai-response",
    "openai-response-compact",
})

# Substrings that mark image, video, audio, embedding and moderation models
NON_TEXT_MODEL_PATTERNS: Tuple[str, ...] = (
    # Image generation
    "dall-e", "dalle", "gpt-image", "imagen", "midjourney", "stable-diffusion",
    "flux", "seedream", "jimeng",
    # Video generation
    "sora", "veo", "video", "kling", "vidu", "hailuo", "seedance",
    "t2v-", "i2v-", "s2v-", "wan2", "wanx",
    # Audio
    "whisper", "tts", "speech", "suno",
    # Embeddings and reranking
    "embedding", "embed", "rerank", "bge-", "m3e-",
    # Other
    "image", "moderation",
)


@dataclass(frozen=True)
class VendorMatcher:
    """Model-name patterns and display-name aliases for one vendor."""
    model_patterns: Tuple[str, ...]
    name_aliases: Tuple[str, ...] = ()


# Order matters: the first vendor whose pattern matches wins
VENDOR_MATCHERS: Dict[str, VendorMatcher] = {
    "anthropic": VendorMatcher(("claude",)),
    "google": VendorMatcher(("gemini", "palm")),
    "openai": VendorMatcher(("gpt", "o1-", "o3-", "o4-", "chatgpt")),
    "deepseek": VendorMatcher(("deepseek",)),
    "xai": VendorMatcher(("grok",)),
    "mistral": VendorMatcher(("mistral", "codestral")),
    "meta": VendorMatcher(("llama",)),
    "alibaba": VendorMatcher(("qwen", "qwq-"), ("阿里", "通义", "qwen")),
    "cohere": VendorMatcher(("command-", "c4ai-")),
    "minimax": VendorMatcher(("abab", "minimax-")),
    "moonshot": VendorMatcher(("moonshot-", "kimi-"), ("月之暗面", "kimi")),
    "zhipu": VendorMatcher(("glm-", "chatglm"), ("智谱", "zhipu ai", "chatglm")),
    "perplexity": VendorMatcher(("sonar",)),
    "baidu": VendorMatcher(("ernie-",), ("百度", "文心")),
    "xunfei": VendorMatcher(("sparkdesk",), ("讯飞", "spark")),
    "tencent": VendorMatcher(("hunyuan-",), ("腾讯", "混元")),
    "bytedance": VendorMatcher(("doubao-",), ("字节", "豆包", "doubao")),
    "yi": VendorMatcher(("yi-",)),
    "ai360": VendorMatcher(("360gpt",)),
}

SUB2API_PLATFORM_CHANNEL_TYPES: Dict[str, int] = {
    "anthropic": ChannelType.ANTHROPIC,
    "gemini": ChannelType.GEMINI,
    "antigravity": ChannelType.GEMINI,
    "openai": ChannelType.OPENAI,
}

# One vendor can be served by several sub2api platforms
VENDOR_TO_SUB2API_PLATFORMS: Dict[str, Tuple[str, ...]] = {
    "google": ("gemini", "antigravity"),
    "anthropic": ("anthropic",),
    "openai": ("openai",),
}

_NON_ASCII = re.compile(r"[^\x00-\x7f]+")
_HYPHEN_RUN = re.compile(r"-+")


def normalize_endpoint_type(endpoint: str) -> str:
    """Map an upstream endpoint type spelling onto the canonical name."""
    key = endpoint.strip().lower().replace("_", "-")
    return _ENDPOINT_ALIASES.get(key, key)


def infer_channel_type(endpoints: Iterable[str]) -> int:
    """Infer the channel type from the endpoint kinds a group or model supports."""
    kinds = {normalize_endpoint_type(e) for e in endpoints}
    if "jina-rerank" in kinds:
        return ChannelType.JINA
    if "openai-video" in kinds:
        return ChannelType.SORA
    if "anthropic" in kinds:
        return ChannelType.ANTHROPIC
    if "gemini" in kinds:
        return ChannelType.GEMINI
    return ChannelType.OPENAI


def infer_vendor_from_model_name(name: str) -> Optional[str]:
    """Infer the vendor key from a model name, or None when unknown."""
    lowered = name.lower()
    for vendor, matcher in VENDOR_MATCHERS.items():
        if any(pattern in lowered for pattern in matcher.model_patterns):
            return vendor
    return None


def infer_channel_type_from_models(
    models: Sequence[str],
    model_endpoints: Optional[Mapping[str, Sequence[str]]] = None,
) -> int:
    """Infer a channel type from the majority vendor of its models.

    Vendor detection wins over endpoint data because many gateway models
    advertise several dialects at once (e.g. GPT models exposed through
    both the OpenAI and Anthropic endpoints).

    Args:
        models: Model names published on the channel.
        model_endpoints: Optional map of model name to supported endpoint types.

    Returns:
        The channel type id.
    """
    counts: Dict[str, int] = {}
    for model in models:
        vendor = infer_vendor_from_model_name(model)
        if vendor:
            counts[vendor] = counts.get(vendor, 0) + 1

    top_vendor = None
    top_count = 0
    for vendor, count in counts.items():
        if count > top_count:
            top_vendor, top_count = vendor, count

    if top_vendor and top_vendor in VENDOR_REGISTRY:
        return VENDOR_REGISTRY[top_vendor].channel_type

    endpoints = set()
    for model in models:
        endpoints.update((model_endpoints or {}).get(model, ()))
    if endpoints:
        return infer_channel_type(endpoints)

    return ChannelType.OPENAI


def sub2api_platform_to_channel_type(platform: str) -> int:
    return SUB2API_PLATFORM_CHANNEL_TYPES.get(platform.lower(), ChannelType.OPENAI)


def model_dialect(name: str, endpoints: Optional[Sequence[str]] = None) -> str:
    """Return the wire dialect of a model: openai, anthropic or gemini."""
    channel_type = infer_channel_type_from_models([name], {name: endpoints or ()})
    if channel_type == ChannelType.ANTHROPIC:
        return "anthropic"
    if channel_type == ChannelType.GEMINI:
        return "gemini"
    return "openai"


def matches_non_text_pattern(name: str) -> bool:
    lowered = name.lower()
    return any(pattern in lowered for pattern in NON_TEXT_MODEL_PATTERNS)


def is_text_model(name: str, endpoints: Optional[Sequence[str]] = None) -> bool:
    """Check whether a model is a text (chat) model.

    Name patterns are checked first since upstreams regularly misreport
    image or video models as chat models. When endpoint data is present,
    at least one text endpoint is required; otherwise the model is assumed
    to be a text model.
    """
    if matches_non_text_pattern(name):
        return False
    if endpoints:
        return any(normalize_endpoint_type(e) in TEXT_ENDPOINT_TYPES for e in endpoints)
    return True


def round_half_up(value: float, places: int = 0) -> float:
    """Round to ``places`` decimals with halves going up (1.5 -> 2, 2.5 -> 3)."""
    factor = 10 ** places
    return math.floor(value * factor + 0.5) / factor


def calculate_priority_bonus(avg_response_time: Optional[float]) -> int:
    """Convert an average latency in milliseconds into a routing priority.

    ~100ms gives 50, ~400ms gives 20, ~900ms gives 10.
    """
    if avg_response_time is None:
        return 0
    return int(round_half_up(PRIORITY_RESPONSE_TIME_DIVISOR / (avg_response_time + PRIORITY_RESPONSE_TIME_OFFSET)))


def matches_blacklist(text: str, blacklist: Optional[Sequence[str]], scope: Optional[str] = None) -> bool:
    """Check a string against blacklist patterns (case-insensitive substring).

    Patterns of the form ``provider/pattern`` only apply when ``scope``
    equals the provider part. Unscoped patterns apply everywhere.

    Args:
        text: Group name, group description or model name.
        blacklist: Configured patterns.
        scope: Name of the provider being processed.

    Returns:
        True if any applicable pattern matches.
    """
    if not blacklist:
        return False
    lowered = text.lower()
    scope_key = scope.lower() if scope is not None else None
    for raw in blacklist:
        pattern = raw.lower()
        provider, sep, rest = pattern.partition("/")
        if sep:
            if scope_key is not None and provider == scope_key and rest in lowered:
                return True
            continue
        if pattern in lowered:
            return True
    return False


def matches_glob_pattern(name: str, pattern: str) -> bool:
    """Match a model name against a glob (``*``) or plain substring pattern."""
    lowered = name.lower()
    pattern = pattern.lower()
    if "*" not in pattern:
        return pattern in lowered
    return fnmatch.fnmatchcase(lowered, pattern)


def matches_any_pattern(name: str, patterns: Sequence[str]) -> bool:
    return any(matches_glob_pattern(name, p) for p in patterns)


def sanitize_group_name(name: str) -> str:
    """Strip non-ASCII characters and collapse hyphen runs.

    Upstream group names are frequently localized; the target and the
    upstream token API both expect ASCII identifiers.
    """
    cleaned = _NON_ASCII.sub("", name)
    cleaned = _HYPHEN_RUN.sub("-", cleaned)
    return cleaned.strip("-")


def apply_model_mapping(model_name: str, mapping: Optional[Mapping[str, str]]) -> str:
    if not mapping:
        return model_name
    return mapping.get(model_name, model_name)


def split_models(models: str) -> List[str]:
    """Split a comma-separated model list, dropping blanks."""
    return [m.strip() for m in (models or "").split(",") if m.strip()]


def normalize_api_key(key: str) -> str:
    """Give a new-api token key its conventional ``sk-`` prefix."""
    return key if key.startswith("sk-") else f"sk-{key}"


def _compact_numbers(value):
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, dict):
        return {k: _compact_numbers(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_compact_numbers(v) for v in value]
    return value


def stable_json(value) -> str:
    """Serialize with sorted keys and no whitespace; ``1.0`` is written as ``1``."""
    return json.dumps(_compact_numbers(value), sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def parse_json(raw: Optional[str], fallback=None):
    """Decode a JSON option value, returning ``fallback`` when it is empty or malformed."""
    if not raw:
        return fallback
    try:
        return json.loads(raw)
    except ValueError:
        return fallback
