"""Sync configuration schema and loading.

The config file (YAML or JSON) describes the target instance, the
providers to aggregate and the global filters. Keys may be written in
camelCase (``systemAccessToken``) or snake_case (``system_access_token``).
"""

import json
import logging
import os
from typing import Annotated, Dict, List, Literal, Optional, Sequence, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_camel

from newapi_sync.config import settings
from newapi_sync.services.constants import VENDOR_REGISTRY
from newapi_sync.services.exceptions import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILES = ("config.yaml", "config.yml", "config.json")
PROVIDER_NAME_MAX_LENGTH = 20

PriceAdjustmentValue = Union[float, Dict[str, float]]


class _ConfigModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
        protected_namespaces=(),
    )


def _strip_base_url(value: Optional[str]) -> Optional[str]:
    return value.rstrip("/") if value else value


def _validate_adjustment(value: Optional[PriceAdjustmentValue]) -> Optional[PriceAdjustmentValue]:
    if value is None:
        return None
    if isinstance(value, dict):
        if "default" not in {k.lower() for k in value}:
            raise ValueError("priceAdjustment map must contain a 'default' key")
        values = value.values()
    else:
        values = [value]
    for v in values:
        if not -1 < v < 1:
            raise ValueError(f"priceAdjustment values must be between -1 and 1 (exclusive), got {v}")
    return value


class TargetConfig(_ConfigModel):
    """The new-api instance being reconciled."""

    base_url: str = Field(min_length=1)
    system_access_token: str = Field(min_length=1)
    user_id: int = Field(gt=0)

    strip_base_url = field_validator("base_url")(_strip_base_url)


class _ProviderBase(_ConfigModel):
    name: str
    enabled_models: Optional[List[str]] = None
    price_adjustment: Optional[PriceAdjustmentValue] = None

    @field_validator("name")
    @classmethod
    def check_name(cls, value: str) -> str:
        if not 1 <= len(value) <= PROVIDER_NAME_MAX_LENGTH:
            raise ValueError(f"provider name must be 1-{PROVIDER_NAME_MAX_LENGTH} characters")
        if "/" in value or any(ch.isspace() for ch in value):
            raise ValueError("provider name must not contain '/' or whitespace")
        return value

    validate_adjustment = field_validator("price_adjustment")(_validate_adjustment)


class NewApiProviderConfig(_ProviderBase):
    """An upstream new-api gateway account."""

    type: Literal["newapi"]
    base_url: str = Field(min_length=1)
    system_access_token: str = Field(min_length=1)
    user_id: int = Field(gt=0)
    enabled_groups: Optional[List[str]] = None
    enabled_vendors: Optional[List[str]] = None
    probe_cost_sampling: Literal["off", "group", "model"] = "group"

    strip_base_url = field_validator("base_url")(_strip_base_url)


class DirectProviderConfig(_ProviderBase):
    """A first-party vendor API key."""

    type: Literal["direct"]
    vendor: str
    api_key: str = Field(min_length=1)
    base_url: Optional[str] = None
    group_ratio: Optional[float] = Field(default=None, gt=0)

    strip_base_url = field_validator("base_url")(_strip_base_url)

    @field_validator("vendor")
    @classmethod
    def check_vendor(cls, value: str) -> str:
        vendor = value.lower()
        if vendor not in VENDOR_REGISTRY:
            raise ValueError(f"unknown vendor '{value}', expected one of: {', '.join(sorted(VENDOR_REGISTRY))}")
        return vendor

    @model_validator(mode="after")
    def ratio_or_adjustment(self):
        if self.group_ratio is not None and self.price_adjustment is not None:
            raise ValueError("groupRatio and priceAdjustment cannot be combined")
        return self


class Sub2ApiGroupConfig(_ConfigModel):
    key: str = Field(min_length=1)
    platform: str
    name: Optional[str] = None

    @field_validator("platform")
    @classmethod
    def lower_platform(cls, value: str) -> str:
        return value.lower()


class Sub2ApiProviderConfig(_ProviderBase):
    """A sub2api account pool."""

    type: Literal["sub2api"]
    base_url: str = Field(min_length=1)
    admin_api_key: Optional[str] = None
    groups: Optional[List[Sub2ApiGroupConfig]] = None
    enabled_vendors: Optional[List[str]] = None
    price_discount: float = Field(default=0.1, ge=0, lt=1)

    strip_base_url = field_validator("base_url")(_strip_base_url)

    @model_validator(mode="after")
    def needs_credentials(self):
        if not self.admin_api_key and not self.groups:
            raise ValueError("sub2api providers need adminApiKey or a non-empty groups list")
        return self


ProviderConfig = Annotated[
    Union[NewApiProviderConfig, DirectProviderConfig, Sub2ApiProviderConfig],
    Field(discriminator="type"),
]


class AppConfig(_ConfigModel):
    """Complete sync configuration."""

    target: TargetConfig
    blacklist: List[str] = Field(default_factory=list)
    model_mapping: Dict[str, str] = Field(default_factory=dict)
    providers: List[ProviderConfig] = Field(min_length=1)
    only_providers: Optional[List[str]] = None

    @model_validator(mode="after")
    def unique_names(self):
        seen = set()
        for provider in self.providers:
            if provider.name in seen:
                raise ValueError(f"duplicate provider name '{provider.name}'")
            seen.add(provider.name)
        return self

    def provider_names(self) -> List[str]:
        return [p.name for p in self.providers]


def _format_issues(error: ValidationError) -> List[str]:
    issues = []
    for item in error.errors():
        location = ".".join(str(part) for part in item["loc"]) or "(root)"
        issues.append(f"{location}: {item['msg']}")
    return issues


def resolve_config_path(path: Optional[str] = None) -> str:
    """Pick the config file: explicit path, then settings, then defaults in the CWD.

    Raises:
        ConfigError: If no config file can be found.
    """
    candidate = path or settings.config_path
    if candidate:
        if not os.path.isfile(candidate):
            raise ConfigError(f"Config file not found: {candidate}")
        return candidate
    for name in DEFAULT_CONFIG_FILES:
        if os.path.isfile(name):
            return name
    raise ConfigError(f"No config file found (looked for {', '.join(DEFAULT_CONFIG_FILES)})")


def parse_config(data: dict) -> AppConfig:
    """Validate a decoded config document.

    Raises:
        ConfigError: With one issue per invalid field.
    """
    try:
        return AppConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError("Invalid configuration:", _format_issues(e)) from e


def load_config(path: Optional[str] = None) -> AppConfig:
    """Load and validate the sync configuration file.

    Args:
        path: Config file path. Falls back to settings.config_path, then to
            config.yaml / config.yml / config.json in the working directory.

    Returns:
        Validated AppConfig.

    Raises:
        ConfigError: If the file is missing, unreadable or invalid.
    """
    config_path = resolve_config_path(path)
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            if config_path.endswith(".json"):
                data = json.load(f)
            else:
                data = yaml.safe_load(f)
    except (OSError, ValueError, yaml.YAMLError) as e:
        raise ConfigError(f"Failed to read config file {config_path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Config file {config_path} must contain a mapping at the top level")

    config = parse_config(data)
    logger.info(f"Loaded config from {config_path} with {len(config.providers)} provider(s)")
    return config


def apply_only_providers(config: AppConfig, only: Optional[Sequence[str]]) -> AppConfig:
    """Restrict a config to the named providers.

    Args:
        config: Loaded config.
        only: Provider names; each entry may itself be comma-separated.

    Returns:
        A copy of the config with only the selected providers and
        ``only_providers`` set, or the config unchanged when ``only`` is empty.

    Raises:
        ConfigError: If a name does not match any configured provider.
    """
    names: List[str] = []
    for entry in only or []:
        for name in entry.split(","):
            name = name.strip()
            if name and name not in names:
                names.append(name)
    if not names:
        return config

    available = config.provider_names()
    unknown = [n for n in names if n not in available]
    if unknown:
        raise ConfigError(
            f"Unknown provider(s): {', '.join(unknown)}. Available: {', '.join(available)}"
        )

    return config.model_copy(update={
        "providers": [p for p in config.providers if p.name in names],
        "only_providers": names,
    })
