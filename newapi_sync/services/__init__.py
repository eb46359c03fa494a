"""Services package."""

from newapi_sync.services.apply import apply_sync_diff
from newapi_sync.services.config_loader import AppConfig, apply_only_providers, load_config
from newapi_sync.services.diff import build_sync_diff
from newapi_sync.services.exceptions import (
    ApiResponseError,
    ConfigError,
    ProviderError,
    SyncInProgressError,
    TargetUnavailableError,
)
from newapi_sync.services.pipeline import build_desired_state, run_provider_pipeline
from newapi_sync.services.snapshot import fetch_target_snapshot
from newapi_sync.services.sync_service import SyncService

__all__ = [
    "AppConfig",
    "load_config",
    "apply_only_providers",
    "run_provider_pipeline",
    "build_desired_state",
    "fetch_target_snapshot",
    "build_sync_diff",
    "apply_sync_diff",
    "SyncService",
    "ApiResponseError",
    "ConfigError",
    "ProviderError",
    "SyncInProgressError",
    "TargetUnavailableError",
]
