"""Exception types shared by the sync services."""

from typing import List, Optional


class ApiResponseError(ValueError):
    """An upstream or target API answered with an application-level failure."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ConfigError(ValueError):
    """The sync configuration is missing or invalid."""

    def __init__(self, message: str, issues: Optional[List[str]] = None):
        self.issues = issues or []
        if self.issues:
            message = message + "\n" + "\n".join(f"  - {issue}" for issue in self.issues)
        super().__init__(message)


class TargetUnavailableError(RuntimeError):
    """The target instance failed its pre-run health check."""


class SyncInProgressError(RuntimeError):
    """Another sync or reset is already running in this process."""


class ProviderError(RuntimeError):
    """A provider produced nothing usable (no groups, keys or working models)."""
