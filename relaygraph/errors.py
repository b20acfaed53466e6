"""Exception hierarchy for relaygraph."""

from __future__ import annotations

from typing import Dict, Optional


class RelayGraphError(Exception):
    """Base exception for all relaygraph errors."""

    def __init__(self, message: str, details: Optional[Dict[str, str]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            details_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} ({details_str})"
        return self.message


class AnalysisError(RelayGraphError):
    """The semantic backend could not resolve a location (analysis-miss)."""


class BackendUnavailableError(RelayGraphError):
    """An external analysis tool is missing entirely."""

    def __init__(self, feature: str, reason: str):
        super().__init__(
            f"{feature} backend unavailable: {reason}",
            details={"feature": feature},
        )
        self.feature = feature
        self.reason = reason


class CacheUnavailableError(RelayGraphError):
    """The cache store could not be opened."""


class CacheLockedError(CacheUnavailableError):
    """The cache store is held by another process."""

    def __init__(self, path: str):
        super().__init__(
            f"Cache at {path} is locked by another process. "
            "Close the other relay session or pass a different cache path.",
            details={"path": path},
        )
        self.path = path


class CacheStorageError(RelayGraphError):
    """Reading or writing the cache failed at the storage layer."""
