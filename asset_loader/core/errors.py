# asset_loader/core/errors.py
from __future__ import annotations
from typing import List, Optional

class AssetLoaderError(Exception):
    kind = "error"

class ConfigError(AssetLoaderError):
    kind = "config"

class NetworkError(AssetLoaderError):
    """Timeout, abort or connection failure. Advance to the next candidate."""
    kind = "network"

    def __init__(self, message: str, reason: str = "unreachable"):
        super().__init__(message)
        self.reason = reason

class LoadCancelled(NetworkError):
    kind = "cancelled"

    def __init__(self, message: str = "load aborted"):
        super().__init__(message, reason="aborted")

class HttpError(AssetLoaderError):
    kind = "http"

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status

class SizeMismatchError(HttpError):
    kind = "size"

    def __init__(self, message: str, expected: int, actual: int):
        super().__init__(message)
        self.expected = expected
        self.actual = actual

class IntegrityError(AssetLoaderError):
    """Host not allow-listed, path traversal, or hash mismatch."""
    kind = "integrity"

class CacheProtocolError(AssetLoaderError):
    kind = "cache"

class AggregateSourceFailure(AssetLoaderError):
    kind = "exhausted"

    def __init__(self, key: str, attempts: Optional[List] = None, message: str = ""):
        super().__init__(message or f"Could not obtain '{key}' from any source")
        self.key = key
        self.attempts = list(attempts or [])

class StaleDependencyError(AssetLoaderError):
    kind = "stale"

    def __init__(self, key: str):
        super().__init__(f"'{key}' failed its health check again after a re-fetch")
        self.key = key

def error_kind(exc: BaseException) -> str:
    """LoadAttempt.error_kind: 'timeout', 'unreachable', 'unavailable', 'http', ..."""
    if isinstance(exc, NetworkError) and not isinstance(exc, LoadCancelled):
        return exc.reason
    return getattr(exc, "kind", "error")
