# asset_loader/core/cache/__init__.py

from .client import CacheCoordinator
from .store import CacheStore, SCOPES
from .worker import (
    CACHE_CLEAR, CACHE_LOOKUP, CACHE_STATUS, CACHE_STORE, CACHE_UPDATED, OFFLINE_READY,
    CacheWorker,
)

__all__ = [
    "CacheCoordinator",
    "CacheStore",
    "CacheWorker",
    "SCOPES",
    "CACHE_STORE",
    "CACHE_LOOKUP",
    "CACHE_CLEAR",
    "CACHE_STATUS",
    "CACHE_UPDATED",
    "OFFLINE_READY",
]
