# asset_loader/core/sources/__init__.py

from .mirrors import DEFAULT_ASSETS, MIRRORS, TRUSTED_HOSTS, default_candidates
from .resolver import SourceResolver

__all__ = [
    "DEFAULT_ASSETS",
    "MIRRORS",
    "TRUSTED_HOSTS",
    "default_candidates",
    "SourceResolver",
]
