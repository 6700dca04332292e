# asset_loader/core/__init__.py
from .cache import CacheCoordinator, CacheStore
from .cancel import CancelToken, retry_with_backoff
from .config import AssetTable, Settings, config_path, load_assets, load_cfg, save_cfg
from .download import StreamingDownloader
from .errors import (
    AggregateSourceFailure, AssetLoaderError, CacheProtocolError, ConfigError, HttpError,
    IntegrityError, LoadCancelled, NetworkError, SizeMismatchError, StaleDependencyError,
)
from .http import SESSION, make_session
from .integrity import IntegrityValidator, check_sri, parse_sri
from .models import AssetDescriptor, AssetKind, LoadAttempt, LoadState, SourceCandidate, SourceTier
from .orchestrator import DependencyOrchestrator
from .progress import ProgressAggregator
from .sources import SourceResolver
from .utils import human_size

__all__ = [
    "DependencyOrchestrator",
    "AssetDescriptor", "AssetKind", "SourceCandidate", "SourceTier", "LoadAttempt", "LoadState",
    "IntegrityValidator", "parse_sri", "check_sri",
    "SourceResolver", "StreamingDownloader", "ProgressAggregator",
    "CacheCoordinator", "CacheStore",
    "CancelToken", "retry_with_backoff",
    "AssetTable", "Settings", "load_cfg", "save_cfg", "config_path", "load_assets",
    "SESSION", "make_session", "human_size",
    "AssetLoaderError", "ConfigError", "NetworkError", "LoadCancelled", "HttpError",
    "SizeMismatchError", "IntegrityError", "CacheProtocolError", "AggregateSourceFailure",
    "StaleDependencyError",
    "setup_logging",
]

# ---- logging ------------------------------------------------------------------
import logging

LOG_FORMAT = "%(levelname)s %(name)s: %(message)s"
# transport chatter that only matters when debugging those libraries
NOISY_LOGGERS = ("urllib3", "requests")

def setup_logging(verbose: bool = False) -> None:
    """INFO for the package (DEBUG with verbose); NOISY_LOGGERS stay at WARNING."""
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format=LOG_FORMAT)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
