from __future__ import annotations
import time
from concurrent.futures import Future
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Tuple

from .cancel import CancelToken

class AssetKind(str, Enum):
    RUNTIME = "runtime"
    MODEL = "model"

class SourceTier(str, Enum):
    PRIMARY = "remote-primary"
    SECONDARY = "remote-secondary"
    LOCAL = "local"

class LoadState(str, Enum):
    IDLE = "idle"
    CHECKING = "checking"
    FETCHING = "fetching"
    VALIDATING = "validating"
    STORING = "storing"
    READY = "ready"
    FAILED = "failed"

@dataclass(frozen=True)
class SourceCandidate:
    url: str
    tier: SourceTier
    integrity: Optional[str] = None  # SRI, e.g. "sha384-<base64>"

    @property
    def is_local(self) -> bool:
        return self.tier is SourceTier.LOCAL

@dataclass(frozen=True)
class AssetDescriptor:
    key: str
    kind: AssetKind
    filename: str
    expected_size: Optional[int] = None
    priority_tier: str = "medium"
    resolution: Optional[Tuple[int, int]] = None
    description: str = ""
    sources: Tuple[SourceCandidate, ...] = ()

@dataclass
class LoadAttempt:
    asset_key: str
    url: str
    tier: SourceTier
    outcome: str  # "success" | "failure"
    error_kind: Optional[str] = None
    error: str = ""
    cached: bool = False
    timestamp: float = field(default_factory=time.monotonic)

    @property
    def ok(self) -> bool:
        return self.outcome == "success"

@dataclass
class ProgressState:
    asset_key: str
    phase: str
    local_progress: float = 0.0
    weight: float = 0.0
    last_emitted_at: float = 0.0
    peak: float = 0.0  # highest global value computed for this session
    last_pct: Optional[int] = None
    last_message: Optional[str] = None

@dataclass
class CacheEntry:
    url: str
    data: bytes
    size: int
    stored_at: float
    generation: str
    kind: str = "static"

@dataclass
class SingleFlightTicket:
    asset_key: str
    future: Future = field(default_factory=Future)
    token: CancelToken = field(default_factory=CancelToken)
