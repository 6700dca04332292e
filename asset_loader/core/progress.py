# asset_loader/core/progress.py
from __future__ import annotations
import logging
import threading
import time
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from .errors import ConfigError
from .models import ProgressState

logger = logging.getLogger(__name__)

ProgressCB = Callable[[float, str], None]  # (percent 0..100, message)

DEFAULT_PHASES: Tuple[Tuple[str, float], ...] = (("runtime", 20.0), ("model", 80.0))

# session used by reports that name no asset
ANONYMOUS = ""

class ProgressAggregator:
    """
    Folds sequential loading phases into one 0..100 value.

    global = sum(weights of earlier phases) + local * weight / 100

    Every asset key gets its own session: concurrent loads never clamp or
    throttle each other. Within a session delivered values never go
    backwards, and an update reaches observers when the minimum interval has
    passed, the rounded percentage moved or the message changed.
    """

    def __init__(
        self,
        phases: Sequence[Tuple[str, float]] = DEFAULT_PHASES,
        min_interval: float = 0.1,
        clock: Callable[[], float] = time.monotonic,
    ):
        phases = [(str(n), float(w)) for n, w in phases]
        if not phases:
            raise ConfigError("At least one progress phase is required")
        if any(w < 0 for _, w in phases) or abs(sum(w for _, w in phases) - 100.0) > 1e-6:
            raise ConfigError(f"Progress weights must be non-negative and sum to 100: {phases}")
        self.phases = phases
        self._offsets: Dict[str, float] = {}
        self._weights: Dict[str, float] = {}
        acc = 0.0
        for name, weight in phases:
            self._offsets[name] = acc
            self._weights[name] = weight
            acc += weight
        self.min_interval = min_interval
        self._clock = clock
        self._lock = threading.RLock()
        self._observers: List[Tuple[ProgressCB, Optional[str]]] = []
        self._states: Dict[str, ProgressState] = {}

    def has_phase(self, phase: str) -> bool:
        return phase in self._weights

    def subscribe(self, cb: ProgressCB, asset_key: Optional[str] = None) -> Callable[[], None]:
        """Observe every session, or only `asset_key`'s when given."""
        entry = (cb, asset_key)
        with self._lock:
            self._observers.append(entry)

        def unsubscribe() -> None:
            with self._lock:
                if entry in self._observers:
                    self._observers.remove(entry)
        return unsubscribe

    # ---- sessions ------------------------------------------------------------
    def begin(self, asset_key: str) -> ProgressState:
        first = self.phases[0][0]
        st = ProgressState(asset_key=asset_key, phase=first, weight=self._weights[first])
        with self._lock:
            self._states[asset_key] = st
        return st

    def end(self, asset_key: str) -> None:
        with self._lock:
            self._states.pop(asset_key, None)

    def state(self, asset_key: str) -> Optional[ProgressState]:
        with self._lock:
            return self._states.get(asset_key)

    def _session(self, asset_key: Optional[str]) -> ProgressState:
        st = self._states.get(asset_key or ANONYMOUS)
        return st if st is not None else self.begin(asset_key or ANONYMOUS)

    # ---- reporting -----------------------------------------------------------
    def report(self, phase: str, local_progress: float, message: str = "",
               asset_key: Optional[str] = None) -> Optional[float]:
        """Returns the delivered value, or None when the update was throttled."""
        if phase not in self._weights:
            raise KeyError(f"Unknown progress phase: {phase}")
        local = max(0.0, min(100.0, float(local_progress)))
        with self._lock:
            st = self._session(asset_key)
            if st.phase == phase:
                local = max(local, st.local_progress)
            st.phase, st.local_progress, st.weight = phase, local, self._weights[phase]
            total = self._offsets[phase] + local * self._weights[phase] / 100.0
            total = max(st.peak, min(100.0, total))
            return self._deliver(st, total, message)

    def finish(self, message: str = "Ready", asset_key: Optional[str] = None) -> float:
        with self._lock:
            st = self._session(asset_key)
            st.last_pct = None  # force delivery
            return self._deliver(st, 100.0, message)

    def _deliver(self, st: ProgressState, total: float, message: str) -> Optional[float]:
        now = self._clock()
        pct = int(round(total))
        due = (
            st.last_pct is None
            or now - st.last_emitted_at >= self.min_interval
            or pct != st.last_pct
            or message != st.last_message
        )
        st.peak = total
        if not due:
            return None
        st.last_emitted_at, st.last_pct, st.last_message = now, pct, message
        for cb, key in list(self._observers):
            if key is not None and key != st.asset_key:
                continue
            try:
                cb(total, message)
            except Exception:
                logger.exception("Progress observer failed")
        return total
