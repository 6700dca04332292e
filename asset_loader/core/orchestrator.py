# asset_loader/core/orchestrator.py
"""
Dependency orchestrator: the one entry point the model runner talks to.

ensure_loaded(key) walks
    Idle -> Checking (single-flight, cache) -> Fetching[i] -> Validating -> Storing -> Ready
and advances to candidate i+1 on any per-candidate failure. Only the final
AggregateSourceFailure (or a stale re-fetch failure, or cancellation) reaches
the caller.
"""
from __future__ import annotations
import logging
import threading
import time
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional, Set, Tuple

import requests

from .cache import CacheCoordinator
from .cancel import CancelToken, retry_with_backoff
from .config import AssetTable, Settings
from .download import StreamingDownloader
from .errors import (
    AggregateSourceFailure, AssetLoaderError, CacheProtocolError, ConfigError, HttpError,
    IntegrityError, LoadCancelled, NetworkError, StaleDependencyError, error_kind,
)
from .http import SESSION
from .integrity import IntegrityValidator
from .models import (
    AssetDescriptor, AssetKind, LoadAttempt, LoadState, SingleFlightTicket, SourceCandidate,
)
from .progress import ProgressAggregator, ProgressCB
from .sources import SourceResolver
from .utils import human_size

logger = logging.getLogger(__name__)

HealthCheck = Callable[[bytes], bool]

# per-candidate failures that advance the fallback chain
_CANDIDATE_ERRORS = (NetworkError, HttpError, IntegrityError, ConfigError)

# hard cap on the attempt log on top of its age limit
MAX_ATTEMPTS = 500

class DependencyOrchestrator:
    def __init__(
        self,
        assets: AssetTable,
        settings: Optional[Settings] = None,
        session: Optional[requests.Session] = None,
        cache: Optional[CacheCoordinator] = None,
        validator: Optional[IntegrityValidator] = None,
        resolver: Optional[SourceResolver] = None,
        downloader: Optional[StreamingDownloader] = None,
        progress: Optional[ProgressAggregator] = None,
        use_cache: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.assets = assets
        self.settings = settings or Settings()
        s = self.settings
        session = session or SESSION
        self.validator = validator or IntegrityValidator(s.allowed_hosts, s.origin or None)
        self.resolver = resolver or SourceResolver(session, probe_ttl=s.probe_ttl, probe_timeout=s.probe_timeout)
        self.downloader = downloader or StreamingDownloader(
            session, local_root=s.local_root, timeout=s.download_timeout,
            tier_timeouts=s.tier_timeouts, size_tolerance=s.size_tolerance,
        )
        self.progress = progress or ProgressAggregator(s.phases, min_interval=s.progress_interval)
        if cache is None and use_cache:
            cache = CacheCoordinator(s.cache_dir, s.cache_generation, request_timeout=s.cache_request_timeout)
        self.cache = cache

        self._lock = threading.Lock()
        self._tickets: Dict[str, SingleFlightTicket] = {}
        self._states: Dict[str, str] = {}
        self._loaded: Dict[str, bytes] = {}
        self._winners: Dict[str, LoadAttempt] = {}
        self._attempts: Deque[LoadAttempt] = deque(maxlen=MAX_ATTEMPTS)
        self._clock = clock
        self._health: Dict[str, HealthCheck] = {}
        self._refetched: Set[str] = set()
        self._bypass_cache: Set[str] = set()
        self._substitutions: Dict[str, str] = {}
        self._substituting: Set[str] = set()

    def __enter__(self) -> "DependencyOrchestrator":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def close(self) -> None:
        if self.cache is not None:
            self.cache.close()

    # ---- public surface ------------------------------------------------------
    def ensure_loaded(self, key: str, token: Optional[CancelToken] = None) -> bytes:
        """Bytes of `key` (or of its model-tier substitute, see resolved_key())."""
        return self._ensure(key, token, allow_substitution=True, top=True)

    def resolved_key(self, key: str) -> str:
        with self._lock:
            return self._substitutions.get(key, key)

    def subscribe_progress(self, cb: ProgressCB, asset_key: Optional[str] = None) -> Callable[[], None]:
        return self.progress.subscribe(cb, asset_key)

    def subscribe_cache(self, mtype: str, cb: Callable[[Dict[str, Any]], None]) -> Optional[Callable[[], None]]:
        if self.cache is None:
            return None
        return self.cache.subscribe(mtype, cb)

    def register_health_check(self, key: str, check: HealthCheck) -> None:
        self.assets.get(key)
        with self._lock:
            self._health[key] = check

    def abort_all(self, reason: str = "aborted by user") -> int:
        with self._lock:
            tickets = list(self._tickets.values())
        for t in tickets:
            t.token.cancel(reason)
        if tickets:
            logger.info("Aborting %d in-flight load(s)", len(tickets))
        return len(tickets)

    def attempts(self, key: Optional[str] = None) -> List[LoadAttempt]:
        """Attempts younger than settings.attempt_max_age, oldest first."""
        with self._lock:
            self._prune_attempts()
            return [a for a in self._attempts if key is None or a.asset_key == key]

    def stats(self) -> Dict[str, int]:
        out = {"total": 0, "remote_success": 0, "local_success": 0, "cache_hits": 0, "failures": 0}
        for a in self.attempts():
            out["total"] += 1
            if not a.ok:
                out["failures"] += 1
            elif a.cached:
                out["cache_hits"] += 1
            elif a.tier.value == "local":
                out["local_success"] += 1
            else:
                out["remote_success"] += 1
        return out

    def get_status(self) -> Dict[str, Any]:
        with self._lock:
            loaded = list(self._loaded)
            active = {k: self._states.get(k, LoadState.CHECKING.value) for k in self._tickets}
            substitutions = dict(self._substitutions)
            winners = {k: a.tier.value if not a.cached else "cache" for k, a in self._winners.items()}
        return {
            "loaded_keys": loaded,
            "active_loads": active,
            "cache_summary": self.cache_summary(),
            "attempts": self.attempts(),
            "sources": winners,
            "substitutions": substitutions,
            "stats": self.stats(),
        }

    def cache_summary(self) -> Optional[Dict[str, Any]]:
        if self.cache is None:
            return None
        try:
            return self.cache.status()
        except CacheProtocolError as e:
            logger.warning("Cache status unavailable: %s", e)
            return None

    def clear_cache(self, scope: str = "all") -> int:
        if self.cache is None:
            return 0
        try:
            removed = self.cache.clear(scope)
        except CacheProtocolError as e:
            logger.warning("Cache clear failed: %s", e)
            return 0
        logger.info("Cleared %d cached entr%s (%s)", removed, "y" if removed == 1 else "ies", scope)
        return removed

    def check_sources(self, key: str) -> List[Tuple[SourceCandidate, bool]]:
        descriptor = self.assets.get(key)
        out = []
        for c in self.resolver.resolve_candidates(descriptor):
            ok = self.validator.validate(c.url) and self.resolver.probe(c)
            out.append((c, ok))
        return out

    def preload(self, keys: Optional[List[str]] = None) -> List[Dict[str, Any]]:
        results: List[Dict[str, Any]] = []
        for key in keys or self.settings.critical_assets or [d.key for d in self.assets.runtimes()]:
            try:
                data = self.ensure_loaded(key)
            except AssetLoaderError as e:
                results.append({"key": key, "success": False, "error": str(e)})
                continue
            with self._lock:
                win = self._winners.get(self._substitutions.get(key, key))
            source = "memory" if win is None else ("cache" if win.cached else win.tier.value)
            results.append({"key": key, "success": True, "source": source,
                            "resolved": self.resolved_key(key), "size": len(data)})
        return results

    # ---- single flight -------------------------------------------------------
    def _ensure(self, key: str, token: Optional[CancelToken], allow_substitution: bool,
                top: bool = False) -> bytes:
        descriptor = self.assets.get(key)
        ready = self._ready(key)
        if ready is not None:
            return ready
        with self._lock:
            if key in self._loaded:
                # settled while we were checking health
                return self._loaded[key]
            ticket = self._tickets.get(key)
            leader = ticket is None
            if leader:
                ticket = SingleFlightTicket(asset_key=key, token=token or CancelToken())
                self._tickets[key] = ticket
                self._states[key] = LoadState.CHECKING.value
        if not leader:
            logger.debug("Joining in-flight load of %s", key)
            return ticket.future.result()
        try:
            data = self._run(descriptor, ticket.token, allow_substitution, top)
        except BaseException as e:
            ticket.future.set_exception(e)
            raise
        else:
            ticket.future.set_result(data)
            return data
        finally:
            with self._lock:
                if self._tickets.get(key) is ticket:
                    del self._tickets[key]
                self._states.pop(key, None)

    def _ready(self, key: str) -> Optional[bytes]:
        with self._lock:
            data = self._loaded.get(key)
            check = self._health.get(key)
        if data is None:
            return None
        if check is None or self._healthy(key, check, data):
            return data
        with self._lock:
            if key in self._refetched:
                raise StaleDependencyError(key)
            self._refetched.add(key)
            self._loaded.pop(key, None)
            self._winners.pop(key, None)
            self._bypass_cache.add(key)
        logger.warning("%s failed its health check; re-fetching once", key)
        return None

    def _healthy(self, key: str, check: HealthCheck, data: bytes) -> bool:
        try:
            return bool(check(data))
        except Exception:
            logger.exception("Health check for %s raised", key)
            return False

    # ---- state machine -------------------------------------------------------
    def _run(self, descriptor: AssetDescriptor, token: CancelToken, allow_substitution: bool,
             top: bool = False) -> bytes:
        key = descriptor.key
        is_model = descriptor.kind is AssetKind.MODEL
        phase = "model" if is_model else "runtime"
        self.progress.begin(key)
        try:
            if is_model:
                for rt in self.assets.runtimes():
                    self._report(key, "runtime", 0, f"Loading {rt.description}...")
                    self._ensure(rt.key, token, allow_substitution=False)
                self._report(key, "runtime", 100, "Runtime ready")
            try:
                data = self._load_from_sources(descriptor, phase, token)
            except AggregateSourceFailure as first:
                if not (is_model and allow_substitution):
                    raise
                data = self._substitute(descriptor, first, token)
            with self._lock:
                self._loaded[key] = data
            if top:
                self.progress.finish(f"{descriptor.description} ready", asset_key=key)
            else:
                self._report(key, phase, 100, f"{descriptor.description} ready")
            return data
        finally:
            self.progress.end(key)

    def _substitute(self, descriptor: AssetDescriptor, first: AggregateSourceFailure,
                    token: CancelToken) -> bytes:
        key = descriptor.key
        alt = self.assets.smallest_model(exclude=key)
        if alt is None:
            raise first
        with self._lock:
            self._substituting.add(key)
            # the other side is already substituting back to us: nothing left to try
            deadlocked = alt.key in self._tickets and alt.key in self._substituting
        try:
            if deadlocked:
                raise AggregateSourceFailure(key, first.attempts,
                                             f"Could not obtain '{key}'; fallback '{alt.key}' also exhausted")
            logger.warning("All sources for %s failed; falling back to smallest model %s", key, alt.key)
            with self._lock:
                self._substitutions[key] = alt.key
            try:
                return self._ensure(alt.key, token, allow_substitution=False)
            except AggregateSourceFailure as second:
                with self._lock:
                    self._substitutions.pop(key, None)
                raise AggregateSourceFailure(
                    key, first.attempts + second.attempts,
                    f"Could not obtain '{key}' or fallback '{alt.key}' from any source",
                ) from second
        finally:
            with self._lock:
                self._substituting.discard(key)

    def _load_from_sources(self, descriptor: AssetDescriptor, phase: str, token: CancelToken) -> bytes:
        key = descriptor.key
        candidates = self.resolver.resolve_candidates(descriptor)
        with self._lock:
            bypass = key in self._bypass_cache
            self._bypass_cache.discard(key)

        if not bypass:
            hit = self._cache_lookup(descriptor, candidates, token)
            if hit is not None:
                cand, data = hit
                self._record(key, cand, None, cached=True)
                logger.info("Loaded %s from cache (%s)", key, human_size(len(data)))
                return data

        failures: List[LoadAttempt] = []
        budget = self.downloader.timeout_for(descriptor.priority_tier)
        for i, cand in enumerate(candidates):
            token.raise_if_cancelled()
            self._set_state(key, f"{LoadState.FETCHING.value}[{i}]")
            if self.resolver.cached_availability(cand) is False:
                logger.info("Skipping %s for %s: marked unavailable", cand.url, key)
                failures.append(self._record(key, cand, NetworkError("recently unavailable", reason="unavailable")))
                continue
            try:
                if not self.validator.validate(cand.url):
                    raise IntegrityError(f"Rejected {cand.url}: {self.validator.reason(cand.url)}")
                self._report(key, phase, 5, f"Connecting to {cand.tier.value} source...")
                data = self.downloader.fetch(
                    cand, on_chunk=self._chunk_reporter(key, phase, descriptor), token=token, timeout=budget)
                self._set_state(key, LoadState.VALIDATING.value)
                self.downloader.verify(cand, data, descriptor.expected_size)
            except LoadCancelled as e:
                self._record(key, cand, e)
                self._set_state(key, LoadState.FAILED.value)
                raise
            except _CANDIDATE_ERRORS as e:
                logger.warning("Failed to load %s from %s (%s): %s", key, cand.tier.value, cand.url, e)
                failures.append(self._record(key, cand, e))
                self.resolver.mark(cand, False)
                continue
            self.resolver.mark(cand, True)
            self._record(key, cand, None)
            self._set_state(key, LoadState.STORING.value)
            self._cache_store(descriptor, cand, data, token)
            self._set_state(key, LoadState.READY.value)
            logger.info("Loaded %s from %s (%s)", key, cand.tier.value, human_size(len(data)))
            return data

        self._set_state(key, LoadState.FAILED.value)
        raise AggregateSourceFailure(key, failures)

    # ---- helpers -------------------------------------------------------------
    def _set_state(self, key: str, state: str) -> None:
        with self._lock:
            if key in self._tickets:
                self._states[key] = state

    def _record(self, key: str, cand: SourceCandidate, exc: Optional[BaseException],
                cached: bool = False) -> LoadAttempt:
        attempt = LoadAttempt(
            asset_key=key, url=cand.url, tier=cand.tier,
            outcome="failure" if exc else "success",
            error_kind=error_kind(exc) if exc else None,
            error=str(exc) if exc else "",
            cached=cached,
            timestamp=self._clock(),
        )
        with self._lock:
            self._prune_attempts()
            self._attempts.append(attempt)
            if exc is None:
                self._winners[key] = attempt
        return attempt

    def _prune_attempts(self) -> None:
        # appended in clock order, so expired entries sit at the left
        cutoff = self._clock() - self.settings.attempt_max_age
        while self._attempts and self._attempts[0].timestamp < cutoff:
            self._attempts.popleft()

    def _report(self, key: str, phase: str, local: float, message: str) -> None:
        if self.progress.has_phase(phase):
            self.progress.report(phase, local, message, asset_key=key)

    def _chunk_reporter(self, key: str, phase: str, descriptor: AssetDescriptor) -> Callable[[int, int], None]:
        label = "model" if descriptor.kind is AssetKind.MODEL else "runtime"

        def on_chunk(received: int, total: int) -> None:
            total = total or descriptor.expected_size or 0
            if total <= 0:
                return
            pct = min(100.0, received * 100.0 / total)
            self._report(key, phase, 5 + pct * 0.9,
                         f"Downloading {label}... {received / 1048576:.1f}MB / {total / 1048576:.1f}MB")
        return on_chunk

    def _cache_lookup(self, descriptor: AssetDescriptor, candidates: List[SourceCandidate],
                      token: CancelToken) -> Optional[Tuple[SourceCandidate, bytes]]:
        if self.cache is None:
            return None
        for cand in candidates:
            try:
                entry = self.cache.lookup(cand.url, token=token)
            except CacheProtocolError as e:
                logger.debug("Cache lookup for %s failed, treating as miss: %s", descriptor.key, e)
                return None
            if entry is not None:
                return cand, entry.data
        return None

    def _cache_store(self, descriptor: AssetDescriptor, cand: SourceCandidate, data: bytes,
                     token: CancelToken) -> None:
        if self.cache is None:
            return
        try:
            retry_with_backoff(
                lambda: self.cache.store(cand.url, data, kind=descriptor.kind.value, token=token),
                attempts=2, base_delay=0.2, token=token, retry_on=(CacheProtocolError,),
            )
        except CacheProtocolError as e:
            logger.warning("Could not cache %s: %s", descriptor.key, e)
