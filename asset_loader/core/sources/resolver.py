# asset_loader/core/sources/resolver.py
from __future__ import annotations
import logging
import threading
import time
from typing import Callable, Dict, List, Optional, Tuple

import requests

from ..models import AssetDescriptor, SourceCandidate
from .mirrors import default_candidates

logger = logging.getLogger(__name__)

class SourceResolver:
    """
    Ordered candidate lists plus a TTL-bounded availability cache.

    Both positive and negative probe outcomes are remembered for `probe_ttl`
    seconds, so a dead mirror is not hammered on every load.
    """

    def __init__(
        self,
        session: requests.Session,
        probe_ttl: float = 300.0,
        probe_timeout: float = 8.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.session = session
        self.probe_ttl = probe_ttl
        self.probe_timeout = probe_timeout
        self._clock = clock
        self._lock = threading.Lock()
        self._probes: Dict[str, Tuple[bool, float]] = {}

    def resolve_candidates(self, descriptor: AssetDescriptor) -> List[SourceCandidate]:
        if descriptor.sources:
            return list(descriptor.sources)
        return default_candidates(descriptor.kind.value, descriptor.filename)

    # ---- availability cache --------------------------------------------------
    def cached_availability(self, candidate: SourceCandidate) -> Optional[bool]:
        if candidate.is_local:
            return True
        with self._lock:
            hit = self._probes.get(candidate.url)
            if hit is None:
                return None
            available, at = hit
            if self._clock() - at >= self.probe_ttl:
                del self._probes[candidate.url]
                return None
            return available

    def mark(self, candidate: SourceCandidate, available: bool) -> None:
        if candidate.is_local:
            return
        with self._lock:
            self._probes[candidate.url] = (available, self._clock())

    def cleanup(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [u for u, (_, at) in self._probes.items() if now - at >= self.probe_ttl]
            for u in expired:
                del self._probes[u]
        if expired:
            logger.debug("Dropped %d expired probe results", len(expired))
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._probes.clear()

    # ---- probing -------------------------------------------------------------
    def probe(self, candidate: SourceCandidate) -> bool:
        cached = self.cached_availability(candidate)
        if cached is not None:
            return cached
        available = self._head_ok(candidate.url)
        logger.debug("Probe %s -> %s", candidate.url, "ok" if available else "unavailable")
        self.mark(candidate, available)
        return available

    def _head_ok(self, url: str) -> bool:
        try:
            r = self.session.head(url, timeout=self.probe_timeout, allow_redirects=True)
            if r.status_code < 400: return True
            # some CDNs refuse HEAD; a one-byte ranged read is still cheap
            r = self.session.get(url, timeout=self.probe_timeout, stream=True,
                                 headers={"Range": "bytes=0-0"})
            r.close()
            return r.status_code < 400
        except requests.RequestException as e:
            logger.debug("Probe %s failed: %s", url, e)
            return False
