# asset_loader/core/download.py
from __future__ import annotations
from pathlib import Path
from typing import Callable, Dict, Optional
import logging
import time
import urllib.parse
import urllib.request

import requests
import urllib3

from .cancel import CancelToken
from .errors import HttpError, NetworkError, SizeMismatchError
from .integrity import check_sri
from .models import SourceCandidate
from .utils import size_deviation

logger = logging.getLogger(__name__)

ChunkCB = Callable[[int, int], None]  # (received_bytes, total_bytes); total 0 when unknown

class StreamingDownloader:
    """
    Fetches one candidate into memory. No UI dependencies.
    - Hard per-attempt deadline; the cancel token is checked after every chunk
    - Calls on_chunk(received, total) for every chunk, never skipping any
    - Bytes are joined once at the end; partial data is dropped on failure
    """

    def __init__(
        self,
        session: requests.Session,
        local_root: Path = Path("."),
        timeout: float = 30.0,
        tier_timeouts: Optional[Dict[str, float]] = None,
        size_tolerance: float = 0.10,
        chunk_size: int = 128 * 1024,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.session = session
        self.local_root = Path(local_root)
        self.timeout = timeout
        self.tier_timeouts = dict(tier_timeouts or {})
        self.size_tolerance = size_tolerance
        self.chunk_size = chunk_size
        self._clock = clock

    def timeout_for(self, priority_tier: str = "") -> float:
        return float(self.tier_timeouts.get(priority_tier, self.timeout))

    def download(
        self,
        candidate: SourceCandidate,
        on_chunk: Optional[ChunkCB] = None,
        expected_size: Optional[int] = None,
        token: Optional[CancelToken] = None,
        timeout: Optional[float] = None,
    ) -> bytes:
        data = self.fetch(candidate, on_chunk=on_chunk, token=token, timeout=timeout)
        self.verify(candidate, data, expected_size)
        return data

    def fetch(
        self,
        candidate: SourceCandidate,
        on_chunk: Optional[ChunkCB] = None,
        token: Optional[CancelToken] = None,
        timeout: Optional[float] = None,
    ) -> bytes:
        token = token or CancelToken()
        token.raise_if_cancelled()
        budget = self.timeout if timeout is None else timeout
        deadline = self._clock() + budget
        logger.debug("Fetching %s (%s, deadline %.0fs)", candidate.url, candidate.tier.value, budget)
        if candidate.is_local:
            return self._fetch_local(candidate, on_chunk, token, deadline)
        return self._fetch_remote(candidate, on_chunk, token, deadline, budget)

    # ---- remote ------------------------------------------------------------
    def _fetch_remote(self, candidate, on_chunk, token, deadline, budget) -> bytes:
        url = candidate.url
        try:
            with self.session.get(url, stream=True, timeout=(min(10.0, budget), budget)) as r:
                if r.status_code >= 400:
                    raise HttpError(f"HTTP {r.status_code} for {url}", status=r.status_code)
                total = _content_length(r.headers)
                reader = getattr(r, "iter_content", None)
                if reader is None:
                    # transport without incremental reads: one blocking read, 0 -> 100
                    data = r.content
                    self._check_deadline(deadline, url)
                    if on_chunk: on_chunk(len(data), len(data))
                    return data
                chunks = []
                received = 0
                if on_chunk: on_chunk(0, total)
                for chunk in reader(chunk_size=self.chunk_size):
                    token.raise_if_cancelled()
                    self._check_deadline(deadline, url)
                    if not chunk:
                        continue
                    chunks.append(chunk)
                    received += len(chunk)
                    if on_chunk: on_chunk(received, total)
        except requests.Timeout as e:
            raise NetworkError(f"Timed out fetching {url}", reason="timeout") from e
        except requests.RequestException as e:
            if _stalled_read(e):
                raise NetworkError(f"Timed out reading {url}", reason="timeout") from e
            raise NetworkError(f"Could not fetch {url}: {e}", reason="unreachable") from e
        data = b"".join(chunks)
        logger.debug("Fetched %s (%d bytes)", url, len(data))
        return data

    # ---- local -------------------------------------------------------------
    def local_path(self, candidate: SourceCandidate) -> Path:
        parts = urllib.parse.urlsplit(candidate.url)
        if parts.scheme == "file":
            return Path(urllib.request.url2pathname(parts.path))
        p = Path(urllib.parse.unquote(candidate.url))
        return p if p.is_absolute() else self.local_root / p

    def _fetch_local(self, candidate, on_chunk, token, deadline) -> bytes:
        path = self.local_path(candidate)
        try:
            total = path.stat().st_size
            chunks = []
            received = 0
            if on_chunk: on_chunk(0, total)
            with path.open("rb") as f:
                for chunk in iter(lambda: f.read(self.chunk_size), b""):
                    token.raise_if_cancelled()
                    self._check_deadline(deadline, candidate.url)
                    chunks.append(chunk)
                    received += len(chunk)
                    if on_chunk: on_chunk(received, total)
        except OSError as e:
            raise NetworkError(f"Could not open bundled {path}: {e}", reason="unreachable") from e
        return b"".join(chunks)

    # ---- checks ------------------------------------------------------------
    def verify(self, candidate: SourceCandidate, data: bytes, expected_size: Optional[int] = None) -> None:
        if candidate.integrity:
            check_sri(data, candidate.integrity)
        if not expected_size:
            return
        dev = size_deviation(len(data), expected_size)
        if dev <= self.size_tolerance:
            return
        msg = (f"Size mismatch for {candidate.url}: expected ~{expected_size}, "
               f"got {len(data)} ({dev * 100:.1f}% difference)")
        if candidate.is_local:
            # bundled copies only warn
            logger.warning(msg)
            return
        raise SizeMismatchError(msg, expected=expected_size, actual=len(data))

    def _check_deadline(self, deadline: float, url: str) -> None:
        if self._clock() > deadline:
            raise NetworkError(f"Download deadline exceeded for {url}", reason="timeout")

def _stalled_read(exc: requests.RequestException) -> bool:
    # requests re-raises a mid-body read timeout as ConnectionError(ReadTimeoutError)
    cause = exc.args[0] if exc.args else None
    return isinstance(cause, urllib3.exceptions.ReadTimeoutError)

def _content_length(headers) -> int:
    raw = (headers or {}).get("Content-Length") or "0"
    return int(raw) if str(raw).isdigit() else 0
