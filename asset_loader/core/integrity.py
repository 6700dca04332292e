"""
URL approval and subresource-integrity checks.

- IntegrityValidator.validate(url): pure predicate over configuration + url.
  Same-origin (relative, file:, or matching `origin`) is fine unless a path
  segment is "..". Cross-origin needs https and an allow-listed host.
- check_sri(data, "sha384-<base64>"): raise IntegrityError on mismatch.
"""
from __future__ import annotations
import base64
import binascii
import hashlib
import logging
import urllib.parse
from typing import Iterable, List, Optional, Tuple

from .errors import ConfigError, IntegrityError
from .utils import is_local_ref

logger = logging.getLogger(__name__)

SRI_ALGOS = ("sha256", "sha384", "sha512")  # weakest -> strongest

class IntegrityValidator:
    def __init__(self, allowed_hosts: Iterable[str] = (), origin: Optional[str] = None):
        self.allowed_hosts = frozenset(h.strip().lower() for h in allowed_hosts if h and h.strip())
        self.origin = _origin_of(origin) if origin else None

    def validate(self, url: str) -> bool:
        return not self.reason(url)

    def reason(self, url: str) -> str:
        """Why `url` is rejected, or "" when it is allowed."""
        if not url or not url.strip():
            return "empty url"
        url = url.strip()
        parts = urllib.parse.urlsplit(url)
        if parts.username or parts.password:
            return "credentials in url"
        if has_traversal(parts.path):
            return "path traversal"
        if self._same_origin(url):
            return ""
        if parts.scheme.lower() != "https":
            return "insecure scheme"
        host = (parts.hostname or "").lower()
        if host not in self.allowed_hosts:
            return f"host '{host}' not in allow-list"
        return ""

    def _same_origin(self, url: str) -> bool:
        if is_local_ref(url):
            return True
        return self.origin is not None and _origin_of(url) == self.origin

def _origin_of(url: str) -> Tuple[str, str, Optional[int]]:
    p = urllib.parse.urlsplit(url)
    port = p.port or {"http": 80, "https": 443}.get(p.scheme.lower())
    return (p.scheme.lower(), (p.hostname or "").lower(), port)

def has_traversal(path: str) -> bool:
    decoded = urllib.parse.unquote(path or "").replace("\\", "/")
    return any(seg == ".." for seg in decoded.split("/"))

# ---- subresource integrity ---------------------------------------------------
def parse_sri(value: str) -> List[Tuple[str, bytes]]:
    out: List[Tuple[str, bytes]] = []
    for token in (value or "").split():
        algo, sep, b64 = token.partition("-")
        algo = algo.lower()
        if not sep or algo not in SRI_ALGOS:
            raise ConfigError(f"Unsupported integrity value: {token!r}")
        try:
            digest = base64.b64decode(b64.split("?")[0], validate=True)
        except (binascii.Error, ValueError) as e:
            raise ConfigError(f"Malformed integrity digest: {token!r}") from e
        if len(digest) != hashlib.new(algo).digest_size:
            raise ConfigError(f"Integrity digest has wrong length for {algo}")
        out.append((algo, digest))
    if not out:
        raise ConfigError("Empty integrity value")
    return out

def sri_for(data: bytes, algo: str = "sha384") -> str:
    return f"{algo}-" + base64.b64encode(hashlib.new(algo, data).digest()).decode("ascii")

def check_sri(data: bytes, value: str) -> None:
    entries = parse_sri(value)
    # only the strongest algorithm present counts
    strongest = max(SRI_ALGOS.index(a) for a, _ in entries)
    algo = SRI_ALGOS[strongest]
    actual = hashlib.new(algo, data).digest()
    if not any(d == actual for a, d in entries if a == algo):
        raise IntegrityError(f"Integrity mismatch ({algo})")
    logger.debug("Integrity OK (%s)", algo)
