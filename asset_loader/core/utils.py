from __future__ import annotations
import hashlib, math, urllib.parse
from typing import Optional

SIZE_UNITS = ("B", "KB", "MB", "GB", "TB")

def human_size(n: Optional[int]) -> str:
    """1536 -> '1.50 KB'; unknown or empty sizes render as '?'."""
    if not n or n <= 0:
        return "?"
    exp = min(int(math.log(n, 1024)), len(SIZE_UNITS) - 1)
    return f"{n / 1024 ** exp:.2f} {SIZE_UNITS[exp]}"

def is_local_ref(url: str) -> bool:
    """Relative paths and host-less file: URLs ship with the application."""
    parts = urllib.parse.urlsplit(url or "")
    if parts.scheme == "file":
        return parts.netloc.lower() in ("", "localhost")
    if parts.netloc:
        # protocol-relative (//host/x) points at another origin
        return False
    # a bare Windows drive letter parses as a one-letter scheme
    return not parts.scheme or len(parts.scheme) == 1

def url_digest(url: str) -> str:
    return hashlib.sha256((url or "").encode("utf-8")).hexdigest()

def size_deviation(actual: int, expected: int) -> float:
    """Relative difference, e.g. 0.46 for 5.0MB against 9.3MB."""
    if not expected:
        return 0.0
    return abs(actual - expected) / expected
