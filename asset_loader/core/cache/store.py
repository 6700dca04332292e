# asset_loader/core/cache/store.py
from __future__ import annotations
import hashlib
import json
import logging
import os
import time
import uuid
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from ..models import CacheEntry
from ..utils import url_digest

logger = logging.getLogger(__name__)

SCOPES = ("all", "models", "static")

class CacheStore:
    """
    On-disk store: entries/<sha256(url)>.bin plus a .json sidecar per entry.

    Blob first, sidecar last, both through os.replace: an entry without a
    sidecar does not exist. Only the cache worker thread touches this.
    """

    def __init__(self, root: Path, generation: str):
        self.root = Path(root)
        self.generation = str(generation)
        self.entries_dir = self.root / "entries"
        self.entries_dir.mkdir(parents=True, exist_ok=True)

    @property
    def marker_path(self) -> Path:
        return self.root / "GENERATION"

    # ---- paths -------------------------------------------------------------
    def _blob(self, digest: str) -> Path:
        return self.entries_dir / f"{digest}.bin"

    def _meta(self, digest: str) -> Path:
        return self.entries_dir / f"{digest}.json"

    def _write_atomic(self, target: Path, data: bytes) -> None:
        tmp = target.with_name(f"{target.name}.{uuid.uuid4().hex[:8]}.part")
        try:
            with tmp.open("wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, target)
        finally:
            if tmp.exists():
                tmp.unlink()

    def _read_meta(self, path: Path) -> Optional[Dict[str, Any]]:
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return None
        return raw if isinstance(raw, dict) and "url" in raw else None

    def _drop(self, digest: str) -> None:
        for p in (self._meta(digest), self._blob(digest)):
            try:
                p.unlink()
            except FileNotFoundError:
                pass

    def _metas(self) -> Iterator[Dict[str, Any]]:
        for p in sorted(self.entries_dir.glob("*.json")):
            meta = self._read_meta(p)
            if meta is not None:
                meta["_digest"] = p.stem
                yield meta

    # ---- reconciliation ----------------------------------------------------
    def reconcile(self) -> int:
        """Drop stale-generation entries and leftovers; returns entries dropped."""
        dropped = 0
        for p in self.entries_dir.glob("*.part"):
            p.unlink()
        for p in self.entries_dir.glob("*.json"):
            meta = self._read_meta(p)
            if meta is None or meta.get("generation") != self.generation:
                self._drop(p.stem)
                dropped += 1
        for p in self.entries_dir.glob("*.bin"):
            if not self._meta(p.stem).exists():
                p.unlink()
        previous = self.marker_path.read_text(encoding="utf-8").strip() if self.marker_path.exists() else ""
        if previous != self.generation:
            self._write_atomic(self.marker_path, self.generation.encode("utf-8"))
        if dropped:
            logger.info("Cache generation %s: dropped %d stale entries (was %s)",
                        self.generation, dropped, previous or "none")
        return dropped

    # ---- operations --------------------------------------------------------
    def lookup(self, url: str) -> Optional[CacheEntry]:
        digest = url_digest(url)
        meta = self._read_meta(self._meta(digest))
        if meta is None or meta.get("url") != url:
            return None
        if meta.get("generation") != self.generation:
            self._drop(digest)
            return None
        try:
            data = self._blob(digest).read_bytes()
        except OSError:
            self._drop(digest)
            return None
        if len(data) != meta.get("size") or hashlib.sha256(data).hexdigest() != meta.get("sha256"):
            logger.warning("Dropping corrupt cache entry for %s", url)
            self._drop(digest)
            return None
        return CacheEntry(url=url, data=data, size=len(data), stored_at=float(meta.get("stored_at", 0)),
                          generation=self.generation, kind=meta.get("kind", "static"))

    def store(self, url: str, data: bytes, kind: str = "static") -> CacheEntry:
        digest = url_digest(url)
        entry = CacheEntry(url=url, data=data, size=len(data), stored_at=time.time(),
                           generation=self.generation, kind=kind)
        meta = {
            "url": url, "size": entry.size, "stored_at": entry.stored_at,
            "generation": entry.generation, "kind": kind,
            "sha256": hashlib.sha256(data).hexdigest(),
        }
        # remove the sidecar first so a half-replaced entry is never visible
        try:
            self._meta(digest).unlink()
        except FileNotFoundError:
            pass
        self._write_atomic(self._blob(digest), data)
        self._write_atomic(self._meta(digest), json.dumps(meta, indent=2).encode("utf-8"))
        logger.debug("Cached %s (%d bytes, %s)", url, entry.size, kind)
        return entry

    def clear(self, scope: str = "all") -> int:
        if scope not in SCOPES:
            raise ValueError(f"Unknown cache scope: {scope}")
        removed = 0
        for meta in list(self._metas()):
            is_model = meta.get("kind") == "model"
            if scope == "all" or (scope == "models") == is_model:
                self._drop(meta["_digest"])
                removed += 1
        return removed

    def status(self) -> Dict[str, Any]:
        static = models = total = 0
        cached: List[str] = []
        for meta in self._metas():
            if meta.get("generation") != self.generation:
                continue
            total += int(meta.get("size") or 0)
            if meta.get("kind") == "model":
                models += 1
                cached.append(meta["url"])
            else:
                static += 1
        return {
            "static_asset_count": static,
            "model_count": models,
            "total_bytes": total,
            "generation": self.generation,
            "models_cached": cached,
        }
