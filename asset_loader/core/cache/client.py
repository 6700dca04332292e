# asset_loader/core/cache/client.py
from __future__ import annotations
import logging
import threading
import time
import uuid
from concurrent.futures import Future, TimeoutError as FutureTimeout
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from ..cancel import CancelToken
from ..errors import CacheProtocolError
from ..models import CacheEntry
from .store import CacheStore
from .worker import (
    CACHE_CLEAR, CACHE_LOOKUP, CACHE_STATUS, CACHE_STORE, CACHE_UPDATED, OFFLINE_READY,
    CacheWorker, Envelope,
)

logger = logging.getLogger(__name__)

NotifyCB = Callable[[Dict[str, Any]], None]

class CacheCoordinator:
    """
    Request/response front for the cache worker.

    Every request gets a fresh correlation id and its own Future; only the
    reply carrying that id in `reply_to` resolves it. Anything that goes
    wrong on the way (timeout, dead worker, bad reply) is a CacheProtocolError.
    """

    def __init__(self, root: Path, generation: str, request_timeout: float = 5.0, start: bool = True):
        self.root = Path(root)
        self.request_timeout = request_timeout
        self._lock = threading.Lock()
        self._pending: Dict[str, Future] = {}
        self._subscribers: Dict[str, List[NotifyCB]] = {CACHE_UPDATED: [], OFFLINE_READY: []}
        self.worker = CacheWorker(CacheStore(self.root, generation), self._dispatch)
        if start:
            self.start()

    @property
    def generation(self) -> str:
        return self.worker.store.generation

    def start(self) -> None:
        if not self.worker.is_alive():
            self.worker.start()

    def close(self, timeout: float = 2.0) -> None:
        if self.worker.is_alive():
            self.worker.stop()
            self.worker.join(timeout)
        with self._lock:
            pending, self._pending = self._pending, {}
        for fut in pending.values():
            if not fut.done():
                fut.set_exception(CacheProtocolError("cache coordinator closed"))

    # ---- transport -----------------------------------------------------------
    def request(self, mtype: str, payload: Optional[Dict[str, Any]] = None,
                timeout: Optional[float] = None, token: Optional[CancelToken] = None) -> Dict[str, Any]:
        if not self.worker.is_alive():
            raise CacheProtocolError("cache worker is not running")
        cid = uuid.uuid4().hex
        fut: Future = Future()
        with self._lock:
            self._pending[cid] = fut
        try:
            self.worker.post({"type": mtype, "id": cid, "payload": payload or {}})
            reply = self._wait(fut, self.request_timeout if timeout is None else timeout, token)
        finally:
            with self._lock:
                self._pending.pop(cid, None)
        if not isinstance(reply, dict) or "ok" not in reply:
            raise CacheProtocolError(f"Malformed {mtype} reply: {reply!r}")
        if not reply["ok"]:
            raise CacheProtocolError(f"{mtype} failed: {reply.get('error', 'unknown error')}")
        body = reply.get("payload")
        if not isinstance(body, dict):
            raise CacheProtocolError(f"Malformed {mtype} payload")
        return body

    def _wait(self, fut: Future, timeout: float, token: Optional[CancelToken]) -> Any:
        deadline = time.monotonic() + timeout
        while True:
            if token is not None:
                token.raise_if_cancelled()
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise CacheProtocolError(f"No reply from cache worker within {timeout:.1f}s")
            try:
                return fut.result(timeout=min(0.05, remaining))
            except FutureTimeout:
                if not self.worker.is_alive():
                    raise CacheProtocolError("cache worker died")

    def _dispatch(self, msg: Envelope) -> None:
        reply_to = msg.get("reply_to")
        if reply_to is not None:
            with self._lock:
                fut = self._pending.get(reply_to)
            if fut is None or fut.done():
                logger.debug("Discarding late cache reply %s", reply_to)
                return
            fut.set_result(msg)
            return
        mtype = msg.get("type", "")
        with self._lock:
            subscribers = list(self._subscribers.get(mtype, []))
        for cb in subscribers:
            try:
                cb(msg.get("payload") or {})
            except Exception:
                logger.exception("Cache %s subscriber failed", mtype)

    def subscribe(self, mtype: str, cb: NotifyCB) -> Callable[[], None]:
        if mtype not in self._subscribers:
            raise ValueError(f"Not a cache notification: {mtype}")
        with self._lock:
            self._subscribers[mtype].append(cb)

        def unsubscribe() -> None:
            with self._lock:
                if cb in self._subscribers[mtype]:
                    self._subscribers[mtype].remove(cb)
        return unsubscribe

    # ---- protocol ------------------------------------------------------------
    def store(self, url: str, data: bytes, kind: str = "static",
              token: Optional[CancelToken] = None) -> Dict[str, Any]:
        return self.request(CACHE_STORE, {"url": url, "data": data, "kind": kind}, token=token)

    def lookup(self, url: str, token: Optional[CancelToken] = None) -> Optional[CacheEntry]:
        body = self.request(CACHE_LOOKUP, {"url": url}, token=token)
        if not body.get("hit"):
            return None
        data, meta = body.get("data"), body.get("meta")
        if not isinstance(data, bytes) or not isinstance(meta, dict):
            raise CacheProtocolError("Malformed CACHE_LOOKUP hit")
        return CacheEntry(url=url, data=data, size=len(data), stored_at=float(meta.get("stored_at", 0)),
                          generation=str(meta.get("generation", "")), kind=meta.get("kind", "static"))

    def clear(self, scope: str = "all") -> int:
        return int(self.request(CACHE_CLEAR, {"scope": scope}).get("removed", 0))

    def status(self) -> Dict[str, Any]:
        return self.request(CACHE_STATUS)
