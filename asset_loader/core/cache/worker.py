# asset_loader/core/cache/worker.py
from __future__ import annotations
import logging
import queue
import threading
from typing import Any, Callable, Dict

from .store import CacheStore

logger = logging.getLogger(__name__)

Envelope = Dict[str, Any]

# request types
CACHE_STORE = "CACHE_STORE"
CACHE_LOOKUP = "CACHE_LOOKUP"
CACHE_CLEAR = "CACHE_CLEAR"
CACHE_STATUS = "CACHE_STATUS"

# push notifications
CACHE_UPDATED = "CACHE_UPDATED"
OFFLINE_READY = "OFFLINE_READY"

_STOP = object()

class CacheWorker(threading.Thread):
    """
    Owns the CacheStore and answers {type, id, payload} envelopes one at a
    time, so every mutation of a key is serialized here.

    Replies go to `outbox` as {type: "<TYPE>_RESULT", reply_to, ok, payload|error};
    notifications go out as {type: CACHE_UPDATED|OFFLINE_READY, payload}.
    """

    def __init__(self, store: CacheStore, outbox: Callable[[Envelope], None]):
        super().__init__(name="cache-worker", daemon=True)
        self.store = store
        self.outbox = outbox
        self.inbox: "queue.Queue[Any]" = queue.Queue()
        self._offline_announced = False
        self._handlers: Dict[str, Callable[[Dict[str, Any]], Any]] = {
            CACHE_STORE: self._on_store,
            CACHE_LOOKUP: self._on_lookup,
            CACHE_CLEAR: self._on_clear,
            CACHE_STATUS: self._on_status,
        }

    def post(self, envelope: Envelope) -> None:
        self.inbox.put(envelope)

    def stop(self) -> None:
        self.inbox.put(_STOP)

    def run(self) -> None:
        try:
            self.store.reconcile()
        except OSError:
            logger.exception("Cache reconciliation failed")
        while True:
            msg = self.inbox.get()
            if msg is _STOP:
                break
            self._handle(msg)
        logger.debug("Cache worker stopped")

    def _handle(self, msg: Any) -> None:
        if not isinstance(msg, dict) or "id" not in msg:
            logger.warning("Dropping malformed cache message: %r", msg)
            return
        mtype = msg.get("type")
        reply: Envelope = {"type": f"{mtype}_RESULT", "reply_to": msg["id"]}
        handler = self._handlers.get(mtype)
        if handler is None:
            reply.update(ok=False, error=f"Unknown message type: {mtype}")
        else:
            try:
                reply.update(ok=True, payload=handler(msg.get("payload") or {}))
            except (OSError, ValueError, KeyError, TypeError) as e:
                logger.warning("Cache %s failed: %s", mtype, e)
                reply.update(ok=False, error=str(e))
        self.outbox(reply)
        if reply["ok"] and mtype in (CACHE_STORE, CACHE_CLEAR):
            self._notify_updated(mtype)

    # ---- handlers ------------------------------------------------------------
    def _on_store(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        data = payload["data"]
        if not isinstance(data, (bytes, bytearray, memoryview)):
            raise TypeError("CACHE_STORE payload.data must be bytes")
        entry = self.store.store(payload["url"], bytes(data), kind=payload.get("kind", "static"))
        return {"url": entry.url, "size": entry.size, "generation": entry.generation}

    def _on_lookup(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        entry = self.store.lookup(payload["url"])
        if entry is None:
            return {"hit": False}
        return {
            "hit": True,
            "data": entry.data,
            "meta": {"size": entry.size, "stored_at": entry.stored_at,
                     "generation": entry.generation, "kind": entry.kind},
        }

    def _on_clear(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        removed = self.store.clear(payload.get("scope", "all"))
        self._offline_announced = False
        return {"removed": removed}

    def _on_status(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self.store.status()

    # ---- notifications -------------------------------------------------------
    def _notify_updated(self, cause: str) -> None:
        status = self.store.status()
        self.outbox({"type": CACHE_UPDATED, "payload": {"cause": cause, **status}})
        if not self._offline_announced and status["static_asset_count"] and status["model_count"]:
            self._offline_announced = True
            self.outbox({"type": OFFLINE_READY, "payload": status})
