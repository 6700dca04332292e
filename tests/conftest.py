"""
Shared fixtures: a requests-like fake session (no network), a manual clock,
and small asset tables pointing at allow-listed hosts and tmp_path files.
"""
import threading
from typing import Any, Dict, Iterable, List, Optional

import pytest

from asset_loader.core import DependencyOrchestrator, Settings, load_assets

ALLOWED = ["cdn.jsdelivr.net", "example-cdn.com", "mirror.example-cdn.com"]

class FakeResponse:
    def __init__(self, status_code: int = 200, body: bytes = b"",
                 headers: Optional[Dict[str, str]] = None, chunks: Optional[Iterable[bytes]] = None):
        self.status_code = status_code
        self.body = body
        self.headers = dict(headers or {})
        if "Content-Length" not in self.headers and chunks is None:
            self.headers["Content-Length"] = str(len(body))
        self._chunks = chunks
        self.closed = False

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False

    @property
    def content(self) -> bytes:
        return self.body

    def iter_content(self, chunk_size: int = 1024):
        if self._chunks is not None:
            yield from self._chunks
            return
        for i in range(0, len(self.body), chunk_size):
            yield self.body[i:i + chunk_size]

    def close(self) -> None:
        self.closed = True

class FakeSession:
    """
    routes[url] may be bytes (200), an int status, an exception instance to
    raise, a FakeResponse factory (callable taking the url), or a FakeResponse.
    """

    def __init__(self, routes: Optional[Dict[str, Any]] = None):
        self.routes: Dict[str, Any] = dict(routes or {})
        self.heads: Dict[str, Any] = {}
        self.calls: List[tuple] = []
        self._lock = threading.Lock()

    def count(self, url: str, method: str = "GET") -> int:
        with self._lock:
            return sum(1 for m, u, _ in self.calls if m == method and u == url)

    def _respond(self, route: Any, url: str) -> FakeResponse:
        if route is None:
            return FakeResponse(404)
        if isinstance(route, BaseException):
            raise route
        if isinstance(route, FakeResponse):
            return route
        if isinstance(route, int):
            return FakeResponse(route)
        if isinstance(route, (bytes, bytearray)):
            return FakeResponse(200, bytes(route))
        if callable(route):
            return route(url)
        raise TypeError(f"bad route for {url}: {route!r}")

    def get(self, url, stream=False, timeout=None, headers=None, **kw):
        with self._lock:
            self.calls.append(("GET", url, dict(headers or {})))
        return self._respond(self.routes.get(url), url)

    def head(self, url, timeout=None, allow_redirects=True, **kw):
        with self._lock:
            self.calls.append(("HEAD", url, {}))
        route = self.heads.get(url, self.routes.get(url))
        resp = self._respond(route, url)
        return FakeResponse(resp.status_code)

class FakeClock:
    def __init__(self, start: float = 1000.0, step: float = 0.0):
        self.t = start
        self.step = step

    def __call__(self) -> float:
        now = self.t
        self.t += self.step
        return now

    def advance(self, seconds: float) -> None:
        self.t += seconds

# ---- asset tables ------------------------------------------------------------
RUNTIME_URL = "https://cdn.jsdelivr.net/npm/onnxruntime-web@1.18.0/dist/ort.min.js"
RUNTIME_LOCAL = "./lib/ort.min.js"

def model_urls(name: str) -> List[str]:
    return [
        f"https://example-cdn.com/models/{name}.onnx",
        f"https://mirror.example-cdn.com/models/{name}.onnx",
        f"./models/{name}.onnx",
    ]

def _tier(i: int, url: str) -> str:
    if url.startswith(("./", "file:")):
        return "local"
    return "remote-primary" if i == 0 else "remote-secondary"

def model_entry(key: str, size: int, urls: Optional[List[str]] = None, **extra) -> Dict[str, Any]:
    urls = urls or model_urls(key)
    sources = [{"url": u, "tier": _tier(i, u)} for i, u in enumerate(urls)]
    entry = {"key": key, "kind": "model", "filename": f"{key}.onnx",
             "expected_size": size, "priority": "high", "sources": sources}
    entry.update(extra)
    return entry

def runtime_entry() -> Dict[str, Any]:
    return {"key": "onnxruntime", "kind": "runtime", "filename": "ort.min.js", "priority": "high",
            "sources": [{"url": RUNTIME_URL, "tier": "remote-primary"},
                        {"url": RUNTIME_LOCAL, "tier": "local"}]}

@pytest.fixture
def session():
    return FakeSession({RUNTIME_URL: b"// ort runtime"})

@pytest.fixture
def clock():
    return FakeClock()

@pytest.fixture
def settings(tmp_path):
    return Settings(
        allowed_hosts=list(ALLOWED),
        local_root=tmp_path,
        cache_dir=tmp_path / "cache",
        progress_interval=0.0,
        critical_assets=["onnxruntime"],
    )

@pytest.fixture
def make_orch(session, settings):
    made: List[DependencyOrchestrator] = []

    def factory(entries: List[Dict[str, Any]], use_cache: bool = False,
                sess: Optional[FakeSession] = None, clock=None, **overrides) -> DependencyOrchestrator:
        for k, v in overrides.items():
            setattr(settings, k, v)
        extra = {"clock": clock} if clock is not None else {}
        orch = DependencyOrchestrator(load_assets({"assets": entries}), settings,
                                      session=sess or session, use_cache=use_cache, **extra)
        made.append(orch)
        return orch

    yield factory
    for o in made:
        o.close()

def write_local(root, rel: str, data: bytes) -> None:
    p = root / rel
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_bytes(data)
