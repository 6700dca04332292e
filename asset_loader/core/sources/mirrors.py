from __future__ import annotations
from typing import Any, Dict, List

from ..models import SourceCandidate, SourceTier

# Base locations per asset kind, in fallback order. An asset entry that lists
# no explicit "sources" gets one candidate per row here (base + filename).
MIRRORS: Dict[str, List[Dict[str, str]]] = {
    "runtime": [
        {"tier": "remote-primary",   "base": "https://cdn.jsdelivr.net/npm/onnxruntime-web@1.18.0/dist/"},
        {"tier": "remote-secondary", "base": "https://unpkg.com/onnxruntime-web@1.18.0/dist/"},
        {"tier": "local",            "base": "./lib/"},
    ],
    "model": [
        {"tier": "remote-primary",   "base": "https://example-cdn.com/models/"},
        {"tier": "remote-secondary", "base": "https://mirror.example-cdn.com/models/"},
        {"tier": "local",            "base": "./models/"},
    ],
}

TRUSTED_HOSTS: List[str] = sorted({
    "cdn.jsdelivr.net", "unpkg.com", "example-cdn.com", "mirror.example-cdn.com",
})

# key, kind, resolution, filename, expected size, priority, description
DEFAULT_ASSETS: List[Dict[str, Any]] = [
    {"key": "onnxruntime", "kind": "runtime", "filename": "ort.min.js",
     "expected_size": None, "priority": "high", "description": "ONNX Runtime Web 1.18.0"},
    {"key": "yolov10n", "kind": "model", "resolution": [640, 640], "filename": "yolov10n.onnx",
     "expected_size": 9309375, "priority": "high", "description": "YOLOv10n 640x640"},
    {"key": "yolov7-tiny-256", "kind": "model", "resolution": [256, 256], "filename": "yolov7-tiny_256x256.onnx",
     "expected_size": 24943827, "priority": "medium", "description": "YOLOv7-Tiny 256x256"},
    {"key": "yolov7-tiny-320", "kind": "model", "resolution": [320, 320], "filename": "yolov7-tiny_320x320.onnx",
     "expected_size": 24949875, "priority": "medium", "description": "YOLOv7-Tiny 320x320"},
    {"key": "yolov7-tiny-640", "kind": "model", "resolution": [640, 640], "filename": "yolov7-tiny_640x640.onnx",
     "expected_size": 25000320, "priority": "low", "description": "YOLOv7-Tiny 640x640"},
]

def default_candidates(kind: str, filename: str) -> List[SourceCandidate]:
    out: List[SourceCandidate] = []
    seen = set()
    for row in MIRRORS.get(kind, []):
        url = row["base"] + filename
        if url in seen: continue
        seen.add(url)
        out.append(SourceCandidate(url=url, tier=SourceTier(row["tier"])))
    return out
