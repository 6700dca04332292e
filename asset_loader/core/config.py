# asset_loader/core/config.py
from __future__ import annotations
import copy
import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

from .errors import ConfigError
from .integrity import parse_sri
from .models import AssetDescriptor, AssetKind, SourceCandidate, SourceTier
from .sources.mirrors import DEFAULT_ASSETS, TRUSTED_HOSTS, default_candidates
from .utils import is_local_ref

# ---- schema & defaults -------------------------------------------------------
SCHEMA_VERSION = 1
DEFAULT_SETTINGS: Dict[str, Any] = {
    "download_timeout": 30.0,     # seconds, per candidate attempt
    "tier_timeouts": {},          # { "<priority tier>": seconds }
    "probe_timeout": 8.0,
    "probe_ttl": 300.0,
    "attempt_max_age": 300.0,     # seconds a LoadAttempt stays in the log
    "size_tolerance": 0.10,
    "progress_interval": 0.1,
    "phases": [["runtime", 20], ["model", 80]],
    "allowed_hosts": TRUSTED_HOSTS,
    "origin": "",
    "local_root": ".",
    "cache_dir": "",              # empty -> <config dir>/cache
    "cache_generation": "v1.2.0",
    "cache_request_timeout": 5.0,
    "critical_assets": ["onnxruntime", "yolov10n"],
}
DEFAULT_CFG: Dict[str, Any] = {
    "schema": SCHEMA_VERSION,
    "settings": DEFAULT_SETTINGS,
    "assets": DEFAULT_ASSETS,
    "verbose": False,
}

# ---- locations ---------------------------------------------------------------
# You can override location with env vars:
#   ASSET_LOADER_CONFIG=<full path to config.json>
#   ASSET_LOADER_DIR=<directory to place config.json and the cache>
def _windows_roaming_dir() -> Path:
    return Path(os.environ.get("APPDATA", Path.home() / "AppData/Roaming"))

def _xdg_config_home() -> Path:
    return Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))

def config_dir() -> Path:
    env_dir = os.environ.get("ASSET_LOADER_DIR")
    if env_dir:
        return Path(env_dir).expanduser().resolve()
    if os.name == "nt":
        return (_windows_roaming_dir() / "AssetLoader").resolve()
    return (_xdg_config_home() / "asset_loader").resolve()

def config_path() -> Path:
    env_path = os.environ.get("ASSET_LOADER_CONFIG")
    if env_path:
        p = Path(env_path).expanduser().resolve()
        p.parent.mkdir(parents=True, exist_ok=True)
        return p
    d = config_dir()
    d.mkdir(parents=True, exist_ok=True)
    return d / "config.json"

# ---- load / save -------------------------------------------------------------
def _merge_defaults(cfg: Dict[str, Any]) -> Dict[str, Any]:
    out = copy.deepcopy(DEFAULT_CFG)
    cfg = cfg or {}
    out.update({k: v for k, v in cfg.items() if k != "settings"})
    settings = cfg.get("settings")
    if isinstance(settings, dict):
        out["settings"].update(settings)
    if "schema" not in out:
        out["schema"] = SCHEMA_VERSION
    return out

def load_cfg(path: Optional[Path] = None) -> Dict[str, Any]:
    p = Path(path) if path else config_path()
    if not p.exists():
        return copy.deepcopy(DEFAULT_CFG)
    try:
        raw = json.loads(p.read_text(encoding="utf-8"))
        if not isinstance(raw, dict):
            return copy.deepcopy(DEFAULT_CFG)
        return _merge_defaults(raw)
    except (OSError, ValueError):
        # If the file is corrupt, keep a .bad copy and start fresh
        try:
            p.rename(p.with_suffix(".bad.json"))
        except OSError:
            pass
        return copy.deepcopy(DEFAULT_CFG)

def save_cfg(cfg: Dict[str, Any], path: Optional[Path] = None) -> None:
    p = Path(path) if path else config_path()
    tmp = p.with_suffix(".tmp")
    data = _merge_defaults(cfg)
    # Atomic-ish write
    tmp.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
    if p.exists():
        p.replace(p.with_suffix(".bak.json"))
    tmp.replace(p)

# ---- typed views -------------------------------------------------------------
@dataclass
class Settings:
    download_timeout: float = 30.0
    tier_timeouts: Dict[str, float] = field(default_factory=dict)
    probe_timeout: float = 8.0
    probe_ttl: float = 300.0
    attempt_max_age: float = 300.0
    size_tolerance: float = 0.10
    progress_interval: float = 0.1
    phases: List[Tuple[str, float]] = field(default_factory=lambda: [("runtime", 20.0), ("model", 80.0)])
    allowed_hosts: List[str] = field(default_factory=lambda: list(TRUSTED_HOSTS))
    origin: str = ""
    local_root: Path = Path(".")
    cache_dir: Path = Path("cache")
    cache_generation: str = "v1.2.0"
    cache_request_timeout: float = 5.0
    critical_assets: List[str] = field(default_factory=list)

    @classmethod
    def from_cfg(cls, cfg: Dict[str, Any]) -> "Settings":
        s = dict(DEFAULT_SETTINGS)
        s.update((cfg or {}).get("settings") or {})
        try:
            tolerance = float(s["size_tolerance"])
            if tolerance < 0:
                raise ConfigError("size_tolerance must be >= 0")
            return cls(
                download_timeout=float(s["download_timeout"]),
                tier_timeouts={str(k): float(v) for k, v in (s["tier_timeouts"] or {}).items()},
                probe_timeout=float(s["probe_timeout"]),
                probe_ttl=float(s["probe_ttl"]),
                attempt_max_age=float(s["attempt_max_age"]),
                size_tolerance=tolerance,
                progress_interval=float(s["progress_interval"]),
                phases=[(str(n), float(w)) for n, w in s["phases"]],
                allowed_hosts=[str(h) for h in s["allowed_hosts"]],
                origin=str(s["origin"] or ""),
                local_root=Path(s["local_root"] or ".").expanduser(),
                cache_dir=Path(s["cache_dir"]).expanduser() if s["cache_dir"] else config_dir() / "cache",
                cache_generation=str(s["cache_generation"]),
                cache_request_timeout=float(s["cache_request_timeout"]),
                critical_assets=[str(k) for k in s["critical_assets"] or []],
            )
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid settings: {e}") from e

class AssetTable:
    """Validated, ordered, read-only view of the configured assets."""

    def __init__(self, descriptors: List[AssetDescriptor]):
        self._by_key: Dict[str, AssetDescriptor] = {}
        for d in descriptors:
            if d.key in self._by_key:
                raise ConfigError(f"Duplicate asset key: {d.key}")
            self._by_key[d.key] = d

    def __iter__(self) -> Iterator[AssetDescriptor]:
        return iter(self._by_key.values())

    def __len__(self) -> int:
        return len(self._by_key)

    def __contains__(self, key: object) -> bool:
        return key in self._by_key

    def keys(self) -> List[str]:
        return list(self._by_key)

    def get(self, key: str) -> AssetDescriptor:
        try:
            return self._by_key[key]
        except KeyError:
            raise ConfigError(f"Unknown asset: {key}") from None

    def runtimes(self) -> List[AssetDescriptor]:
        return [d for d in self if d.kind is AssetKind.RUNTIME]

    def models(self) -> List[AssetDescriptor]:
        return [d for d in self if d.kind is AssetKind.MODEL]

    def smallest_model(self, exclude: str = "") -> Optional[AssetDescriptor]:
        pool = [d for d in self.models() if d.key != exclude and d.expected_size]
        return min(pool, key=lambda d: d.expected_size) if pool else None

def _candidate(raw: Any, where: str) -> SourceCandidate:
    if isinstance(raw, str):
        raw = {"url": raw}
    if not isinstance(raw, dict) or not raw.get("url"):
        raise ConfigError(f"{where}: source needs a url")
    tier = raw.get("tier") or ("local" if is_local_ref(str(raw["url"])) else "remote-primary")
    try:
        tier = SourceTier(tier)
    except ValueError:
        raise ConfigError(f"{where}: unknown source tier {tier!r}") from None
    integrity = raw.get("integrity") or None
    if integrity:
        parse_sri(integrity)
    return SourceCandidate(url=str(raw["url"]), tier=tier, integrity=integrity)

def _descriptor(entry: Any, idx: int) -> AssetDescriptor:
    where = f"assets[{idx}]"
    if not isinstance(entry, dict):
        raise ConfigError(f"{where}: expected an object")
    filename = str(entry.get("filename") or "").strip()
    if not filename:
        raise ConfigError(f"{where}: filename is required")
    key = str(entry.get("key") or filename.rsplit(".", 1)[0])
    try:
        kind = AssetKind(entry.get("kind") or "model")
    except ValueError:
        raise ConfigError(f"{where}: unknown kind {entry.get('kind')!r}") from None
    size = entry.get("expected_size")
    if size is not None and (not isinstance(size, int) or isinstance(size, bool) or size <= 0):
        raise ConfigError(f"{where}: expected_size must be a positive integer")
    res = entry.get("resolution")
    if res is not None:
        if not (isinstance(res, (list, tuple)) and len(res) == 2 and all(isinstance(v, int) for v in res)):
            raise ConfigError(f"{where}: resolution must be [width, height]")
        res = (res[0], res[1])
    raw_sources = entry.get("sources")
    if raw_sources:
        sources = tuple(_candidate(s, f"{where}.sources[{i}]") for i, s in enumerate(raw_sources))
    else:
        sources = tuple(default_candidates(kind.value, filename))
    return AssetDescriptor(
        key=key, kind=kind, filename=filename, expected_size=size,
        priority_tier=str(entry.get("priority") or "medium"),
        resolution=res, description=str(entry.get("description") or filename),
        sources=sources,
    )

def load_assets(cfg: Dict[str, Any]) -> AssetTable:
    entries = (cfg or {}).get("assets")
    if not isinstance(entries, list) or not entries:
        raise ConfigError("Configuration has no assets")
    return AssetTable([_descriptor(e, i) for i, e in enumerate(entries)])
