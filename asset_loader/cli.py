# asset_loader/cli.py
from __future__ import annotations
import argparse
from pathlib import Path
from typing import List, Optional

from .core import (
    ConfigError, DependencyOrchestrator, Settings, config_path, load_assets, load_cfg, setup_logging,
)
from .core.cache import SCOPES
from .ui import (
    console, load_with_progress, render_assets, render_attempts, render_cache_summary,
    render_candidates, render_status, section,
)

def parse_args(argv: Optional[List[str]] = None):
    ap = argparse.ArgumentParser(prog="asset-loader", description="Runtime + model asset loader")
    ap.add_argument("--verbose", action="store_true", help="Enable debug logging for core/network")
    ap.add_argument("--config", help="Path to config.json (default: per-user config dir)")
    sub = ap.add_subparsers(dest="command", required=True)

    p = sub.add_parser("load", help="Load assets (runtime first for models)")
    p.add_argument("keys", nargs="*", help="Asset keys (default: critical assets)")
    p.add_argument("--no-cache", action="store_true", help="Skip the persistent cache")

    sub.add_parser("status", help="Show cache state")

    p = sub.add_parser("probe", help="Check which sources of an asset are reachable")
    p.add_argument("key")

    p = sub.add_parser("clear", help="Clear the persistent cache")
    p.add_argument("--scope", choices=SCOPES, default="all")

    sub.add_parser("assets", help="List configured assets")
    return ap.parse_args(argv)

def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    cfg = load_cfg(Path(args.config) if args.config else None)
    setup_logging(verbose=args.verbose or bool(cfg.get("verbose", False)))
    try:
        settings = Settings.from_cfg(cfg)
        assets = load_assets(cfg)
    except ConfigError as e:
        section(console, "Configuration Error", f"[red]{e}[/]\n[dim]Config: {args.config or config_path()}[/]", "red")
        return 2

    if args.command == "assets":
        render_assets(assets)
        return 0

    use_cache = args.command != "probe" and not getattr(args, "no_cache", False)
    with DependencyOrchestrator(assets, settings, use_cache=use_cache) as orch:
        if args.command == "probe":
            try:
                render_candidates(args.key, orch.check_sources(args.key))
            except ConfigError as e:
                console.print(f"[red]{e}[/]")
                return 2
            return 0

        if args.command == "clear":
            removed = orch.clear_cache(args.scope)
            console.print(f"[green]Removed {removed} cached entr{'y' if removed == 1 else 'ies'}[/] ({args.scope})")
            return 0

        if args.command == "status":
            render_status(orch.get_status())
            return 0

        keys = args.keys or settings.critical_assets or [d.key for d in assets.runtimes()]
        unknown = [k for k in keys if k not in assets]
        if unknown:
            console.print(f"[red]Unknown asset(s):[/] {', '.join(unknown)}")
            return 2
        try:
            failed = load_with_progress(orch, keys)
        except KeyboardInterrupt:
            orch.abort_all("interrupted by user")
            console.print("[yellow]Interrupted by user.[/]")
            return 130
        if args.verbose:
            render_attempts(orch.attempts())
        if orch.cache is not None:
            render_cache_summary(orch.cache_summary())
        return 1 if failed else 0
