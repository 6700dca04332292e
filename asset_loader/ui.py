#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
UI layer for the asset loader

- Live progress bar while runtime + model load (fed by the orchestrator)
- Rich tables for the asset table, candidate probes, attempts and cache state
- One clear panel when a load fails for good
"""

from __future__ import annotations
from typing import Any, Dict, List, Optional, Sequence, Tuple

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich import box
from rich.progress import (
    BarColumn, Progress, TextColumn, TimeElapsedColumn
)

from .core import (
    AggregateSourceFailure,
    AssetLoaderError,
    AssetTable,
    DependencyOrchestrator,
    LoadAttempt,
    LoadCancelled,
    SourceCandidate,
    StaleDependencyError,
    human_size,
)

console = Console()

def section(con: Console, title: str, body: str = "", style: str = "cyan") -> None:
    con.print(Panel.fit(body or title, title=title if body else None, border_style=style))

def _table(title: str) -> Table:
    return Table(title=title, show_lines=False, header_style="bold magenta", box=box.SIMPLE_HEAVY)

# ────────────────────────── Listings ──────────────────────────
def render_assets(assets: AssetTable) -> None:
    table = _table("Configured Assets")
    table.add_column("Key", no_wrap=True)
    table.add_column("Kind", no_wrap=True)
    table.add_column("File", max_width=30, overflow="ellipsis", no_wrap=True)
    table.add_column("Size", no_wrap=True, min_width=8)
    table.add_column("Res", no_wrap=True)
    table.add_column("Priority", no_wrap=True)
    table.add_column("Sources", justify="right")
    for d in assets:
        res = f"{d.resolution[0]}x{d.resolution[1]}" if d.resolution else "-"
        table.add_row(d.key, d.kind.value, d.filename, human_size(d.expected_size), res,
                      d.priority_tier, str(len(d.sources)))
    console.print(table)

def render_candidates(key: str, results: Sequence[Tuple[SourceCandidate, bool]]) -> None:
    table = _table(f"Sources for {key}")
    table.add_column("#", justify="right")
    table.add_column("Tier", no_wrap=True)
    table.add_column("URL", overflow="fold")
    table.add_column("SRI", no_wrap=True)
    table.add_column("Available", no_wrap=True)
    for i, (cand, ok) in enumerate(results, 1):
        table.add_row(str(i), cand.tier.value, cand.url, "yes" if cand.integrity else "-",
                      "[green]yes[/]" if ok else "[red]no[/]")
    console.print(table)

def render_attempts(attempts: List[LoadAttempt], title: str = "Load Attempts") -> None:
    if not attempts:
        console.print("[dim]No load attempts yet.[/]")
        return
    table = _table(title)
    table.add_column("Asset", no_wrap=True)
    table.add_column("Tier", no_wrap=True)
    table.add_column("Outcome", no_wrap=True)
    table.add_column("Error", max_width=40, overflow="ellipsis")
    table.add_column("URL", max_width=50, overflow="ellipsis", no_wrap=True)
    for a in attempts:
        outcome = "[green]cache[/]" if a.cached else ("[green]ok[/]" if a.ok else "[red]failed[/]")
        err = f"{a.error_kind}: {a.error}" if a.error_kind else ""
        table.add_row(a.asset_key, a.tier.value, outcome, err, a.url)
    console.print(table)

def render_cache_summary(summary: Optional[Dict[str, Any]]) -> None:
    if summary is None:
        console.print("[yellow]Cache unavailable.[/]")
        return
    console.print(Panel.fit(
        f"[bold cyan]Generation:[/] {summary.get('generation')}\n"
        f"[bold cyan]Static assets:[/] {summary.get('static_asset_count', 0)}\n"
        f"[bold cyan]Models:[/] {summary.get('model_count', 0)}\n"
        f"[bold cyan]Total size:[/] {human_size(summary.get('total_bytes'))}",
        title="Cache",
        border_style="green",
    ))

def render_status(status: Dict[str, Any]) -> None:
    table = _table("Assets")
    table.add_column("Key", no_wrap=True)
    table.add_column("State", no_wrap=True)
    table.add_column("Source", no_wrap=True)
    table.add_column("Note")
    sources = status.get("sources", {})
    subs = status.get("substitutions", {})
    for key in status.get("loaded_keys", []):
        table.add_row(key, "[green]ready[/]", sources.get(key, "-"), "")
    for key, state in status.get("active_loads", {}).items():
        table.add_row(key, f"[yellow]{state}[/]", "-", "")
    for key, alt in subs.items():
        table.add_row(key, "[cyan]substituted[/]", sources.get(alt, "-"), f"using {alt}")
    console.print(table)
    stats = status.get("stats", {})
    console.print(
        f"[dim]Attempts: {stats.get('total', 0)} · remote ok {stats.get('remote_success', 0)} · "
        f"local ok {stats.get('local_success', 0)} · cache hits {stats.get('cache_hits', 0)} · "
        f"failed {stats.get('failures', 0)}[/]"
    )
    render_attempts(status.get("attempts", []))
    render_cache_summary(status.get("cache_summary"))

def render_failure(key: str, exc: BaseException) -> None:
    if isinstance(exc, LoadCancelled):
        body = f"[yellow]Loading '{key}' was cancelled.[/]"
    elif isinstance(exc, StaleDependencyError):
        body = (f"[red]'{key}' keeps failing its health check.[/]\n"
                "A fresh copy was fetched once and still looks broken.")
    elif isinstance(exc, AggregateSourceFailure):
        tried = "\n".join(f"  • {a.tier.value}: {a.error_kind} ({a.url})" for a in exc.attempts)
        body = f"[red]Could not load '{key}' from any source.[/]\n{tried}"
    else:
        body = f"[red]{exc}[/]"
    console.print(Panel(body, title=f"Failed to load {key}", border_style="red", expand=False))

# ────────────────────────── Loading ──────────────────────────
def load_with_progress(orch: DependencyOrchestrator, keys: Sequence[str]) -> List[str]:
    """Load each key with a live bar; returns the keys that failed."""
    failed: List[str] = []
    with Progress(
        TextColumn("[bold]{task.fields[key]}[/]", justify="left"),
        BarColumn(),
        TextColumn("{task.percentage:>5.1f}%"),
        TextColumn("{task.description}"),
        TimeElapsedColumn(),
        console=console,
        transient=False
    ) as progress:
        for key in keys:
            task_id = progress.add_task("Starting...", total=100, key=key)

            def on_progress(pct: float, msg: str, task_id=task_id) -> None:
                progress.update(task_id, completed=pct, description=msg)

            unsubscribe = orch.subscribe_progress(on_progress)
            try:
                data = orch.ensure_loaded(key)
            except AssetLoaderError as e:
                progress.update(task_id, description="[red]failed[/]")
                render_failure(key, e)
                failed.append(key)
                continue
            finally:
                unsubscribe()
            resolved = orch.resolved_key(key)
            note = f" (using {resolved})" if resolved != key else ""
            progress.update(task_id, completed=100,
                            description=f"[green]ready[/] {human_size(len(data))}{note}")
    return failed
