"""Rich live panel for a run in progress, plus a plain-text line for non-TTY output."""

from __future__ import annotations

from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from .metrics import LiveSnapshot
from .models import Progress


def _format_seconds(seconds: float) -> str:
    """Format time as Xs or Xm Ys."""
    s = max(0, int(round(seconds)))
    if s >= 60:
        m, s = divmod(s, 60)
        return f"{m}m {s}s"
    return f"{s}s"


def build_metrics_table(progress: Progress, snapshot: LiveSnapshot) -> Table:
    """Build a single Rich table with current metrics."""
    table = Table.grid(padding=(0, 2))
    table.add_column(style="cyan")
    table.add_column(style="green")

    table.add_row("State", progress.state.value)
    table.add_row("Active VUs", str(progress.active_vus))
    table.add_row("Requests", f"{progress.completed_count} / ~{progress.total_estimate}")
    if snapshot.requests:
        rps = snapshot.requests / progress.elapsed_seconds if progress.elapsed_seconds > 0 else 0.0
        table.add_row("RPS", f"{rps:.1f}")
        table.add_row("Mean (ms)", f"{snapshot.mean:.1f}")
        table.add_row("P95 (ms)", f"{snapshot.p95:.1f}")
        table.add_row("P99 (ms)", f"{snapshot.p99:.1f}")
        table.add_row("Error rate %", f"{snapshot.error_rate:.2f}%")
        table.add_row("Cache hit %", f"{snapshot.cache_hit_rate:.1f}%")
    else:
        for label in ("RPS", "Mean (ms)", "P95 (ms)", "P99 (ms)", "Error rate %", "Cache hit %"):
            table.add_row(label, "-")
    return table


def create_live_panel(progress: Progress, snapshot: LiveSnapshot, target: str = "") -> Panel:
    """Create Rich Panel for live display."""
    table = build_metrics_table(progress, snapshot)
    table.add_row("Elapsed", _format_seconds(progress.elapsed_seconds))
    title = Text()
    title.append("loadlens ", style="bold magenta")
    if target:
        title.append(f"| {target} ", style="dim")
    title.append(f"| {progress.state.value}", style="bold yellow")
    return Panel(table, title=title, border_style="blue")


def progress_line(progress: Progress, snapshot: LiveSnapshot) -> str:
    """One-line status for CI logs and pipes."""
    return (
        f"loadlens | {progress.elapsed_seconds:.1f}s | {progress.state.value} | "
        f"vus={progress.active_vus} requests={progress.completed_count}/{progress.total_estimate} "
        f"mean={snapshot.mean:.1f}ms err%={snapshot.error_rate:.2f}\n"
    )
