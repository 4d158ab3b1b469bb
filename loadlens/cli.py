"""CLI entry point for loadlens.

Speed-first design:
- Uses uvloop for faster event loop when available
- GC disabled during test execution for consistent latency
- Minimal import overhead at startup
"""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import gc
import sys
from pathlib import Path
from typing import Any, Coroutine

# Try to use uvloop for faster async performance
_HAS_UVLOOP = False
try:
    import uvloop
    _HAS_UVLOOP = True
except ImportError:
    pass

import orjson
from rich.console import Console
from rich.table import Table

from . import __version__
from .chain import run_chain
from .config import (
    clamp_timeout,
    load_bulk,
    load_chain,
    load_run_request,
    parse_auth,
    validate_profile,
)
from .exceptions import ConfigurationError, LoadLensError
from .logging_config import get_logger
from .models import (
    DEFAULT_TIMEOUT_MS,
    DEFAULT_WARMUP_VUS_PERCENT,
    ChainResult,
    Environment,
    FlatProfile,
    PhasedProfile,
    RequestTemplate,
    RunRequest,
    RunResult,
)
from .report import compare_snapshots, write_json_report, write_junit_report
from .runner import LoadTest, run_bulk, run_with_live_view

logger = get_logger("cli")

# Exit codes
EXIT_OK = 0
EXIT_ERROR = 1
EXIT_FAILED = 2
EXIT_INTERRUPTED = 130

# Defaults when running without -f (config file)
DEFAULT_CONCURRENCY = 1
DEFAULT_ITERATIONS = 1


def _run_async(coro: Coroutine[Any, Any, Any]) -> Any:
    """Run async coroutine with optimal event loop.

    Uses uvloop.run() when installed, asyncio.run() otherwise.
    Disables GC during execution for consistent latency.
    """
    gc_was_enabled = gc.isenabled()
    gc.disable()
    try:
        if _HAS_UVLOOP:
            return uvloop.run(coro)
        return asyncio.run(coro)
    finally:
        if gc_was_enabled:
            gc.enable()
        gc.collect()


def _parse_pairs(items: list[str] | None, sep: str = "=") -> dict[str, str]:
    """KEY=VALUE (or 'Name: value' with sep=':') list to dict. Entries without sep are ignored."""
    if not items:
        return {}
    out: dict[str, str] = {}
    for s in items:
        if sep in s:
            k, _, v = s.partition(sep)
            out[k.strip()] = v.strip()
    return out


def _has_profile_override(args: argparse.Namespace) -> bool:
    keys = ("concurrency", "iterations", "max_vus", "warmup", "ramp_up", "sustain", "ramp_down", "max_requests")
    return args.phased or any(getattr(args, k, None) is not None for k in keys)


def _profile_from_args(args: argparse.Namespace, base: Any = None) -> Any:
    """Profile from CLI flags. --phased rebuilds the phases; otherwise a phased base is kept."""
    if args.phased:
        return PhasedProfile.from_percent(
            max_vus=args.max_vus or args.concurrency or DEFAULT_CONCURRENCY,
            warmup_seconds=args.warmup or 0.0,
            warmup_vus_percent=args.warmup_pct if args.warmup_pct is not None else DEFAULT_WARMUP_VUS_PERCENT,
            ramp_up_seconds=args.ramp_up or 0.0,
            sustain_seconds=args.sustain or 0.0,
            ramp_down_seconds=args.ramp_down or 0.0,
            max_requests=args.max_requests or 0,
        )
    if isinstance(base, PhasedProfile):
        return base
    base_flat = base if isinstance(base, FlatProfile) else FlatProfile(DEFAULT_CONCURRENCY, DEFAULT_ITERATIONS)
    return FlatProfile(
        concurrency=args.concurrency if args.concurrency is not None else base_flat.concurrency,
        iterations=args.iterations if args.iterations is not None else base_flat.iterations,
    )


def _build_run_request(args: argparse.Namespace) -> RunRequest:
    """RunRequest from -f YAML (if given) with CLI flags applied on top."""
    if args.config:
        request = load_run_request(args.config)
    elif args.url:
        request = RunRequest(
            template=RequestTemplate(url=args.url),
            profile=FlatProfile(DEFAULT_CONCURRENCY, DEFAULT_ITERATIONS),
        )
    else:
        raise ConfigurationError("Either -f/--config or -u/--url is required")

    template = request.template
    if args.url and args.config:
        template = dataclasses.replace(template, url=args.url)
    if args.method:
        template = dataclasses.replace(template, method=args.method.upper())
    headers = _parse_pairs(args.header, sep=":")
    if headers:
        template = dataclasses.replace(template, headers={**template.headers, **headers})
    if args.data is not None:
        template = dataclasses.replace(template, body=args.data)
    if args.bearer:
        template = dataclasses.replace(template, auth=parse_auth({"type": "bearer", "token": args.bearer}))

    changes: dict[str, Any] = {"template": template}
    if _has_profile_override(args):
        changes["profile"] = validate_profile(
            _profile_from_args(args, request.profile), request.max_concurrency, request.max_iterations
        )
    if args.timeout is not None:
        changes["timeout_ms"] = clamp_timeout(args.timeout)
    if args.base_url:
        changes["environment"] = Environment(args.base_url, request.environment.variables)
    variables = _parse_pairs(args.var)
    if variables:
        changes["variables"] = {**request.variables, **variables}
    if args.bypass_cache:
        changes["bypass_cache"] = True
    if args.cache_header:
        changes["cache_header"] = args.cache_header
    if args.no_http2:
        changes["http2"] = False
    if args.insecure:
        changes["verify_tls"] = False
    return dataclasses.replace(request, **changes)


def _print_run_summary(console: Console, result: RunResult) -> None:
    stats = result.stats
    table = Table(title=f"Run {result.state.value}", show_header=False)
    table.add_column(style="cyan")
    table.add_column(style="green")
    table.add_row("Requests", f"{stats.requests} ({stats.success_count} ok, {stats.error_count} errors)")
    table.add_row("RPS", f"{stats.rps:.1f}")
    table.add_row("Mean / median (ms)", f"{stats.mean:.1f} / {stats.median:.1f}")
    table.add_row("Min / max (ms)", f"{stats.min:.1f} / {stats.max:.1f}")
    table.add_row("P90 / P95 / P99 (ms)", f"{stats.p90:.1f} / {stats.p95:.1f} / {stats.p99:.1f}")
    table.add_row("Error rate", f"{stats.error_rate:.2f}%")
    table.add_row("Cache hit rate", f"{stats.cache_hit_rate:.1f}%")
    dominant = result.bottleneck.dominant
    if dominant:
        table.add_row("Bottleneck", dominant)
    t = result.testing
    table.add_row("Cold / warm (ms)", f"{t.cold_start:.1f} / {t.warm_avg:.1f} (x{t.cold_warm_ratio:.1f})")
    table.add_row("Verdicts", f"load={t.load_status} stress={t.stress_status} latency={t.latency_status}")
    console.print(table)
    for a in result.assertions:
        mark = "[green]PASS[/green]" if a.passed else "[red]FAIL[/red]"
        detail = "" if a.passed else f" {a.message}"
        console.print(f"{mark} {a.type} {a.operator} {a.expected}{detail}")


def _print_chain_summary(console: Console, result: ChainResult) -> None:
    table = Table(title="Chain")
    table.add_column("Step")
    table.add_column("Status")
    table.add_column("Time (ms)", justify="right")
    table.add_column("Extracted")
    for step in result.steps:
        if not step.ran:
            status = "[dim]skipped[/dim]"
        elif step.success:
            status = f"[green]{step.status}[/green]"
        else:
            status = f"[red]{step.error or step.status}[/red]"
        table.add_row(step.step_name, status, f"{step.duration_ms:.1f}", ", ".join(step.extracted_variables))
    console.print(table)


def _write_reports(args: argparse.Namespace, result: RunResult | ChainResult, console: Console) -> None:
    if getattr(args, "json_path", None):
        write_json_report(args.json_path, result)
        console.print(f"[dim]JSON report:[/dim] {args.json_path}")
    if getattr(args, "junit_path", None):
        write_junit_report(args.junit_path, result)
        console.print(f"[dim]JUnit report:[/dim] {args.junit_path}")


def _cmd_run(args: argparse.Namespace, console: Console) -> int:
    request = _build_run_request(args)
    test = LoadTest(request)
    result: RunResult = _run_async(run_with_live_view(test, live=not args.no_live, console=console))
    _print_run_summary(console, result)
    _write_reports(args, result, console)
    if not result.success or result.assertions_passed < result.assertions_total:
        return EXIT_FAILED
    return EXIT_OK


def _cmd_chain(args: argparse.Namespace, console: Console) -> int:
    chain = load_chain(args.config)
    variables = {**chain.variables, **_parse_pairs(args.var)}
    timeout_ms = clamp_timeout(args.timeout) if args.timeout is not None else chain.timeout_ms
    result = _run_async(
        run_chain(
            chain.steps,
            variables,
            chain.environment,
            timeout_ms=timeout_ms,
            verify_tls=chain.verify_tls and not args.insecure,
        )
    )
    _print_chain_summary(console, result)
    _write_reports(args, result, console)
    return EXIT_OK if result.success else EXIT_FAILED


def _cmd_bulk(args: argparse.Namespace, console: Console) -> int:
    runs = load_bulk(args.config)
    entries = _run_async(run_bulk(runs))
    failed = 0
    for entry in entries:
        if "error" in entry:
            failed += 1
            console.print(f"[red]{entry['name']}[/red]: {entry['error']}")
            continue
        stats = entry["result"]["stats"]
        ok = entry["result"]["success"]
        failed += 0 if ok else 1
        console.print(
            f"[{'green' if ok else 'red'}]{entry['name']}[/]: requests={stats['requests']} "
            f"mean={stats['mean']}ms p95={stats['p95']}ms errors={stats['errorRate']}%"
        )
    if args.json_path:
        write_json_report(args.json_path, entries)
        console.print(f"[dim]JSON report:[/dim] {args.json_path}")
    return EXIT_FAILED if failed else EXIT_OK


def _load_snapshot(path: str) -> dict[str, Any]:
    p = Path(path)
    if not p.exists():
        raise ConfigurationError(f"Snapshot not found: {path}", context={"path": path})
    try:
        data = orjson.loads(p.read_bytes())
    except orjson.JSONDecodeError as e:
        raise ConfigurationError(f"Invalid JSON snapshot: {e}", context={"path": path}, original_error=e) from e
    if not isinstance(data, dict):
        raise ConfigurationError("Snapshot must be a JSON object", context={"path": path})
    return data


def _cmd_compare(args: argparse.Namespace, console: Console) -> int:
    diff = compare_snapshots(_load_snapshot(args.old), _load_snapshot(args.new))
    table = Table(title="Changed")
    table.add_column("Metric")
    table.add_column("Old", justify="right")
    table.add_column("New", justify="right")
    table.add_column("Delta", justify="right")
    for key, change in diff["changed"].items():
        table.add_row(key, str(change["old"]), str(change["new"]), str(change.get("delta", "")))
    console.print(table)
    for key in diff["added"]:
        console.print(f"[green]+ {key}[/green]")
    for key in diff["removed"]:
        console.print(f"[red]- {key}[/red]")
    if args.json_path:
        write_json_report(args.json_path, diff)
    return EXIT_OK


def _add_report_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--json", metavar="PATH", dest="json_path", help="Also write JSON report to PATH")
    p.add_argument("--junit", metavar="PATH", dest="junit_path", help="Also write JUnit XML report to PATH (for CI)")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="loadlens",
        description="HTTP API load testing and request chains. Async HTTP/2, per-phase timing, assertions.",
    )
    parser.add_argument("-v", "--version", action="version", version=f"loadlens {__version__}")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run a load test (flat or phased)")
    run.add_argument("-f", "--config", help="Path to run YAML")
    run.add_argument("-u", "--url", help="Target URL (overrides the config file)")
    run.add_argument("-X", "--method", help="HTTP method")
    run.add_argument("-H", "--header", action="append", metavar="'NAME: VALUE'", help="Request header (repeatable)")
    run.add_argument("-d", "--data", help="Request body")
    run.add_argument("--bearer", metavar="TOKEN", help="Bearer token auth")
    run.add_argument("--base-url", dest="base_url", help="Environment base URL for relative URLs")
    run.add_argument("--var", action="append", metavar="KEY=VALUE", help="Variable for {{placeholders}} (repeatable)")
    run.add_argument("-c", "--concurrency", type=int, default=None, help="Virtual users (flat) / max VUs (phased)")
    run.add_argument("-n", "--iterations", type=int, default=None, help="Requests per virtual user (flat)")
    run.add_argument("--phased", action="store_true", help="Use warmup/ramp-up/sustain/ramp-down phases")
    run.add_argument("--max-vus", type=int, default=None, dest="max_vus", help="Phased: VUs at peak")
    run.add_argument("--warmup", type=float, default=None, metavar="SEC", help="Phased: warmup duration")
    run.add_argument("--warmup-pct", type=int, default=None, dest="warmup_pct", metavar="PCT", help="Phased: warmup VUs as %% of max")
    run.add_argument("--ramp-up", type=float, default=None, dest="ramp_up", metavar="SEC", help="Phased: ramp-up duration")
    run.add_argument("--sustain", type=float, default=None, metavar="SEC", help="Phased: sustain duration")
    run.add_argument("--ramp-down", type=float, default=None, dest="ramp_down", metavar="SEC", help="Phased: ramp-down duration")
    run.add_argument("--max-requests", type=int, default=None, dest="max_requests", help="Phased: stop after N requests")
    run.add_argument("--timeout", type=int, default=None, metavar="MS", help=f"Per-request timeout (default {DEFAULT_TIMEOUT_MS})")
    run.add_argument("--bypass-cache", action="store_true", dest="bypass_cache", help="Add a unique nocache query param")
    run.add_argument("--cache-header", dest="cache_header", help="Response header used for HIT/MISS")
    run.add_argument("--no-http2", action="store_true", dest="no_http2", help="Disable HTTP/2")
    run.add_argument("-k", "--insecure", action="store_true", help="Do not verify TLS certificates")
    run.add_argument("--no-live", action="store_true", help="Disable live Rich dashboard (headless mode)")
    _add_report_args(run)

    chain = sub.add_parser("chain", help="Run a request chain")
    chain.add_argument("-f", "--config", required=True, help="Path to chain YAML")
    chain.add_argument("--var", action="append", metavar="KEY=VALUE", help="Global variable (repeatable)")
    chain.add_argument("--timeout", type=int, default=None, metavar="MS", help="Per-request timeout")
    chain.add_argument("-k", "--insecure", action="store_true", help="Do not verify TLS certificates")
    _add_report_args(chain)

    bulk = sub.add_parser("bulk", help="Run several load tests one after another")
    bulk.add_argument("-f", "--config", required=True, help="Path to bulk YAML (runs: [...])")
    bulk.add_argument("--json", metavar="PATH", dest="json_path", help="Also write JSON report to PATH")

    compare = sub.add_parser("compare", help="Compare the stats of two JSON reports")
    compare.add_argument("old", help="Baseline JSON report")
    compare.add_argument("new", help="New JSON report")
    compare.add_argument("--json", metavar="PATH", dest="json_path", help="Write the diff as JSON to PATH")
    return parser


COMMANDS = {
    "run": _cmd_run,
    "chain": _cmd_chain,
    "bulk": _cmd_bulk,
    "compare": _cmd_compare,
}


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    console = Console()

    def handle_error(e: BaseException) -> int:
        if isinstance(e, LoadLensError):
            print(f"Error: {e.message}", file=sys.stderr)
            return EXIT_ERROR
        if isinstance(e, (FileNotFoundError, ValueError)):
            print(f"Error: {e}", file=sys.stderr)
            return EXIT_ERROR
        logger.exception("Unexpected error")
        print("Error: An unexpected error occurred. Check logs for details.", file=sys.stderr)
        return EXIT_ERROR

    try:
        return COMMANDS[args.command](args, console)
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        return EXIT_INTERRUPTED
    except Exception as e:
        return handle_error(e)


if __name__ == "__main__":
    sys.exit(main())
