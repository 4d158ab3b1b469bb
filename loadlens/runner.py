"""Run invocation: resolve, schedule, aggregate, assert. One LoadTest per run."""

from __future__ import annotations

import asyncio
import signal
import sys
import time
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from rich.console import Console
from rich.live import Live

from .assertions import AssertionContext, evaluate
from .config import clamp_timeout, validate_profile
from .dashboard import create_live_panel, progress_line
from .engine import ExecutorSettings, create_client
from .exceptions import ConfigurationError, RunnerError
from .logging_config import get_logger
from .metrics import Aggregator, LiveSnapshot
from .models import (
    FlatProfile,
    PhasedProfile,
    Progress,
    RunRequest,
    RunResult,
    RunState,
)
from .resolver import resolve
from .scenarios import LoadScheduler

if TYPE_CHECKING:
    import httpx

logger = get_logger("runner")

ClientFactory = Callable[[RunRequest], Awaitable["httpx.AsyncClient"]]

LIVE_POLL_SEC = 0.1
LIVE_REFRESH_PER_SEC = 4
# When stdout is not a TTY (e.g. Docker without -it), refresh interval for streaming fallback
STREAMING_FALLBACK_INTERVAL_SEC = 1.0


async def default_client_factory(request: RunRequest) -> httpx.AsyncClient:
    return await create_client(
        http2=request.http2,
        timeout=request.timeout_ms / 1000.0,
        max_concurrency=request.max_concurrency,
        verify=request.verify_tls,
    )


def _lane_count(request: RunRequest) -> int:
    profile = request.profile
    if isinstance(profile, FlatProfile):
        return min(profile.concurrency, request.max_concurrency)
    return min(profile.max_vus, request.max_concurrency)


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


class LoadTest:
    """
    One load test run.

    run() validates and resolves everything before the first request, so a
    ConfigurationError means nothing was sent. cancel() and progress() may be
    called from another task while run() is awaited.
    """

    def __init__(self, request: RunRequest, client_factory: ClientFactory | None = None) -> None:
        self.request = request
        self.client_factory = client_factory or default_client_factory
        self._scheduler: LoadScheduler | None = None
        self._aggregator: Aggregator | None = None
        self._cancel_requested = False
        self._started = False

    def cancel(self) -> None:
        self._cancel_requested = True
        if self._scheduler is not None:
            self._scheduler.cancel()

    def progress(self) -> Progress:
        if self._scheduler is not None:
            return self._scheduler.progress()
        profile = self.request.profile
        estimate = profile.total_requests if isinstance(profile, FlatProfile) else 0
        state = RunState.ABORTED if self._cancel_requested else RunState.IDLE
        return Progress(0, estimate, state, 0.0, 0)

    def snapshot(self) -> LiveSnapshot:
        if self._aggregator is None:
            return LiveSnapshot()
        return self._aggregator.snapshot()

    async def run(self) -> RunResult:
        """Execute the run and return its result.

        Raises:
            ConfigurationError: invalid URL, auth or load profile
            RunnerError: run() called more than once
        """
        if self._started:
            raise RunnerError("LoadTest.run() can only be called once")
        self._started = True

        request = self.request
        profile = validate_profile(request.profile, request.max_concurrency, request.max_iterations)
        spec = resolve(request.template, request.variables, request.environment)
        settings = ExecutorSettings(
            timeout_ms=clamp_timeout(request.timeout_ms),
            cache_header=request.cache_header,
            cache_hit_values=request.cache_hit_values,
        )
        aggregator = Aggregator(
            max_display_requests=request.max_display_requests,
            wave_size=_lane_count(request),
        )
        self._aggregator = aggregator
        started_at = _utc_now()
        logger.info(
            "Starting load test: %s %s, profile=%s",
            spec.method,
            spec.url,
            "phased" if isinstance(profile, PhasedProfile) else "flat",
        )

        async with await self.client_factory(request) as client:
            scheduler = LoadScheduler(
                client,
                spec,
                profile,
                settings,
                aggregator,
                bypass_cache=request.bypass_cache,
                max_concurrency=request.max_concurrency,
            )
            self._scheduler = scheduler
            if self._cancel_requested:
                scheduler.cancel()
            state = await scheduler.run()

        agg = aggregator.finalize(scheduler.elapsed_seconds)
        context = AssertionContext.from_sample(agg.first_response, agg.stats.mean)
        assertions = evaluate(request.assertions, context)
        result = RunResult(
            success=state == RunState.COMPLETED and agg.stats.requests > 0,
            state=state,
            stats=agg.stats,
            time_series=agg.time_series,
            bottleneck=agg.bottleneck,
            testing=agg.testing,
            requests=agg.requests,
            first_response=agg.first_response,
            assertions=assertions,
            started_at=started_at,
            finished_at=_utc_now(),
        )
        logger.info(
            "Load test finished: requests=%d, rps=%.1f, error_rate_pct=%.2f, assertions=%d/%d",
            agg.stats.requests,
            agg.stats.rps,
            agg.stats.error_rate,
            result.assertions_passed,
            result.assertions_total,
        )
        return result


async def run_load_test(request: RunRequest, client_factory: ClientFactory | None = None) -> RunResult:
    """Run one load test to completion."""
    return await LoadTest(request, client_factory).run()


async def run_and_report(request: RunRequest, client_factory: ClientFactory | None = None) -> dict[str, Any]:
    """Serialized result, or {"error": message} when the run cannot start."""
    try:
        result = await run_load_test(request, client_factory)
    except ConfigurationError as e:
        logger.warning("Run not started: %s", e)
        return {"error": str(e)}
    return result.as_dict()


async def run_bulk(
    runs: list[tuple[str, RunRequest]],
    client_factory: ClientFactory | None = None,
) -> list[dict[str, Any]]:
    """Run several requests one after another. One entry per run: name plus result or error."""
    out: list[dict[str, Any]] = []
    for name, request in runs:
        logger.info("Bulk run %d/%d: %s", len(out) + 1, len(runs), name)
        report = await run_and_report(request, client_factory)
        if "error" in report:
            out.append({"name": name, "error": report["error"]})
        else:
            out.append({"name": name, "result": report})
    return out


def _stdout_is_tty() -> bool:
    """True if stdout is a TTY (interactive terminal). False in Docker without -it, CI, pipes."""
    return hasattr(sys.stdout, "isatty") and sys.stdout.isatty()


def _setup_signal_handlers(test: LoadTest) -> None:
    """SIGINT/SIGTERM cancel the run; the partial result is still reported."""
    loop = asyncio.get_running_loop()

    def _signal_handler(signum: int, frame: Any) -> None:
        logger.info("Shutdown signal received (signal %d), finishing current requests...", signum)
        loop.call_soon_threadsafe(test.cancel)

    if hasattr(signal, "SIGTERM"):
        signal.signal(signal.SIGTERM, _signal_handler)
    signal.signal(signal.SIGINT, _signal_handler)


async def run_with_live_view(
    test: LoadTest,
    live: bool = True,
    console: Console | None = None,
) -> RunResult:
    """Run a LoadTest while showing progress (Rich panel on a TTY, plain lines otherwise)."""
    _setup_signal_handlers(test)
    task = asyncio.create_task(test.run())
    target = test.request.template.url
    if live:
        if _stdout_is_tty():
            console = console or Console()
            with Live(
                create_live_panel(test.progress(), test.snapshot(), target),
                console=console,
                refresh_per_second=LIVE_REFRESH_PER_SEC,
            ) as live_ctx:
                while not task.done():
                    live_ctx.update(create_live_panel(test.progress(), test.snapshot(), target))
                    await asyncio.sleep(LIVE_POLL_SEC)
                live_ctx.update(create_live_panel(test.progress(), test.snapshot(), target))
        else:
            next_line = time.perf_counter()
            while not task.done():
                if time.perf_counter() >= next_line:
                    sys.stdout.write(progress_line(test.progress(), test.snapshot()))
                    sys.stdout.flush()
                    next_line += STREAMING_FALLBACK_INTERVAL_SEC
                await asyncio.sleep(LIVE_POLL_SEC)
    return await task
