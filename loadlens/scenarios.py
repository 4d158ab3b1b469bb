"""Load scheduling: flat N x M lanes and wall-clock phased profiles.

Phased runs move through warmup -> ramp-up -> sustain -> ramp-down. Ramps
interpolate linearly between the previous phase's target and the current one,
rounded up. A phase whose target is 0 runs no lanes.
"""

from __future__ import annotations

import asyncio
import math
import time
from typing import TYPE_CHECKING

from .engine import Dispatch, ExecutorSettings, collect_measurements, run_lane
from .exceptions import RunnerError
from .logging_config import get_logger
from .models import (
    DEFAULT_MAX_CONCURRENCY,
    MAX_TOTAL_REQUESTS,
    FlatProfile,
    LoadProfile,
    Phase,
    PhasedProfile,
    Progress,
    RequestMeasurement,
    RequestSpec,
    RunState,
)
from .resolver import with_cache_buster

if TYPE_CHECKING:
    import httpx

    from .metrics import Aggregator

logger = get_logger("scenarios")

# Ramp loop interval (seconds). Lower = finer ramp, less delay; 0.02 keeps CPU low.
RAMP_POLL_SEC = 0.02


class _Segment:
    __slots__ = ("phase", "start", "end", "from_vus", "to_vus")

    def __init__(self, phase: Phase, start: float, end: float, from_vus: int, to_vus: int) -> None:
        self.phase = phase
        self.start = start
        self.end = end
        self.from_vus = from_vus
        self.to_vus = to_vus


class LoadTimeline:
    """Phase and active-VU target at any elapsed time of a phased profile.

    Single source of truth for lane counts: used by the scheduler loop, the
    aggregator's bucket tagging and the live dashboard.
    """

    def __init__(self, profile: PhasedProfile, max_concurrency: int = DEFAULT_MAX_CONCURRENCY) -> None:
        self.profile = profile
        self.max_concurrency = max(1, max_concurrency)
        self._segments: list[_Segment] = []
        start = 0.0
        previous = profile.warmup.target_vus
        for phase, spec in profile.phases():
            if spec.duration_seconds > 0:
                if phase in (Phase.RAMP_UP, Phase.RAMP_DOWN):
                    from_vus = previous
                else:
                    from_vus = spec.target_vus
                end = start + spec.duration_seconds
                self._segments.append(_Segment(phase, start, end, from_vus, spec.target_vus))
                start = end
            previous = spec.target_vus
        self.total_seconds = start

    def _segment_at(self, elapsed: float) -> _Segment | None:
        if elapsed < 0:
            return None
        for segment in self._segments:
            if elapsed < segment.end:
                return segment
        return None

    def phase_at(self, elapsed: float) -> Phase | None:
        """Phase active at elapsed seconds; None before start or after the last phase."""
        segment = self._segment_at(elapsed)
        return segment.phase if segment else None

    def target_vus_at(self, elapsed: float) -> int:
        """Number of lanes that should be active at elapsed seconds (0 outside the run)."""
        segment = self._segment_at(elapsed)
        if segment is None:
            return 0
        if segment.from_vus == segment.to_vus:
            vus = float(segment.to_vus)
        else:
            fraction = (elapsed - segment.start) / (segment.end - segment.start)
            vus = segment.from_vus + (segment.to_vus - segment.from_vus) * fraction
        return min(self.max_concurrency, max(0, math.ceil(vus)))


class LoadScheduler:
    """
    Drives lanes for one run and feeds their measurements to an Aggregator.

    All lanes share one HTTP client and one result queue; a single consumer task
    folds measurements, so the aggregator never sees concurrent calls.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        spec: RequestSpec,
        profile: LoadProfile,
        settings: ExecutorSettings,
        aggregator: Aggregator,
        bypass_cache: bool = False,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
    ) -> None:
        self.client = client
        self.spec = spec
        self.profile = profile
        self.settings = settings
        self.aggregator = aggregator
        self.bypass_cache = bypass_cache
        self.max_concurrency = max(1, max_concurrency)
        self.timeline = (
            LoadTimeline(profile, self.max_concurrency) if isinstance(profile, PhasedProfile) else None
        )

        self._state = RunState.IDLE
        self._phase: Phase | None = None
        self._cancel_event = asyncio.Event()
        self._queue: asyncio.Queue[RequestMeasurement | None] = asyncio.Queue()
        self._issued = 0
        self._completed = 0
        self._active_lanes = 0
        self._started_at: float | None = None
        self._finished_at: float | None = None
        self._budget = self._request_budget()

    def _request_budget(self) -> int:
        if isinstance(self.profile, FlatProfile):
            return min(self.profile.concurrency, self.max_concurrency) * self.profile.iterations
        # Phased runs without an explicit cap still bound the retained measurements.
        return self.profile.max_requests or MAX_TOTAL_REQUESTS

    @property
    def state(self) -> RunState:
        return self._state

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    @property
    def elapsed_seconds(self) -> float:
        if self._started_at is None:
            return 0.0
        end = self._finished_at if self._finished_at is not None else time.perf_counter()
        return end - self._started_at

    def _set_state(self, state: RunState) -> None:
        if self._state.is_terminal or self.cancelled:
            return
        if state != self._state:
            logger.debug("Run state %s -> %s", self._state.value, state.value)
        self._state = state

    def cancel(self) -> None:
        """Stop issuing new requests. In-flight requests finish or time out."""
        if self._state.is_terminal:
            return
        if not self.cancelled:
            logger.info("Cancellation requested after %d requests", self._completed)
        self._cancel_event.set()
        self._state = RunState.ABORTED

    def progress(self) -> Progress:
        completed = self._completed
        if self.timeline is None:
            total = self._budget
        elif self._state.is_terminal:
            total = completed
        else:
            total = completed
            elapsed = self.elapsed_seconds
            if elapsed > 0 and self.timeline.total_seconds > 0:
                ratio = min(1.0, elapsed / self.timeline.total_seconds)
                total = max(completed, int(completed / ratio))
            if self._budget:
                total = max(completed, min(total, self._budget))
        return Progress(
            completed_count=completed,
            total_estimate=total,
            state=self._state,
            elapsed_seconds=self.elapsed_seconds,
            active_vus=self._active_lanes,
        )

    def _next_dispatch(self) -> Dispatch | None:
        if self.cancelled:
            return None
        if self._budget and self._issued >= self._budget:
            return None
        index = self._issued
        self._issued += 1
        spec = with_cache_buster(self.spec, index) if self.bypass_cache else self.spec
        return Dispatch(
            index=index,
            spec=spec,
            phase=self._phase,
            active_vus=self._active_lanes,
            capture=self.aggregator.needs_sample,
        )

    def _spawn_lane(self, stop_event: asyncio.Event, iterations: int = 0) -> asyncio.Task[int]:
        return asyncio.create_task(
            run_lane(
                self.client,
                self._next_dispatch,
                self.settings,
                self._queue,
                stop_event,
                iterations,
            )
        )

    async def _consume(self) -> None:
        fold = self.aggregator.fold
        async for measurement in collect_measurements(self._queue):
            fold(measurement)
            self._completed += 1

    async def run(self) -> RunState:
        """Run the whole profile. Returns the terminal state (completed or aborted)."""
        if self._started_at is not None:
            raise RunnerError("Scheduler can only be run once")
        self._started_at = time.perf_counter()
        self.aggregator.start(self._started_at, timeline=self.timeline)
        consumer = asyncio.create_task(self._consume())
        try:
            if self.timeline is not None:
                await self._run_phased(self.timeline)
            elif isinstance(self.profile, FlatProfile):
                await self._run_flat(self.profile)
        finally:
            self._queue.put_nowait(None)
            await consumer
            self._finished_at = time.perf_counter()
            self._active_lanes = 0

        if self.cancelled:
            self._state = RunState.ABORTED
        else:
            self._state = RunState.COMPLETED
        logger.info(
            "Run %s: %d requests in %.2fs",
            self._state.value,
            self._completed,
            self.elapsed_seconds,
        )
        return self._state

    async def _run_flat(self, profile: FlatProfile) -> None:
        lanes = min(profile.concurrency, self.max_concurrency)
        if self.cancelled or lanes < 1 or profile.iterations < 1:
            return
        self._set_state(RunState.SUSTAIN)
        stop_event = asyncio.Event()
        self._active_lanes = lanes
        tasks = [self._spawn_lane(stop_event, profile.iterations) for _ in range(lanes)]
        await asyncio.gather(*tasks)

    async def _run_phased(self, timeline: LoadTimeline) -> None:
        lanes: list[tuple[asyncio.Task[int], asyncio.Event]] = []
        retired: list[asyncio.Task[int]] = []
        start = self._started_at or time.perf_counter()
        try:
            while not self.cancelled:
                elapsed = time.perf_counter() - start
                phase = timeline.phase_at(elapsed)
                if phase is None:
                    break
                if self._budget and self._issued >= self._budget:
                    break
                if phase != self._phase:
                    self._phase = phase
                    self._set_state(RunState.for_phase(phase))
                target = timeline.target_vus_at(elapsed)
                while len(lanes) < target:
                    stop_event = asyncio.Event()
                    lanes.append((self._spawn_lane(stop_event), stop_event))
                while len(lanes) > target:
                    task, stop_event = lanes.pop()
                    stop_event.set()
                    retired.append(task)
                self._active_lanes = len(lanes)
                await asyncio.sleep(RAMP_POLL_SEC)
        finally:
            for task, stop_event in lanes:
                stop_event.set()
                retired.append(task)
            if retired:
                await asyncio.gather(*retired)
