"""Aggregation of request measurements into run statistics.

Percentiles use the nearest-rank method everywhere (final stats and per-second
buckets): sort ascending and take the value at index ceil(p/100 * n) - 1.
The median is the conventional median (mean of the two middle values for an
even count), so it may differ from p50 on even-sized runs.

Performance optimizations:
- __slots__ on the collector (fold is called once per request)
- Welford running mean/variance, no second pass for stddev
- Streaming T-Digest for the live dashboard; exact values only at finalize
- Per-second buckets keyed by int; response times live only in their bucket
- At most max_samples response times are kept for exact percentiles
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from tdigest import TDigest

from .logging_config import get_logger
from .models import (
    DEFAULT_MAX_DISPLAY_REQUESTS,
    MAX_TOTAL_REQUESTS,
    AggregateResult,
    BottleneckBreakdown,
    CacheStatus,
    Phase,
    RequestMeasurement,
    ResponseSample,
    RunStats,
    TestingInsights,
    TimeSeriesPoint,
)

if TYPE_CHECKING:
    from .scenarios import LoadTimeline

logger = get_logger("metrics")

# Time series bucket size in seconds
TIME_SERIES_BUCKET_SEC = 1
PERCENTILES = (50, 75, 90, 95, 99)

# Verdict thresholds for TestingInsights
LOAD_PASS_ERROR_PCT = 1.0
LOAD_WARN_ERROR_PCT = 5.0
STRESS_STABLE_MAX_MS = 1000.0
STRESS_STABLE_ERROR_PCT = 5.0
STRESS_DEGRADED_MAX_MS = 2000.0
LATENCY_EXCELLENT_MS = 200.0
LATENCY_ACCEPTABLE_MS = 500.0


def nearest_rank(sorted_values: list[float], p: float) -> float:
    """Nearest-rank percentile of an ascending list. Returns 0.0 if empty."""
    n = len(sorted_values)
    if n == 0:
        return 0.0
    idx = math.ceil(p * n / 100) - 1
    return sorted_values[min(n - 1, max(0, idx))]


def median(sorted_values: list[float]) -> float:
    n = len(sorted_values)
    if n == 0:
        return 0.0
    mid = n // 2
    if n % 2:
        return sorted_values[mid]
    return (sorted_values[mid - 1] + sorted_values[mid]) / 2


def _percentile_from_digest(digest: TDigest, p: float) -> float:
    """Get percentile from T-Digest. Returns 0.0 if empty."""
    try:
        return digest.percentile(p) or 0.0
    except (ValueError, IndexError):
        return 0.0


def build_testing_insights(
    cold_start: float,
    warm_avg: float,
    stats: RunStats,
) -> TestingInsights:
    """Cold/warm comparison plus load, stress and latency verdicts."""
    if stats.error_rate < LOAD_PASS_ERROR_PCT:
        load_status = "PASSED"
    elif stats.error_rate < LOAD_WARN_ERROR_PCT:
        load_status = "WARNING"
    else:
        load_status = "FAILED"

    if stats.max < STRESS_STABLE_MAX_MS and stats.error_rate < STRESS_STABLE_ERROR_PCT:
        stress_status = "STABLE"
    elif stats.max < STRESS_DEGRADED_MAX_MS:
        stress_status = "DEGRADED"
    else:
        stress_status = "BREAKING"

    if stats.mean < LATENCY_EXCELLENT_MS:
        latency_status = "EXCELLENT"
    elif stats.mean < LATENCY_ACCEPTABLE_MS:
        latency_status = "ACCEPTABLE"
    else:
        latency_status = "SLOW"

    return TestingInsights(
        cold_start=cold_start,
        warm_avg=warm_avg,
        cold_warm_ratio=cold_start / warm_avg if warm_avg > 0 else 0.0,
        variance=stats.max - stats.min,
        load_status=load_status,
        stress_status=stress_status,
        latency_status=latency_status,
    )


@dataclass(slots=True)
class LiveSnapshot:
    """Cheap running view for progress displays (percentiles are T-Digest estimates)."""

    requests: int = 0
    success_count: int = 0
    error_count: int = 0
    error_rate: float = 0.0
    mean: float = 0.0
    min: float = 0.0
    max: float = 0.0
    p50: float = 0.0
    p95: float = 0.0
    p99: float = 0.0
    cache_hit_rate: float = 0.0


class _Bucket:
    __slots__ = ("times", "success", "errors", "active_vus")

    def __init__(self) -> None:
        self.times: list[float] = []
        self.success = 0
        self.errors = 0
        self.active_vus = 0


class Aggregator:
    """
    Folds measurements one at a time; finalize() produces the run result.

    Not safe for concurrent fold calls: the scheduler serializes them through a
    single queue consumer. Measurements may arrive in any index order.
    """

    __slots__ = (
        "_count", "_sum", "_mean", "_m2", "_min", "_max", "_success", "_errors",
        "_cache_hits", "_digest", "_buckets", "_bottleneck", "_display",
        "_max_display", "_wave_size", "_cold_start", "_wave_sum", "_max_samples",
        "_retained", "_first_response", "_first_is_success",
        "_run_start", "_wall_start", "_last_completed", "_timeline", "_result",
    )

    def __init__(
        self,
        max_display_requests: int = DEFAULT_MAX_DISPLAY_REQUESTS,
        wave_size: int = 1,
        max_samples: int = MAX_TOTAL_REQUESTS,
    ) -> None:
        self._count = 0
        self._sum = 0.0
        self._mean = 0.0
        self._m2 = 0.0
        self._min = math.inf
        self._max = 0.0
        self._success = 0
        self._errors = 0
        self._cache_hits = 0
        self._digest = TDigest()
        self._buckets: dict[int, _Bucket] = {}
        self._bottleneck = BottleneckBreakdown()
        self._display: list[RequestMeasurement] = []
        self._max_display = max(0, max_display_requests)
        # First "wave" (one request per lane) is excluded from the warm average.
        self._wave_size = max(1, wave_size)
        self._cold_start = 0.0
        self._wave_sum = 0.0
        self._max_samples = max(1, max_samples)
        self._retained = 0
        self._first_response: ResponseSample | None = None
        self._first_is_success = False
        self._run_start: float | None = None
        self._wall_start = datetime.now(timezone.utc)
        self._last_completed = 0.0
        self._timeline: LoadTimeline | None = None
        self._result: AggregateResult | None = None

    def start(self, run_start: float, timeline: LoadTimeline | None = None) -> None:
        """Anchor time buckets at run_start (perf_counter seconds)."""
        self._run_start = run_start
        self._wall_start = datetime.now(timezone.utc)
        self._timeline = timeline

    @property
    def finalized(self) -> bool:
        return self._result is not None

    @property
    def count(self) -> int:
        return self._count

    @property
    def needs_sample(self) -> bool:
        """True until a successful response has been captured."""
        return not self._first_is_success

    def fold(self, m: RequestMeasurement) -> None:
        """Add one measurement. Ignored after finalize()."""
        if self._result is not None:
            logger.debug("Measurement %d ignored: aggregator already finalized", m.index)
            return
        if self._run_start is None:
            self._run_start = m.completed_at - m.total_time / 1000.0

        t = m.total_time
        if self._count == 0:
            self._cold_start = t
        if self._count < self._wave_size:
            self._wave_sum += t
        self._count += 1
        self._sum += t
        delta = t - self._mean
        self._mean += delta / self._count
        self._m2 += delta * (t - self._mean)
        if t < self._min:
            self._min = t
        if t > self._max:
            self._max = t
        self._digest.update(t)

        error = m.is_error
        if error:
            self._errors += 1
        else:
            self._success += 1
        if m.cache == CacheStatus.HIT:
            self._cache_hits += 1

        sec = int(max(0.0, m.completed_at - self._run_start) // TIME_SERIES_BUCKET_SEC)
        bucket = self._buckets.get(sec)
        if bucket is None:
            bucket = self._buckets[sec] = _Bucket()
        if self._retained < self._max_samples:
            bucket.times.append(t)
            self._retained += 1
            if self._retained == self._max_samples:
                logger.warning("Kept %d response times; later ones only update running stats", self._retained)
        if error:
            bucket.errors += 1
        else:
            bucket.success += 1
        if m.active_vus > bucket.active_vus:
            bucket.active_vus = m.active_vus
        if m.completed_at > self._last_completed:
            self._last_completed = m.completed_at

        self._bottleneck.add(m.timing)

        if m.sample is not None:
            if self._first_response is None or (not self._first_is_success and not error):
                self._first_response = m.sample
                self._first_is_success = not error
            # Bodies are only kept for the representative response.
            m.sample = None
        if len(self._display) < self._max_display:
            self._display.append(m)

    def snapshot(self) -> LiveSnapshot:
        n = self._count
        if n == 0:
            return LiveSnapshot()
        return LiveSnapshot(
            requests=n,
            success_count=self._success,
            error_count=self._errors,
            error_rate=100.0 * self._errors / n,
            mean=self._mean,
            min=self._min,
            max=self._max,
            p50=_percentile_from_digest(self._digest, 50),
            p95=_percentile_from_digest(self._digest, 95),
            p99=_percentile_from_digest(self._digest, 99),
            cache_hit_rate=100.0 * self._cache_hits / n,
        )

    def finalize(self, elapsed_seconds: float | None = None) -> AggregateResult:
        """Compute final statistics. Idempotent: later calls return the same object."""
        if self._result is not None:
            return self._result

        if elapsed_seconds is None:
            start = self._run_start if self._run_start is not None else self._last_completed
            elapsed_seconds = max(0.0, self._last_completed - start)

        stats = self._stats(elapsed_seconds)
        warm_count = self._count - self._wave_size
        self._result = AggregateResult(
            stats=stats,
            time_series=self._time_series(),
            bottleneck=self._bottleneck,
            testing=build_testing_insights(
                self._cold_start,
                (self._sum - self._wave_sum) / warm_count if warm_count > 0 else 0.0,
                stats,
            ),
            requests=list(self._display),
            first_response=self._first_response,
            elapsed_seconds=elapsed_seconds,
        )
        logger.debug("Aggregator finalized: %d requests", self._count)
        return self._result

    def _stats(self, elapsed_seconds: float) -> RunStats:
        n = self._count
        if n == 0:
            return RunStats()
        ordered = sorted(t for bucket in self._buckets.values() for t in bucket.times)
        p50, p75, p90, p95, p99 = (nearest_rank(ordered, p) for p in PERCENTILES)
        return RunStats(
            requests=n,
            success_count=self._success,
            error_count=self._errors,
            error_rate=100.0 * self._errors / n,
            rps=n / elapsed_seconds if elapsed_seconds > 0 else 0.0,
            mean=self._mean,
            median=median(ordered),
            min=self._min,
            max=self._max,
            stddev=math.sqrt(self._m2 / n),
            p50=p50,
            p75=p75,
            p90=p90,
            p95=p95,
            p99=p99,
            cache_hits=self._cache_hits,
            cache_misses=n - self._cache_hits,
            cache_hit_rate=100.0 * self._cache_hits / n,
        )

    def _time_series(self) -> list[TimeSeriesPoint]:
        """Contiguous 1s buckets from 0 to the last occupied one; gaps are zero-filled."""
        if not self._buckets:
            return []
        timeline = self._timeline
        out: list[TimeSeriesPoint] = []
        previous_vus = 0
        previous_phase: Phase | None = None
        for sec in range(max(self._buckets) + 1):
            bucket = self._buckets.get(sec)
            phase = timeline.phase_at(sec) if timeline else None
            if phase is None and timeline is not None:
                phase = previous_phase or Phase.SUSTAIN
            if bucket is not None:
                ordered = sorted(bucket.times)
                count = bucket.success + bucket.errors
                active_vus = bucket.active_vus or previous_vus
                p50 = nearest_rank(ordered, 50)
                p95 = nearest_rank(ordered, 95)
                p99 = nearest_rank(ordered, 99)
                success, errors = bucket.success, bucket.errors
            else:
                count = 0
                active_vus = timeline.target_vus_at(sec) if timeline else previous_vus
                p50 = p95 = p99 = 0.0
                success = errors = 0
            out.append(
                TimeSeriesPoint(
                    time=sec,
                    timestamp=(self._wall_start + timedelta(seconds=sec)).isoformat(timespec="seconds"),
                    active_vus=active_vus,
                    rps=count / TIME_SERIES_BUCKET_SEC,
                    response_time_p50=p50,
                    response_time_p95=p95,
                    response_time_p99=p99,
                    success_count=success,
                    error_count=errors,
                    phase=phase,
                )
            )
            previous_vus = active_vus
            previous_phase = phase
        return out
