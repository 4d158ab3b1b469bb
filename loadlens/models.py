"""Data models for the loadlens engine.

Optimized for high-throughput, low-memory load testing:
- __slots__ on hot-path classes (measurements are the most allocated objects)
- Frozen dataclasses for inputs that must not change during a run
- Enum for type safety without runtime overhead

Python attributes are snake_case; `as_dict()` produces the camelCase contract
consumed by the UI / persistence collaborators.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Union

if TYPE_CHECKING:
    from collections.abc import Mapping

# Status recorded when no HTTP response was received (timeout, DNS, refused, TLS).
NETWORK_FAILURE_STATUS = 0
TIMEOUT_ERROR = "timeout"


def is_error_status(status: int) -> bool:
    """Single success/error rule used everywhere: 0 and >= 400 are errors."""
    return status == NETWORK_FAILURE_STATUS or status >= 400


def header_value(headers: Mapping[str, str], name: str) -> str | None:
    """Case-insensitive header lookup on any mapping."""
    value = headers.get(name)
    if value is not None:
        return value
    lowered = name.lower()
    for key, value in headers.items():
        if key.lower() == lowered:
            return value
    return None


class BodyContentType(str, Enum):
    NONE = "none"
    JSON = "json"
    FORM = "form"
    RAW = "raw"


class AuthType(str, Enum):
    NONE = "none"
    BASIC = "basic"
    BEARER = "bearer"
    APIKEY = "apikey"


class Phase(str, Enum):
    """Named segment of a phased load profile."""

    WARMUP = "warmup"
    RAMP_UP = "rampup"
    SUSTAIN = "sustain"
    RAMP_DOWN = "rampdown"


class RunState(str, Enum):
    """Scheduler state machine. Flat runs go IDLE -> SUSTAIN -> COMPLETED."""

    IDLE = "idle"
    WARMUP = "warmup"
    RAMP_UP = "rampup"
    SUSTAIN = "sustain"
    RAMP_DOWN = "rampdown"
    COMPLETED = "completed"
    ABORTED = "aborted"

    @classmethod
    def for_phase(cls, phase: Phase) -> "RunState":
        return cls(phase.value)

    @property
    def is_terminal(self) -> bool:
        return self in (RunState.COMPLETED, RunState.ABORTED)


class CacheStatus(str, Enum):
    HIT = "HIT"
    MISS = "MISS"


# --- Request description ---


@dataclass(frozen=True, slots=True)
class AuthDescriptor:
    """Tagged auth variant: none | basic | bearer | apikey."""

    type: AuthType = AuthType.NONE
    username: str = ""
    password: str = ""
    token: str = ""
    key_name: str = ""
    key_value: str = ""

    @classmethod
    def none(cls) -> "AuthDescriptor":
        return cls()

    @classmethod
    def basic(cls, username: str, password: str = "") -> "AuthDescriptor":
        return cls(type=AuthType.BASIC, username=username, password=password)

    @classmethod
    def bearer(cls, token: str) -> "AuthDescriptor":
        return cls(type=AuthType.BEARER, token=token)

    @classmethod
    def apikey(cls, key_name: str, key_value: str) -> "AuthDescriptor":
        return cls(type=AuthType.APIKEY, key_name=key_name, key_value=key_value)


@dataclass(slots=True)
class RequestTemplate:
    """Unresolved request: any string may still contain {{name}} placeholders."""

    url: str
    method: str = "GET"
    headers: dict[str, str] = field(default_factory=dict)
    query_params: list[tuple[str, str]] = field(default_factory=list)
    body: str = ""
    body_content_type: BodyContentType = BodyContentType.NONE
    auth: AuthDescriptor = field(default_factory=AuthDescriptor)


@dataclass(frozen=True, slots=True)
class RequestSpec:
    """Fully resolved, ready-to-send request. Immutable once created."""

    url: str
    method: str
    headers: dict[str, str]
    body: str = ""
    body_content_type: BodyContentType = BodyContentType.NONE
    basic_auth: tuple[str, str] | None = None

    @property
    def body_bytes(self) -> bytes | None:
        return self.body.encode("utf-8") if self.body else None


@dataclass(frozen=True, slots=True)
class Environment:
    """Active environment profile: base URL for relative URLs plus variables."""

    base_url: str = ""
    variables: dict[str, str] = field(default_factory=dict)


# --- Load profiles ---


@dataclass(frozen=True, slots=True)
class FlatProfile:
    """N virtual users x M sequential iterations each."""

    concurrency: int
    iterations: int

    @property
    def total_requests(self) -> int:
        return self.concurrency * self.iterations


@dataclass(frozen=True, slots=True)
class PhaseSpec:
    duration_seconds: float = 0.0
    target_vus: int = 0


# Warmup VUs as a percentage of max VUs for percent-based phased profiles.
DEFAULT_WARMUP_VUS_PERCENT = 20
MIN_WARMUP_VUS_PERCENT = 5
MAX_WARMUP_VUS_PERCENT = 100


@dataclass(frozen=True, slots=True)
class PhasedProfile:
    """Wall-clock driven warmup -> ramp-up -> sustain -> ramp-down profile.

    max_requests optionally caps the total number of requests issued across all
    phases (0 = no cap, run for the full scheduled duration).
    """

    warmup: PhaseSpec = field(default_factory=PhaseSpec)
    ramp_up: PhaseSpec = field(default_factory=PhaseSpec)
    sustain: PhaseSpec = field(default_factory=PhaseSpec)
    ramp_down: PhaseSpec = field(default_factory=PhaseSpec)
    max_requests: int = 0

    @property
    def total_duration_seconds(self) -> float:
        return sum(p.duration_seconds for _, p in self.phases())

    @property
    def max_vus(self) -> int:
        return max((p.target_vus for _, p in self.phases()), default=0)

    def phases(self) -> list[tuple[Phase, PhaseSpec]]:
        return [
            (Phase.WARMUP, self.warmup),
            (Phase.RAMP_UP, self.ramp_up),
            (Phase.SUSTAIN, self.sustain),
            (Phase.RAMP_DOWN, self.ramp_down),
        ]

    @classmethod
    def from_percent(
        cls,
        max_vus: int,
        warmup_seconds: float = 0.0,
        warmup_vus_percent: int = DEFAULT_WARMUP_VUS_PERCENT,
        ramp_up_seconds: float = 0.0,
        sustain_seconds: float = 0.0,
        ramp_down_seconds: float = 0.0,
        max_requests: int = 0,
    ) -> "PhasedProfile":
        """Build the profile the way the UI configures it: warmup at a % of max VUs."""
        pct = max(MIN_WARMUP_VUS_PERCENT, min(MAX_WARMUP_VUS_PERCENT, int(warmup_vus_percent)))
        warmup_vus = max(1, math.ceil(max_vus * pct / 100))
        return cls(
            warmup=PhaseSpec(warmup_seconds, warmup_vus),
            ramp_up=PhaseSpec(ramp_up_seconds, max_vus),
            sustain=PhaseSpec(sustain_seconds, max_vus),
            ramp_down=PhaseSpec(ramp_down_seconds, warmup_vus),
            max_requests=max_requests,
        )


LoadProfile = Union[FlatProfile, PhasedProfile]


# --- Measurements ---


class Timing:
    """Per-phase request timing in milliseconds. Each field >= 0."""

    __slots__ = ("dns", "tcp", "tls", "wait", "download")

    def __init__(
        self,
        dns: float = 0.0,
        tcp: float = 0.0,
        tls: float = 0.0,
        wait: float = 0.0,
        download: float = 0.0,
    ) -> None:
        self.dns = dns
        self.tcp = tcp
        self.tls = tls
        self.wait = wait
        self.download = download

    @property
    def ttfb(self) -> float:
        return self.dns + self.tcp + self.tls + self.wait

    def as_dict(self) -> dict[str, float]:
        return {
            "dns": round(self.dns, 2),
            "tcp": round(self.tcp, 2),
            "tls": round(self.tls, 2),
            "wait": round(self.wait, 2),
            "download": round(self.download, 2),
        }

    def __repr__(self) -> str:
        return (
            f"Timing(dns={self.dns:.2f}, tcp={self.tcp:.2f}, tls={self.tls:.2f}, "
            f"wait={self.wait:.2f}, download={self.download:.2f})"
        )


class ResponseSample:
    """Status, headers and body of one response, kept for assertions and display."""

    __slots__ = ("status", "headers", "body")

    def __init__(self, status: int, headers: dict[str, str], body: str) -> None:
        self.status = status
        self.headers = headers
        self.body = body


class RequestMeasurement:
    """Result of a single request execution.

    Uses __slots__ for memory efficiency. This is the most allocated object
    during load tests. Consumed exactly once by the Aggregator.
    """

    __slots__ = (
        "index", "status", "timing", "total_time", "response_headers_size",
        "response_body_size", "cache", "error", "completed_at", "phase",
        "active_vus", "sample",
    )

    def __init__(
        self,
        index: int,
        status: int,
        timing: Timing,
        total_time: float,
        response_headers_size: int = 0,
        response_body_size: int = 0,
        cache: CacheStatus = CacheStatus.MISS,
        error: str | None = None,
        completed_at: float = 0.0,
        phase: Phase | None = None,
        active_vus: int = 0,
        sample: ResponseSample | None = None,
    ) -> None:
        self.index = index
        self.status = status
        self.timing = timing
        self.total_time = total_time
        self.response_headers_size = response_headers_size
        self.response_body_size = response_body_size
        self.cache = cache
        self.error = error
        self.completed_at = completed_at
        self.phase = phase
        self.active_vus = active_vus
        self.sample = sample

    @property
    def ttfb(self) -> float:
        return self.timing.ttfb

    @property
    def is_error(self) -> bool:
        return is_error_status(self.status)

    def as_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "status": self.status,
            "totalTime": round(self.total_time, 2),
            "ttfb": round(self.ttfb, 2),
            "size": self.response_body_size,
            "cache": self.cache.value,
            "error": self.error,
            "phase": self.phase.value if self.phase else None,
            "timing": self.timing.as_dict(),
            "sizeDetails": {
                "responseHeaders": self.response_headers_size,
                "responseBody": self.response_body_size,
            },
        }

    def __repr__(self) -> str:
        return (
            f"RequestMeasurement(index={self.index}, status={self.status}, "
            f"total_ms={self.total_time:.2f}, error={self.error!r})"
        )


# --- Aggregates ---


@dataclass(slots=True)
class RunStats:
    """Final statistics over all measurements of a run (times in ms)."""

    requests: int = 0
    success_count: int = 0
    error_count: int = 0
    error_rate: float = 0.0
    rps: float = 0.0
    mean: float = 0.0
    median: float = 0.0
    min: float = 0.0
    max: float = 0.0
    stddev: float = 0.0
    p50: float = 0.0
    p75: float = 0.0
    p90: float = 0.0
    p95: float = 0.0
    p99: float = 0.0
    cache_hits: int = 0
    cache_misses: int = 0
    cache_hit_rate: float = 0.0

    def as_dict(self) -> dict[str, Any]:
        return {
            "requests": self.requests,
            "successCount": self.success_count,
            "errorCount": self.error_count,
            "errorRate": round(self.error_rate, 2),
            "rps": round(self.rps, 1),
            "mean": round(self.mean, 2),
            "median": round(self.median, 2),
            "min": round(self.min, 2),
            "max": round(self.max, 2),
            "stddev": round(self.stddev, 2),
            "p50": round(self.p50, 2),
            "p75": round(self.p75, 2),
            "p90": round(self.p90, 2),
            "p95": round(self.p95, 2),
            "p99": round(self.p99, 2),
            "cacheHits": self.cache_hits,
            "cacheMisses": self.cache_misses,
            "cacheHitRate": round(self.cache_hit_rate, 2),
        }


@dataclass(slots=True)
class TimeSeriesPoint:
    """One fixed-width (1s) aggregation bucket for charting."""

    time: int
    timestamp: str
    active_vus: int
    rps: float
    response_time_p50: float
    response_time_p95: float
    response_time_p99: float
    success_count: int
    error_count: int
    phase: Phase | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "time": self.time,
            "timestamp": self.timestamp,
            "activeVUs": self.active_vus,
            "rps": round(self.rps, 2),
            "responseTimeP50": round(self.response_time_p50, 2),
            "responseTimeP95": round(self.response_time_p95, 2),
            "responseTimeP99": round(self.response_time_p99, 2),
            "successCount": self.success_count,
            "errorCount": self.error_count,
            "phase": self.phase.value if self.phase else None,
        }


@dataclass(slots=True)
class BottleneckBreakdown:
    """Summed time per request phase across the run (ms)."""

    dns: float = 0.0
    tcp: float = 0.0
    tls: float = 0.0
    wait: float = 0.0
    download: float = 0.0
    requests: int = 0

    def add(self, timing: Timing) -> None:
        self.dns += timing.dns
        self.tcp += timing.tcp
        self.tls += timing.tls
        self.wait += timing.wait
        self.download += timing.download
        self.requests += 1

    def totals(self) -> dict[str, float]:
        return {
            "dns": self.dns,
            "tcp": self.tcp,
            "tls": self.tls,
            "wait": self.wait,
            "download": self.download,
        }

    @property
    def dominant(self) -> str | None:
        """Phase with the largest share of total time, None when nothing was timed."""
        totals = self.totals()
        name, value = max(totals.items(), key=lambda kv: kv[1])
        return name if value > 0 else None

    def averages(self) -> dict[str, float]:
        if self.requests == 0:
            return {k: 0.0 for k in self.totals()}
        return {k: v / self.requests for k, v in self.totals().items()}

    def as_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {k: round(v, 2) for k, v in self.totals().items()}
        out["dominant"] = self.dominant
        out["average"] = {k: round(v, 2) for k, v in self.averages().items()}
        return out


@dataclass(slots=True)
class TestingInsights:
    """Cold-start vs warm comparison plus coarse health verdicts."""

    __test__ = False  # not a pytest class

    cold_start: float = 0.0
    warm_avg: float = 0.0
    cold_warm_ratio: float = 0.0
    variance: float = 0.0
    load_status: str = "PASSED"
    stress_status: str = "STABLE"
    latency_status: str = "EXCELLENT"

    def as_dict(self) -> dict[str, Any]:
        return {
            "coldStart": round(self.cold_start, 2),
            "warmAvg": round(self.warm_avg, 2),
            "coldWarmRatio": round(self.cold_warm_ratio, 1),
            "variance": round(self.variance, 2),
            "loadStatus": self.load_status,
            "stressStatus": self.stress_status,
            "latencyStatus": self.latency_status,
        }


@dataclass(slots=True)
class AggregateResult:
    """Output of Aggregator.finalize()."""

    stats: RunStats
    time_series: list[TimeSeriesPoint]
    bottleneck: BottleneckBreakdown
    testing: TestingInsights
    requests: list[RequestMeasurement]
    first_response: ResponseSample | None
    elapsed_seconds: float


# --- Assertions ---


class AssertionType(str, Enum):
    STATUS_CODE = "status_code"
    RESPONSE_TIME = "response_time"
    JSON_PATH = "json_path"
    HEADER = "header"


class Operator(str, Enum):
    EQUALS = "equals"
    NEQ = "neq"
    CONTAINS = "contains"
    GT = "gt"
    LT = "lt"
    GTE = "gte"
    LTE = "lte"
    EXISTS = "exists"
    NOT_EXISTS = "not_exists"


@dataclass(frozen=True, slots=True)
class AssertionRule:
    type: AssertionType
    operator: Operator
    expected_value: str = ""
    field_path: str = ""
    enabled: bool = True


@dataclass(slots=True)
class AssertionResult:
    type: str
    operator: str
    expected: str
    actual: Any
    passed: bool
    message: str = ""

    def as_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "operator": self.operator,
            "expected": self.expected,
            "actual": self.actual,
            "passed": self.passed,
            "message": self.message,
        }


# --- Run invocation ---

DEFAULT_TIMEOUT_MS = 30_000
MAX_TIMEOUT_MS = 120_000
DEFAULT_MAX_CONCURRENCY = 100
DEFAULT_MAX_ITERATIONS = 1000
MAX_TOTAL_REQUESTS = 100_000
DEFAULT_MAX_DISPLAY_REQUESTS = 1000
DEFAULT_CACHE_HEADER = "X-Cache"


@dataclass(slots=True)
class RunRequest:
    """Everything needed to execute one load test."""

    template: RequestTemplate
    profile: LoadProfile
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    assertions: list[AssertionRule] = field(default_factory=list)
    environment: Environment = field(default_factory=Environment)
    variables: dict[str, str] = field(default_factory=dict)
    bypass_cache: bool = False
    cache_header: str = DEFAULT_CACHE_HEADER
    cache_hit_values: frozenset[str] = frozenset({"HIT"})
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    max_display_requests: int = DEFAULT_MAX_DISPLAY_REQUESTS
    verify_tls: bool = True
    http2: bool = True


@dataclass(slots=True)
class Progress:
    completed_count: int
    total_estimate: int
    state: RunState
    elapsed_seconds: float
    active_vus: int


FIRST_RESPONSE_BODY_LIMIT = 10_000


@dataclass(slots=True)
class RunResult:
    """Combined output of a run: aggregate, assertions and run state."""

    success: bool
    state: RunState
    stats: RunStats
    time_series: list[TimeSeriesPoint]
    bottleneck: BottleneckBreakdown
    testing: TestingInsights
    requests: list[RequestMeasurement]
    first_response: ResponseSample | None
    assertions: list[AssertionResult] = field(default_factory=list)
    started_at: str = ""
    finished_at: str = ""

    @property
    def aborted(self) -> bool:
        return self.state == RunState.ABORTED

    @property
    def assertions_passed(self) -> int:
        return sum(1 for a in self.assertions if a.passed)

    @property
    def assertions_total(self) -> int:
        return len(self.assertions)

    def as_dict(self) -> dict[str, Any]:
        first: dict[str, Any] = {"status": 0, "headers": {}, "size": 0, "body": ""}
        if self.first_response is not None:
            body = self.first_response.body
            first = {
                "status": self.first_response.status,
                "headers": dict(self.first_response.headers),
                "size": len(body.encode("utf-8")),
                "body": body[:FIRST_RESPONSE_BODY_LIMIT] + "..." if len(body) > FIRST_RESPONSE_BODY_LIMIT else body,
            }
        return {
            "success": self.success,
            "state": self.state.value,
            "aborted": self.aborted,
            "startedAt": self.started_at,
            "finishedAt": self.finished_at,
            "stats": self.stats.as_dict(),
            "timeSeries": [p.as_dict() for p in self.time_series],
            "bottleneck": self.bottleneck.as_dict(),
            "testing": self.testing.as_dict(),
            "firstResponse": first,
            "requests": [m.as_dict() for m in self.requests],
            "assertions": [a.as_dict() for a in self.assertions],
            "assertions_passed": self.assertions_passed,
            "assertions_total": self.assertions_total,
        }


# --- Chains ---


class ExtractionSource(str, Enum):
    BODY = "body"
    HEADER = "header"
    STATUS = "status"


@dataclass(frozen=True, slots=True)
class Extraction:
    variable_name: str
    source: ExtractionSource = ExtractionSource.BODY
    path: str = ""


@dataclass(slots=True)
class ChainStep:
    id: str
    name: str
    template: RequestTemplate
    extractions: list[Extraction] = field(default_factory=list)
    stop_on_error: bool = False
    fail_on_http_error: bool = True
    assertions: list[AssertionRule] = field(default_factory=list)


@dataclass(slots=True)
class StepResult:
    step_id: str
    step_name: str
    ran: bool
    success: bool
    status: int = NETWORK_FAILURE_STATUS
    duration_ms: float = 0.0
    extracted_variables: dict[str, str] = field(default_factory=dict)
    assertions: list[AssertionResult] = field(default_factory=list)
    error: str | None = None
    response_body: str = ""

    def as_dict(self) -> dict[str, Any]:
        return {
            "stepId": self.step_id,
            "stepName": self.step_name,
            "ran": self.ran,
            "success": self.success,
            "status": self.status,
            "duration": round(self.duration_ms, 2),
            "extractedVariables": dict(self.extracted_variables),
            "assertions": [a.as_dict() for a in self.assertions],
            "error": self.error,
            "response": {"body": self.response_body},
        }


@dataclass(slots=True)
class ChainResult:
    success: bool
    steps: list[StepResult]
    variables: dict[str, str]
    total_duration_ms: float

    def as_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "steps": [s.as_dict() for s in self.steps],
            "variables": dict(self.variables),
            "totalDuration": round(self.total_duration_ms, 2),
        }


@dataclass(slots=True)
class ChainDefinition:
    """A chain as loaded from configuration: steps plus their shared context."""

    steps: list[ChainStep]
    variables: dict[str, str] = field(default_factory=dict)
    environment: Environment = field(default_factory=Environment)
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    verify_tls: bool = True
