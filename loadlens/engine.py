"""Timed HTTP executor. One request in, one RequestMeasurement out.

This module provides the core HTTP request execution logic:
- execute_request: single request with per-phase timing, size and cache classification
- run_lane: one virtual user issuing requests back-to-back until told to stop
- create_client: shared async HTTP client factory (pooled, HTTP/2)
- collect_measurements: async generator draining the lane result queue

Phase timing comes from httpcore's `trace` request extension. httpcore resolves
DNS inside its TCP connect, so DNS time is reported inside `tcp` and `dns` stays 0.
On a reused pooled connection no connect/TLS events fire and the whole
time-to-first-byte is attributed to `wait`.
"""

from __future__ import annotations

import asyncio
import time
from typing import TYPE_CHECKING, Any, AsyncIterator, Callable

import httpx

from .logging_config import get_logger
from .models import (
    DEFAULT_CACHE_HEADER,
    DEFAULT_MAX_CONCURRENCY,
    DEFAULT_TIMEOUT_MS,
    NETWORK_FAILURE_STATUS,
    TIMEOUT_ERROR,
    CacheStatus,
    Phase,
    RequestMeasurement,
    RequestSpec,
    ResponseSample,
    Timing,
    header_value,
)

if TYPE_CHECKING:
    from collections.abc import Mapping

logger = get_logger("engine")

DEFAULT_KEEPALIVE_EXPIRY = 30.0
# Nanoseconds to milliseconds conversion
NS_TO_MS = 1_000_000

TRACE_TCP = "connection.connect_tcp"
TRACE_TLS = "connection.start_tls"
TRACE_HEADERS_DONE = "receive_response_headers.complete"


class ExecutorSettings:
    """Per-run executor options shared by every lane."""

    __slots__ = ("timeout_ms", "cache_header", "cache_hit_values")

    def __init__(
        self,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        cache_header: str = DEFAULT_CACHE_HEADER,
        cache_hit_values: frozenset[str] = frozenset({"HIT"}),
    ) -> None:
        self.timeout_ms = timeout_ms
        self.cache_header = cache_header
        self.cache_hit_values = frozenset(v.strip().upper() for v in cache_hit_values)


class Dispatch:
    """One scheduled request handed to a lane."""

    __slots__ = ("index", "spec", "phase", "active_vus", "capture")

    def __init__(
        self,
        index: int,
        spec: RequestSpec,
        phase: Phase | None = None,
        active_vus: int = 0,
        capture: bool = False,
    ) -> None:
        self.index = index
        self.spec = spec
        self.phase = phase
        self.active_vus = active_vus
        self.capture = capture


class _TraceRecorder:
    """Records httpcore trace events as perf_counter_ns marks."""

    __slots__ = ("marks",)

    def __init__(self) -> None:
        self.marks: dict[str, int] = {}

    async def __call__(self, event_name: str, info: dict[str, Any]) -> None:
        self.marks[event_name] = time.perf_counter_ns()

    def span_ms(self, prefix: str) -> float:
        started = self.marks.get(f"{prefix}.started")
        complete = self.marks.get(f"{prefix}.complete")
        if started is None or complete is None:
            return 0.0
        return max(0.0, (complete - started) / NS_TO_MS)

    def first_byte_ns(self) -> int | None:
        for name, ns in self.marks.items():
            if name.endswith(TRACE_HEADERS_DONE):
                return ns
        return None


def classify_cache(
    headers: Mapping[str, str],
    header_name: str,
    hit_values: frozenset[str],
) -> CacheStatus:
    """HIT when the designated header's first token is in hit_values (case-insensitive)."""
    value = header_value(headers, header_name)
    if value is None:
        return CacheStatus.MISS
    token = value.split(",", 1)[0].strip().upper()
    return CacheStatus.HIT if token in hit_values else CacheStatus.MISS


def headers_block_size(response: httpx.Response) -> int:
    """Byte length of the response header block as 'Name: value' lines joined by CRLF."""
    raw = response.headers.raw
    if not raw:
        return 0
    return sum(len(k) + 2 + len(v) for k, v in raw) + 2 * (len(raw) - 1)


def _failure_timing(recorder: _TraceRecorder, total_ms: float) -> Timing:
    tcp = recorder.span_ms(TRACE_TCP)
    tls = recorder.span_ms(TRACE_TLS)
    return Timing(tcp=tcp, tls=tls, wait=max(0.0, total_ms - tcp - tls))


async def _send_and_read(
    client: httpx.AsyncClient,
    request: httpx.Request,
    basic_auth: tuple[str, str] | None,
) -> tuple[httpx.Response, bytes, int]:
    response = await client.send(request, auth=basic_auth, stream=True)
    headers_ns = time.perf_counter_ns()
    try:
        content = await response.aread()
    finally:
        await response.aclose()
    return response, content, headers_ns


async def execute_request(
    client: httpx.AsyncClient,
    spec: RequestSpec,
    settings: ExecutorSettings,
    index: int = 0,
    capture: bool = False,
    phase: Phase | None = None,
    active_vus: int = 0,
) -> RequestMeasurement:
    """Execute a single HTTP request and return its measurement.

    Args:
        client: Shared async HTTP client
        spec: Resolved request
        settings: Timeout and cache classification options
        index: 0-based sequence number within the run
        capture: Keep status, headers and decoded body on the measurement
        phase: Load phase active when the request was dispatched
        active_vus: Lane count when the request was dispatched

    Returns:
        RequestMeasurement. Non-2xx responses are normal measurements.

    Note:
        This never raises. Timeouts become error="timeout", network failures a
        descriptive error, both with status 0.
    """
    recorder = _TraceRecorder()
    timeout_s = settings.timeout_ms / 1000.0
    start_ns = time.perf_counter_ns()
    try:
        request = client.build_request(
            spec.method,
            spec.url,
            headers=spec.headers,
            content=spec.body_bytes,
            timeout=timeout_s,
            extensions={"trace": recorder},
        )
        response, content, headers_ns = await asyncio.wait_for(
            _send_and_read(client, request, spec.basic_auth), timeout=timeout_s
        )
    except (asyncio.TimeoutError, httpx.TimeoutException):
        end_ns = time.perf_counter_ns()
        total_ms = (end_ns - start_ns) / NS_TO_MS
        logger.debug("Request %d timed out after %.1fms", index, total_ms)
        return RequestMeasurement(
            index=index,
            status=NETWORK_FAILURE_STATUS,
            timing=_failure_timing(recorder, total_ms),
            total_time=total_ms,
            error=TIMEOUT_ERROR,
            completed_at=end_ns / 1_000_000_000,
            phase=phase,
            active_vus=active_vus,
        )
    except Exception as e:  # noqa: BLE001
        end_ns = time.perf_counter_ns()
        total_ms = (end_ns - start_ns) / NS_TO_MS
        message = str(e) or type(e).__name__
        logger.debug("Request %d failed: %s", index, message)
        return RequestMeasurement(
            index=index,
            status=NETWORK_FAILURE_STATUS,
            timing=_failure_timing(recorder, total_ms),
            total_time=total_ms,
            error=message,
            completed_at=end_ns / 1_000_000_000,
            phase=phase,
            active_vus=active_vus,
        )

    end_ns = time.perf_counter_ns()
    total_ms = (end_ns - start_ns) / NS_TO_MS
    first_byte_ns = recorder.first_byte_ns() or headers_ns
    ttfb_ms = min(total_ms, max(0.0, (first_byte_ns - start_ns) / NS_TO_MS))
    tcp = recorder.span_ms(TRACE_TCP)
    tls = recorder.span_ms(TRACE_TLS)
    timing = Timing(
        tcp=tcp,
        tls=tls,
        wait=max(0.0, ttfb_ms - tcp - tls),
        download=max(0.0, total_ms - ttfb_ms),
    )
    sample = None
    if capture:
        sample = ResponseSample(response.status_code, dict(response.headers), response.text)
    return RequestMeasurement(
        index=index,
        status=response.status_code,
        timing=timing,
        total_time=total_ms,
        response_headers_size=headers_block_size(response),
        response_body_size=len(content),
        cache=classify_cache(response.headers, settings.cache_header, settings.cache_hit_values),
        error=None,
        completed_at=end_ns / 1_000_000_000,
        phase=phase,
        active_vus=active_vus,
        sample=sample,
    )


async def run_lane(
    client: httpx.AsyncClient,
    next_dispatch: Callable[[], Dispatch | None],
    settings: ExecutorSettings,
    result_queue: asyncio.Queue[RequestMeasurement | None],
    stop_event: asyncio.Event,
    iterations: int = 0,
) -> int:
    """
    Single virtual user: issues requests back-to-back until stopped.

    Args:
        client: Shared async HTTP client
        next_dispatch: Returns the next request to send, or None when the run
            is cancelled or its request budget is spent
        settings: Executor options
        result_queue: Queue to put measurements into
        stop_event: Lane-specific stop signal (ramp-down, end of phase)
        iterations: 0 = until stopped; >0 = send this many requests then exit

    Returns:
        Number of requests this lane issued.

    Note:
        A request is never started before the previous one's measurement is queued.
        In-flight requests are not interrupted by stop_event.
    """
    sent = 0
    is_set = stop_event.is_set
    queue_put = result_queue.put
    queue_put_nowait = result_queue.put_nowait
    queue_full = result_queue.full

    while not is_set():
        dispatch = next_dispatch()
        if dispatch is None:
            break
        measurement = await execute_request(
            client,
            dispatch.spec,
            settings,
            index=dispatch.index,
            capture=dispatch.capture,
            phase=dispatch.phase,
            active_vus=dispatch.active_vus,
        )
        if not queue_full():
            queue_put_nowait(measurement)
        else:
            await queue_put(measurement)
        sent += 1
        if iterations > 0 and sent >= iterations:
            break
    return sent


async def create_client(
    http2: bool = True,
    timeout: float = DEFAULT_TIMEOUT_MS / 1000.0,
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
    verify: bool = True,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    """Create the shared async HTTP client for one run.

    Pool size follows the lane cap so every lane can keep a warm connection.

    Args:
        http2: Enable HTTP/2 protocol
        timeout: Default request timeout in seconds
        max_concurrency: Lane cap; sizes the connection pool
        verify: Verify TLS certificates
        transport: Custom transport (e.g. httpx.MockTransport in tests)

    Returns:
        Configured AsyncClient ready for use as async context manager
    """
    limits = httpx.Limits(
        max_connections=max_concurrency,
        max_keepalive_connections=max_concurrency,
        keepalive_expiry=DEFAULT_KEEPALIVE_EXPIRY,
    )
    if transport is not None:
        return httpx.AsyncClient(transport=transport, timeout=timeout)
    return httpx.AsyncClient(
        http2=http2,
        timeout=timeout,
        limits=limits,
        verify=verify,
    )


async def collect_measurements(
    result_queue: asyncio.Queue[RequestMeasurement | None],
) -> AsyncIterator[RequestMeasurement]:
    """Consume queue until the None sentinel.

    Yields:
        RequestMeasurement objects as they arrive
    """
    while True:
        item = await result_queue.get()
        if item is None:
            return
        yield item
