"""Unit tests for engine (execute_request, run_lane, create_client, collect_measurements)."""

from __future__ import annotations

import asyncio

import httpx

from loadlens.engine import (
    Dispatch,
    ExecutorSettings,
    classify_cache,
    collect_measurements,
    create_client,
    execute_request,
    run_lane,
)
from loadlens.models import CacheStatus, Phase, RequestMeasurement, RequestSpec


def _spec(
    url: str = "https://example.com/x",
    method: str = "GET",
    headers: dict[str, str] | None = None,
    **kwargs,
) -> RequestSpec:
    return RequestSpec(url=url, method=method, headers=headers or {}, **kwargs)


def _run(handler, spec: RequestSpec, settings: ExecutorSettings | None = None, **kwargs) -> RequestMeasurement:
    async def go() -> RequestMeasurement:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await execute_request(client, spec, settings or ExecutorSettings(), **kwargs)

    return asyncio.run(go())


def test_execute_request_success_measures_size_and_cache() -> None:
    """Test that a successful request records sizes, cache status and dispatch tags."""
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, headers={"X-Cache": "HIT"}, content=b"hello")

    m = _run(handler, _spec(), index=3, phase=Phase.SUSTAIN, active_vus=4)
    assert m.status == 200
    assert m.error is None
    assert m.is_error is False
    assert m.index == 3
    assert m.phase == Phase.SUSTAIN
    assert m.active_vus == 4
    assert m.response_body_size == 5
    assert m.response_headers_size > 0
    assert m.cache == CacheStatus.HIT
    assert m.total_time >= 0
    assert m.timing.dns == 0
    assert m.sample is None


def test_execute_request_non_2xx_is_measurement_not_error() -> None:
    """Test that an HTTP error status is a measurement, not a transport error."""
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, text="down")

    m = _run(handler, _spec())
    assert m.status == 503
    assert m.error is None
    assert m.is_error is True
    assert m.cache == CacheStatus.MISS


def test_execute_request_capture_keeps_sample() -> None:
    """Test that capture=True keeps the response sample."""
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"id": 1})

    m = _run(handler, _spec(), capture=True)
    assert m.sample is not None
    assert m.sample.status == 200
    assert '"id"' in m.sample.body
    assert m.sample.headers["content-type"] == "application/json"


def test_execute_request_timeout() -> None:
    """Test that exceeding the request timeout records status 0 and "timeout"."""
    async def handler(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(1.0)
        return httpx.Response(200)

    m = _run(handler, _spec(), ExecutorSettings(timeout_ms=50))
    assert m.status == 0
    assert m.error == "timeout"
    assert m.total_time < 1000


def test_execute_request_transport_timeout() -> None:
    """Test that a transport timeout records status 0 and "timeout"."""
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("read timed out", request=request)

    m = _run(handler, _spec())
    assert m.status == 0
    assert m.error == "timeout"


def test_execute_request_network_error() -> None:
    """Test that a connection failure records status 0 and its message."""
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    m = _run(handler, _spec())
    assert m.status == 0
    assert m.error == "connection refused"
    assert m.is_error is True


def test_execute_request_sends_method_headers_body_and_basic_auth() -> None:
    """Test that method, headers, body and basic auth reach the server."""
    seen: dict[str, object] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["method"] = request.method
        seen["auth"] = request.headers.get("authorization")
        seen["x"] = request.headers.get("x-test")
        seen["body"] = request.content
        return httpx.Response(201)

    spec = _spec(method="POST", headers={"X-Test": "1"}, body="payload", basic_auth=("u", "p"))
    m = _run(handler, spec)
    assert m.status == 201
    assert seen == {"method": "POST", "auth": "Basic dTpw", "x": "1", "body": b"payload"}


def test_classify_cache() -> None:
    """Test cache classification from the configured header."""
    hits = frozenset({"HIT"})
    assert classify_cache({"x-cache": "hit, miss"}, "X-Cache", hits) == CacheStatus.HIT
    assert classify_cache({"X-Cache": "MISS"}, "X-Cache", hits) == CacheStatus.MISS
    assert classify_cache({}, "X-Cache", hits) == CacheStatus.MISS
    assert classify_cache({"CF-Cache-Status": "hit"}, "cf-cache-status", hits) == CacheStatus.HIT


def test_executor_settings_normalizes_hit_values() -> None:
    """Test that cache hit values are stripped and upper-cased."""
    settings = ExecutorSettings(cache_hit_values=frozenset({" hit ", "Stale"}))
    assert settings.cache_hit_values == frozenset({"HIT", "STALE"})


def test_run_lane_respects_iterations() -> None:
    """Test that a lane with iterations sends exactly that many requests."""
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200)

    async def go() -> tuple[int, list[int]]:
        counter = iter(range(100))
        spec = _spec()
        queue: asyncio.Queue[RequestMeasurement | None] = asyncio.Queue()
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            sent = await run_lane(
                client,
                lambda: Dispatch(next(counter), spec),
                ExecutorSettings(),
                queue,
                asyncio.Event(),
                iterations=4,
            )
        await queue.put(None)
        return sent, [m.index async for m in collect_measurements(queue)]

    sent, indices = asyncio.run(go())
    assert sent == 4
    assert indices == [0, 1, 2, 3]


def test_run_lane_stops_when_dispatch_exhausted() -> None:
    """Test that a lane stops when no dispatch is left."""
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200)

    async def go() -> int:
        remaining = [2]
        spec = _spec()

        def next_dispatch() -> Dispatch | None:
            if remaining[0] == 0:
                return None
            remaining[0] -= 1
            return Dispatch(remaining[0], spec)

        queue: asyncio.Queue[RequestMeasurement | None] = asyncio.Queue()
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await run_lane(client, next_dispatch, ExecutorSettings(), queue, asyncio.Event())

    assert asyncio.run(go()) == 2


def test_run_lane_stop_event_set_sends_nothing() -> None:
    """Test that a lane with its stop event set sends nothing."""
    async def go() -> int:
        stop = asyncio.Event()
        stop.set()
        queue: asyncio.Queue[RequestMeasurement | None] = asyncio.Queue()
        async with httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200))) as client:
            return await run_lane(client, lambda: Dispatch(0, _spec()), ExecutorSettings(), queue, stop)

    assert asyncio.run(go()) == 0


def test_create_client_with_transport() -> None:
    """Test that create_client uses the given transport."""
    async def go() -> int:
        transport = httpx.MockTransport(lambda r: httpx.Response(204))
        async with await create_client(transport=transport) as client:
            response = await client.get("https://example.com")
            return response.status_code

    assert asyncio.run(go()) == 204


def test_create_client_default() -> None:
    """Test that create_client builds an AsyncClient without a transport."""
    async def go() -> bool:
        client = await create_client(http2=False, timeout=5.0, max_concurrency=10)
        try:
            return isinstance(client, httpx.AsyncClient)
        finally:
            await client.aclose()

    assert asyncio.run(go()) is True


def test_collect_measurements_stops_at_sentinel(make_measurement) -> None:
    """Test that collect_measurements yields until the None sentinel."""
    async def go() -> list[RequestMeasurement]:
        queue: asyncio.Queue[RequestMeasurement | None] = asyncio.Queue()
        await queue.put(make_measurement(index=0))
        await queue.put(make_measurement(index=1))
        await queue.put(None)
        await queue.put(make_measurement(index=2))
        return [m async for m in collect_measurements(queue)]

    assert [m.index for m in asyncio.run(go())] == [0, 1]
