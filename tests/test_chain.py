"""Unit tests for chain execution (extraction, substitution, stop_on_error)."""

from __future__ import annotations

import asyncio

import httpx
import pytest

from loadlens.chain import extract_value, run_chain
from loadlens.exceptions import ChainError
from loadlens.models import (
    AssertionRule,
    AssertionType,
    ChainResult,
    ChainStep,
    Environment,
    Extraction,
    ExtractionSource,
    Operator,
    RequestTemplate,
    ResponseSample,
)

ENV = Environment(base_url="https://api.example.com")


def _chain(handler, steps: list[ChainStep], variables: dict[str, str] | None = None) -> ChainResult:
    async def go() -> ChainResult:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await run_chain(steps, variables, ENV, client=client)

    return asyncio.run(go())


def _login_handler(request: httpx.Request) -> httpx.Response:
    if request.url.path == "/login":
        return httpx.Response(200, json={"data": {"token": "abc"}}, headers={"X-Session": "s1"})
    if request.url.path == "/me":
        if request.headers.get("authorization") == "Bearer abc":
            return httpx.Response(200, json={"name": "alice"})
        return httpx.Response(401)
    return httpx.Response(404)


def test_chain_extracts_and_substitutes() -> None:
    """Test that values extracted from one step are substituted into later steps."""
    steps = [
        ChainStep(
            "login",
            "Login",
            RequestTemplate(url="/login", method="POST", body='{"user": "{{user}}"}'),
            extractions=[
                Extraction("token", ExtractionSource.BODY, "$.data.token"),
                Extraction("session", ExtractionSource.HEADER, "x-session"),
                Extraction("login_status", ExtractionSource.STATUS),
            ],
        ),
        ChainStep(
            "me",
            "Profile",
            RequestTemplate(url="/me", headers={"Authorization": "Bearer {{token}}"}),
            assertions=[AssertionRule(AssertionType.JSON_PATH, Operator.EQUALS, "alice", "$.name")],
        ),
    ]
    result = _chain(_login_handler, steps, {"user": "alice"})
    assert result.success is True
    assert [s.status for s in result.steps] == [200, 200]
    assert result.steps[0].extracted_variables == {"token": "abc", "session": "s1", "login_status": "200"}
    assert result.variables["token"] == "abc"
    assert result.variables["user"] == "alice"
    assert result.steps[1].assertions[0].passed is True
    assert '"alice"' in result.steps[1].response_body
    assert result.total_duration_ms == pytest.approx(sum(s.duration_ms for s in result.steps))


def test_chain_missing_extraction_leaves_placeholder() -> None:
    """Test that an unresolved extraction leaves the placeholder untouched."""
    steps = [
        ChainStep(
            "login",
            "Login",
            RequestTemplate(url="/login", method="POST"),
            extractions=[Extraction("token", ExtractionSource.BODY, "$.data.nope")],
        ),
        ChainStep("me", "Profile", RequestTemplate(url="/me", headers={"Authorization": "Bearer {{token}}"})),
    ]
    result = _chain(_login_handler, steps)
    assert "token" not in result.variables
    assert result.steps[1].status == 401
    assert result.steps[1].success is False
    assert result.success is False


def test_chain_stop_on_error_skips_rest() -> None:
    """Test that a failing step with stop_on_error marks later steps as not run."""
    steps = [
        ChainStep("a", "A", RequestTemplate(url="/unknown"), stop_on_error=True),
        ChainStep("b", "B", RequestTemplate(url="/login")),
    ]
    result = _chain(_login_handler, steps)
    assert result.steps[0].ran is True
    assert result.steps[0].success is False
    assert result.steps[0].status == 404
    assert result.steps[1].ran is False
    assert result.steps[1].success is False
    assert result.success is False


def test_chain_without_stop_on_error_continues() -> None:
    """Test that a failing step without stop_on_error lets the chain continue."""
    steps = [
        ChainStep("a", "A", RequestTemplate(url="/unknown")),
        ChainStep("b", "B", RequestTemplate(url="/login", method="POST")),
    ]
    result = _chain(_login_handler, steps)
    assert [s.ran for s in result.steps] == [True, True]
    assert result.steps[1].success is True


def test_chain_fail_on_http_error_disabled() -> None:
    """Test that HTTP error statuses pass when fail_on_http_error is off."""
    steps = [ChainStep("a", "A", RequestTemplate(url="/unknown"), fail_on_http_error=False)]
    result = _chain(_login_handler, steps)
    assert result.steps[0].status == 404
    assert result.success is True


def test_chain_network_error_step() -> None:
    """Test that a network failure is recorded on the step."""
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    steps = [ChainStep("a", "A", RequestTemplate(url="/login"), stop_on_error=True)]
    result = _chain(handler, steps)
    assert result.steps[0].status == 0
    assert result.steps[0].error == "refused"
    assert result.success is False


def test_chain_unresolvable_url_fails_step() -> None:
    """Test that a relative URL without a base URL fails only that step."""
    async def go() -> ChainResult:
        async with httpx.AsyncClient(transport=httpx.MockTransport(_login_handler)) as client:
            return await run_chain([ChainStep("a", "A", RequestTemplate(url="/login"))], client=client)

    result = asyncio.run(go())
    assert result.steps[0].ran is True
    assert result.steps[0].success is False
    assert "base URL" in (result.steps[0].error or "")


def test_chain_empty_raises() -> None:
    """Test that a chain with no steps raises ChainError."""
    with pytest.raises(ChainError):
        asyncio.run(run_chain([]))


def test_extract_value_sources() -> None:
    """Test extraction from body, header and status sources."""
    sample = ResponseSample(201, {"Location": "/items/9"}, '{"id": 9}')
    assert extract_value(Extraction("s", ExtractionSource.STATUS), sample, None, False) == "201"
    assert extract_value(Extraction("l", ExtractionSource.HEADER, "location"), sample, None, False) == "/items/9"
    assert extract_value(Extraction("i", ExtractionSource.BODY, "$.id"), sample, {"id": 9}, True) == "9"
    assert extract_value(Extraction("i", ExtractionSource.BODY, "$.id"), sample, None, False) is None
    assert extract_value(Extraction("i", ExtractionSource.BODY, ""), sample, {"id": 9}, True) is None
