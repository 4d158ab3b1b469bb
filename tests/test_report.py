"""Unit tests for report (JSON/JUnit export, redaction, snapshot comparison)."""

from __future__ import annotations

import xml.etree.ElementTree as ET
from pathlib import Path

import orjson

from loadlens.models import (
    AssertionResult,
    BottleneckBreakdown,
    ChainResult,
    RequestMeasurement,
    ResponseSample,
    RunResult,
    RunState,
    RunStats,
    StepResult,
    TestingInsights,
    Timing,
)
from loadlens.report import (
    REDACTED_PLACEHOLDER,
    compare_snapshots,
    mask_error_message,
    redact_headers,
    write_json_report,
    write_junit_report,
)


def _result(success: bool = True, state: RunState = RunState.COMPLETED, body: str = "ok") -> RunResult:
    return RunResult(
        success=success,
        state=state,
        stats=RunStats(requests=10, success_count=9, error_count=1, error_rate=10.0, rps=5.0, mean=120.0, p95=200.0),
        time_series=[],
        bottleneck=BottleneckBreakdown(),
        testing=TestingInsights(),
        requests=[
            RequestMeasurement(
                index=0,
                status=0,
                timing=Timing(),
                total_time=5.0,
                error="connect failed for https://secret.example.com/path",
            )
        ],
        first_response=ResponseSample(200, {"Set-Cookie": "sid=1", "Content-Type": "text/plain"}, body),
        assertions=[
            AssertionResult("status_code", "equals", "200", 200, True),
            AssertionResult("response_time", "lt", "100", 120.0, False, "Expected response_time lt 100ms, but got 120ms"),
        ],
        started_at="2026-01-01T00:00:00+00:00",
        finished_at="2026-01-01T00:00:02+00:00",
    )


def test_redact_headers() -> None:
    """Test that sensitive headers are redacted."""
    out = redact_headers({"Authorization": "Bearer x", "accept": "*/*"})
    assert out == {"Authorization": REDACTED_PLACEHOLDER, "accept": "*/*"}


def test_mask_error_message() -> None:
    """Test that credentials in error messages are masked."""
    assert mask_error_message(None) == ""
    assert mask_error_message("failed https://a.com/x?token=1") == f"failed {REDACTED_PLACEHOLDER}"
    masked = mask_error_message("x" * 300)
    assert len(masked) == 200
    assert masked.endswith("...")


def test_write_json_report_run(tmp_path: Path) -> None:
    """Test writing a run result as a JSON report."""
    out = tmp_path / "nested" / "report.json"
    write_json_report(out, _result())
    data = orjson.loads(out.read_bytes())
    assert data["stats"]["requests"] == 10
    assert data["state"] == "completed"
    assert data["firstResponse"]["headers"]["Set-Cookie"] == REDACTED_PLACEHOLDER
    assert data["firstResponse"]["headers"]["Content-Type"] == "text/plain"
    assert "secret.example.com" not in data["requests"][0]["error"]
    assert data["assertions_passed"] == 1
    assert data["assertions_total"] == 2


def test_first_response_body_truncated(tmp_path: Path) -> None:
    """Test that long first response bodies are truncated."""
    out = tmp_path / "report.json"
    write_json_report(out, _result(body="a" * 10_050))
    first = orjson.loads(out.read_bytes())["firstResponse"]
    assert first["size"] == 10_050
    assert len(first["body"]) == 10_003
    assert first["body"].endswith("...")


def test_write_json_report_plain_list(tmp_path: Path) -> None:
    """Test writing a plain list as a JSON report."""
    out = tmp_path / "bulk.json"
    write_json_report(out, [{"name": "a", "error": "bad"}])
    assert orjson.loads(out.read_bytes()) == [{"name": "a", "error": "bad"}]


def test_write_junit_report_run(tmp_path: Path) -> None:
    """Test the JUnit report for a run with assertions."""
    out = tmp_path / "junit.xml"
    write_junit_report(out, _result(), name="smoke")
    suite = ET.parse(out).getroot().find("testsuite")
    assert suite is not None
    assert suite.get("name") == "loadlens.smoke"
    assert suite.get("tests") == "3"
    assert suite.get("failures") == "1"
    assert suite.get("timestamp") == "2026-01-01T00:00:00+00:00"
    names = [case.get("name") for case in suite.findall("testcase")]
    assert names[0] == "run_completed"
    failing = [case for case in suite.findall("testcase") if case.find("failure") is not None]
    assert len(failing) == 1
    assert "response_time" in failing[0].get("name")


def test_write_junit_report_aborted_run(tmp_path: Path) -> None:
    """Test that an aborted run is reported as a JUnit failure."""
    out = tmp_path / "junit.xml"
    write_junit_report(out, _result(success=False, state=RunState.ABORTED))
    suite = ET.parse(out).getroot().find("testsuite")
    run_case = suite.findall("testcase")[0]
    assert run_case.get("name") == "run_aborted"
    assert run_case.find("failure").get("message") == "Run aborted"


def test_write_junit_report_chain(tmp_path: Path) -> None:
    """Test the JUnit report for a chain."""
    chain = ChainResult(
        success=False,
        steps=[
            StepResult("login", "Login", ran=True, success=True, status=200, duration_ms=50.0),
            StepResult("me", "Profile", ran=True, success=False, status=401, duration_ms=20.0),
            StepResult("logout", "Logout", ran=False, success=False),
        ],
        variables={},
        total_duration_ms=70.0,
    )
    out = tmp_path / "chain.xml"
    write_junit_report(out, chain, name="chain")
    suite = ET.parse(out).getroot().find("testsuite")
    assert suite.get("tests") == "3"
    assert suite.get("failures") == "2"
    messages = [
        case.find("failure").get("message") if case.find("failure") is not None else None
        for case in suite.findall("testcase")
    ]
    assert messages == [None, "HTTP 401", "Not run"]


def test_compare_snapshots_stats_blocks() -> None:
    """Test diffing the stats blocks of two run snapshots."""
    old = {"stats": {"requests": 10, "mean": 100.0, "p95": 200.0, "legacy": 1}}
    new = {"stats": {"requests": 10, "mean": 150.5, "p95": 180.0, "cacheHits": 3}}
    diff = compare_snapshots(old, new)
    assert diff["added"] == {"cacheHits": 3}
    assert diff["removed"] == {"legacy": 1}
    assert diff["changed"]["mean"] == {"old": 100.0, "new": 150.5, "delta": 50.5}
    assert diff["changed"]["p95"]["delta"] == -20.0
    assert "requests" not in diff["changed"]


def test_compare_snapshots_plain_mappings() -> None:
    """Test diffing two plain mappings."""
    diff = compare_snapshots({"a": "x", "b": True}, {"a": "y", "b": False})
    assert diff["changed"]["a"] == {"old": "x", "new": "y"}
    assert "delta" not in diff["changed"]["b"]
