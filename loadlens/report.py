"""Result export (JSON, JUnit XML) and snapshot comparison."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any

import orjson

from .models import ChainResult, RunResult

# Headers that must be redacted in reports (case-insensitive)
SENSITIVE_HEADER_NAMES = frozenset(
    k.lower()
    for k in (
        "Authorization",
        "Cookie",
        "Set-Cookie",
        "X-Api-Key",
        "X-Auth-Token",
        "Api-Key",
        "ApiKey",
        "Token",
        "Proxy-Authorization",
    )
)
REDACTED_PLACEHOLDER = "[REDACTED]"


def redact_headers(headers: dict[str, Any]) -> dict[str, Any]:
    return {
        k: REDACTED_PLACEHOLDER if k.lower() in SENSITIVE_HEADER_NAMES else v
        for k, v in headers.items()
    }


def mask_error_message(msg: str | None, max_length: int = 200) -> str:
    """Truncate error message and redact URLs to avoid leaking sensitive data."""
    if not msg:
        return ""
    msg = re.sub(r"https?://[^\s]+", REDACTED_PLACEHOLDER, msg)
    if len(msg) > max_length:
        return msg[: max_length - 3] + "..."
    return msg


def _stats_block(snapshot: dict[str, Any]) -> dict[str, Any]:
    block = snapshot.get("stats", snapshot)
    return block if isinstance(block, dict) else {}


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def compare_snapshots(old: dict[str, Any], new: dict[str, Any]) -> dict[str, Any]:
    """Key-level diff of two serialized results' `stats` blocks.

    Plain mappings without a `stats` key are compared as-is. Numeric changes
    carry a `delta` (new - old).
    """
    a = _stats_block(old)
    b = _stats_block(new)
    diff: dict[str, Any] = {"added": {}, "removed": {}, "changed": {}}
    for key, value in b.items():
        if key not in a:
            diff["added"][key] = value
        elif a[key] != value:
            change: dict[str, Any] = {"old": a[key], "new": value}
            if _is_number(value) and _is_number(a[key]):
                change["delta"] = round(value - a[key], 4)
            diff["changed"][key] = change
    for key, value in a.items():
        if key not in b:
            diff["removed"][key] = value
    return diff


def _report_payload(result: RunResult) -> dict[str, Any]:
    payload = result.as_dict()
    first = payload["firstResponse"]
    first["headers"] = redact_headers(first["headers"])
    for m in payload["requests"]:
        m["error"] = mask_error_message(m["error"]) or None
    return payload


def write_json_report(
    output_path: str | Path,
    result: RunResult | ChainResult | list[dict[str, Any]] | dict[str, Any],
) -> None:
    """Write a machine-readable JSON report (sensitive headers redacted)."""
    if isinstance(result, RunResult):
        payload: Any = _report_payload(result)
    elif isinstance(result, ChainResult):
        payload = result.as_dict()
    else:
        payload = result
    out = Path(output_path)
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_bytes(orjson.dumps(payload, option=orjson.OPT_INDENT_2))


def write_junit_report(
    output_path: str | Path,
    result: RunResult | ChainResult,
    name: str = "load_test",
) -> None:
    """Write JUnit XML report for CI (e.g. Jenkins, GitLab).

    A run becomes one testcase for the run itself plus one per assertion; a
    chain becomes one testcase per step.
    """
    import xml.etree.ElementTree as ET
    from xml.dom import minidom

    cases: list[tuple[str, float, str | None, str]] = []
    if isinstance(result, RunResult):
        stats = result.stats
        run_failure = None
        if not result.success:
            run_failure = "Run aborted" if result.aborted else "Run did not complete successfully"
        summary = (
            f"requests={stats.requests} rps={stats.rps:.2f} mean_ms={stats.mean:.2f} "
            f"p95_ms={stats.p95:.2f} error_rate_pct={stats.error_rate:.2f}"
        )
        elapsed = stats.requests / stats.rps if stats.rps > 0 else 0.0
        cases.append((f"run_{result.state.value}", elapsed, run_failure, summary))
        for a in result.assertions:
            cases.append(
                (f"assert_{a.type}_{a.operator}_{a.expected}", 0.0, None if a.passed else a.message, "")
            )
    else:
        for step in result.steps:
            if not step.ran:
                step_failure = "Not run"
            elif not step.success:
                step_failure = mask_error_message(step.error) or f"HTTP {step.status}"
            else:
                step_failure = None
            cases.append((f"step_{step.step_id}_{step.step_name}", step.duration_ms / 1000, step_failure, ""))

    failures = sum(1 for _, _, f, _ in cases if f)
    total_time = sum(t for _, t, _, _ in cases)
    testsuite = ET.Element(
        "testsuite",
        name=f"loadlens.{name}",
        tests=str(len(cases)),
        failures=str(failures),
        errors="0",
        skipped="0",
        time=f"{total_time:.3f}",
    )
    if isinstance(result, RunResult) and result.started_at:
        testsuite.set("timestamp", result.started_at)
    for case_name, seconds, failure_msg, out_text in cases:
        testcase = ET.SubElement(
            testsuite,
            "testcase",
            name=case_name,
            classname=f"loadlens.{name}",
            time=f"{seconds:.3f}",
        )
        if failure_msg:
            failure = ET.SubElement(testcase, "failure", message=failure_msg)
            failure.text = failure_msg
        if out_text:
            system_out = ET.SubElement(testcase, "system-out")
            system_out.text = out_text

    root = ET.Element("testsuites")
    root.append(testsuite)
    xml_str = minidom.parseString(ET.tostring(root, encoding="unicode", method="xml")).toprettyxml(indent="  ")
    out = Path(output_path)
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_text(xml_str, encoding="utf-8")
