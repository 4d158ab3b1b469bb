"""Unit tests for CLI (argument handling, commands, exit codes)."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import patch

import httpx
import orjson
import pytest

from loadlens.cli import (
    EXIT_ERROR,
    EXIT_FAILED,
    EXIT_OK,
    _build_run_request,
    _parse_pairs,
    build_parser,
    main,
)
from loadlens.exceptions import ConfigurationError
from loadlens.models import AuthType, FlatProfile, PhasedProfile


def _json_ok(request: httpx.Request) -> httpx.Response:
    if request.url.path == "/login":
        return httpx.Response(200, json={"data": {"token": "abc"}})
    return httpx.Response(200, json={"data": {"id": 1}})


@pytest.fixture
def mock_http(mock_factory):
    """Route every client loadlens creates through a MockTransport."""

    async def chain_client(*args, **kwargs) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(_json_ok))

    with patch("loadlens.runner.default_client_factory", mock_factory(_json_ok)), patch(
        "loadlens.chain.create_client", chain_client
    ), patch("loadlens.runner.signal.signal"):
        yield


def _args(*argv: str):
    return build_parser().parse_args(["run", *argv])


def test_version_exits_zero(capsys: pytest.CaptureFixture[str]) -> None:
    """Test that --version prints the version and exits 0."""
    with pytest.raises(SystemExit) as exc_info:
        main(["--version"])
    assert exc_info.value.code == 0
    assert "loadlens" in capsys.readouterr().out


def test_parse_pairs() -> None:
    """Test KEY=VALUE pair parsing for repeated flags."""
    assert _parse_pairs(["a=1", "b = x=y", "bad"]) == {"a": "1", "b": "x=y"}
    assert _parse_pairs(["Accept: text/html"], sep=":") == {"Accept": "text/html"}
    assert _parse_pairs(None) == {}


def test_build_run_request_from_flags() -> None:
    """Test building a flat run request from command-line flags."""
    request = _build_run_request(
        _args(
            "-u", "/items/{{id}}",
            "--base-url", "https://api.example.com",
            "-X", "post",
            "-H", "X-Test: 1",
            "-d", '{"a": 1}',
            "--bearer", "tok",
            "--var", "id=5",
            "-c", "4",
            "-n", "3",
            "--timeout", "50",
            "--bypass-cache",
            "--no-http2",
            "-k",
        )
    )
    assert request.template.url == "/items/{{id}}"
    assert request.template.method == "POST"
    assert request.template.headers == {"X-Test": "1"}
    assert request.template.body == '{"a": 1}'
    assert request.template.auth.type == AuthType.BEARER
    assert request.environment.base_url == "https://api.example.com"
    assert request.variables == {"id": "5"}
    assert request.profile == FlatProfile(4, 3)
    assert request.timeout_ms == 1000
    assert request.bypass_cache is True
    assert request.http2 is False
    assert request.verify_tls is False


def test_build_run_request_phased_flags() -> None:
    """Test that phase flags produce a phased profile."""
    request = _build_run_request(
        _args("-u", "https://a.com", "--phased", "--max-vus", "10", "--warmup", "1", "--sustain", "5")
    )
    assert isinstance(request.profile, PhasedProfile)
    assert request.profile.max_vus == 10
    assert request.profile.warmup.target_vus == 2
    assert request.profile.sustain.duration_seconds == 5.0


def test_build_run_request_config_with_overrides(run_config_path: Path) -> None:
    """Test that command-line flags override config file values."""
    request = _build_run_request(_args("-f", str(run_config_path), "-n", "2"))
    assert request.profile == FlatProfile(5, 2)
    assert request.template.url == "/users"


def test_build_run_request_requires_source() -> None:
    """Test that a run needs either a URL or a config file."""
    with pytest.raises(ConfigurationError):
        _build_run_request(_args())


def test_run_without_source_returns_error(capsys: pytest.CaptureFixture[str]) -> None:
    """Test that run without a URL or config returns the error exit code."""
    assert main(["run", "--no-live"]) == EXIT_ERROR
    assert "Error:" in capsys.readouterr().err


def test_run_missing_config_returns_error(tmp_path: Path) -> None:
    """Test that a missing config file exits with an error code."""
    assert main(["run", "-f", str(tmp_path / "nope.yaml"), "--no-live"]) == EXIT_ERROR


def test_run_command_writes_reports(mock_http, tmp_path: Path) -> None:
    """Test that run writes JSON and JUnit reports."""
    json_out = tmp_path / "out.json"
    junit_out = tmp_path / "out.xml"
    code = main(
        [
            "run", "-u", "https://api.example.com/x", "-c", "2", "-n", "3", "--no-live",
            "--json", str(json_out), "--junit", str(junit_out),
        ]
    )
    assert code == EXIT_OK
    data = orjson.loads(json_out.read_bytes())
    assert data["stats"]["requests"] == 6
    assert junit_out.exists()


def test_run_command_failed_assertion_exit_code(mock_http, tmp_path: Path) -> None:
    """Test that a failed assertion sets the assertion exit code."""
    p = tmp_path / "run.yaml"
    p.write_text(
        """
request: https://api.example.com/x
assertions:
  - type: status_code
    operator: equals
    expected: 201
""",
        encoding="utf-8",
    )
    assert main(["run", "-f", str(p), "--no-live"]) == EXIT_FAILED


def test_chain_command(mock_http, chain_config_path: Path, tmp_path: Path) -> None:
    """Test the chain command end to end against a mocked client."""
    json_out = tmp_path / "chain.json"
    assert main(["chain", "-f", str(chain_config_path), "--json", str(json_out)]) == EXIT_OK
    data = orjson.loads(json_out.read_bytes())
    assert data["success"] is True
    assert data["variables"]["token"] == "abc"


def test_bulk_command(mock_http, tmp_path: Path) -> None:
    """Test the bulk command runs every entry and writes one report."""
    p = tmp_path / "bulk.yaml"
    p.write_text(
        """
runs:
  - name: one
    request: https://api.example.com/a
  - name: broken
    request: /relative
""",
        encoding="utf-8",
    )
    json_out = tmp_path / "bulk.json"
    assert main(["bulk", "-f", str(p), "--json", str(json_out)]) == EXIT_FAILED
    entries = orjson.loads(json_out.read_bytes())
    assert entries[0]["name"] == "one"
    assert entries[0]["result"]["stats"]["requests"] == 1
    assert "error" in entries[1]


def test_compare_command(tmp_path: Path) -> None:
    """Test that compare prints the diff of two snapshots."""
    old = tmp_path / "old.json"
    new = tmp_path / "new.json"
    old.write_bytes(orjson.dumps({"stats": {"mean": 100.0, "p95": 150.0}}))
    new.write_bytes(orjson.dumps({"stats": {"mean": 120.0, "p95": 150.0}}))
    out = tmp_path / "diff.json"
    assert main(["compare", str(old), str(new), "--json", str(out)]) == EXIT_OK
    diff = orjson.loads(out.read_bytes())
    assert diff["changed"]["mean"]["delta"] == 20.0
    assert "p95" not in diff["changed"]


def test_compare_command_bad_snapshot(tmp_path: Path) -> None:
    """Test that compare fails cleanly on an unreadable snapshot."""
    bad = tmp_path / "bad.json"
    bad.write_text("not json", encoding="utf-8")
    assert main(["compare", str(bad), str(bad)]) == EXIT_ERROR
