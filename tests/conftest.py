"""Pytest fixtures for loadlens tests."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Callable

import httpx
import pytest

from loadlens.models import (
    CacheStatus,
    Phase,
    RequestMeasurement,
    ResponseSample,
    RunRequest,
    Timing,
)


def _measurement(
    index: int = 0,
    status: int = 200,
    total_time: float = 100.0,
    completed_at: float = 0.5,
    cache: CacheStatus = CacheStatus.MISS,
    error: str | None = None,
    timing: Timing | None = None,
    phase: Phase | None = None,
    active_vus: int = 1,
    sample: ResponseSample | None = None,
) -> RequestMeasurement:
    """Hand-built measurement; completed_at is seconds after a run start of 0."""
    return RequestMeasurement(
        index=index,
        status=status,
        timing=timing or Timing(wait=total_time),
        total_time=total_time,
        response_body_size=10,
        cache=cache,
        error=error,
        completed_at=completed_at,
        phase=phase,
        active_vus=active_vus,
        sample=sample,
    )


def _mock_client_factory(
    handler: Callable[[httpx.Request], Any],
) -> Callable[[RunRequest], Any]:
    """LoadTest client factory backed by httpx.MockTransport."""

    async def factory(request: RunRequest) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(handler))

    return factory


@pytest.fixture
def make_measurement() -> Callable[..., RequestMeasurement]:
    """Factory for hand-built measurements."""
    return _measurement


@pytest.fixture
def mock_factory() -> Callable[..., Callable[[RunRequest], Any]]:
    """Builds LoadTest client factories around a MockTransport handler."""
    return _mock_client_factory


@pytest.fixture
def run_config_path(tmp_path: Path) -> Path:
    """Minimal valid flat run config."""
    p = tmp_path / "run.yaml"
    p.write_text(
        """
request:
  url: /users
  method: GET
  headers:
    Accept: application/json
  query_params:
    page: "1"
environment:
  base_url: https://api.example.com
load:
  concurrency: 5
  iterations: 10
timeout_ms: 5000
assertions:
  - type: status_code
    operator: equals
    expected: 200
  - type: json_path
    operator: exists
    path: $.data.id
""",
        encoding="utf-8",
    )
    return p


@pytest.fixture
def phased_config_path(tmp_path: Path) -> Path:
    """Phased run config in the percent form."""
    p = tmp_path / "phased.yaml"
    p.write_text(
        """
request:
  url: https://api.example.com/health
load:
  phased: true
  max_vus: 10
  warmup_seconds: 2
  warmup_vus_percent: 20
  ramp_up_seconds: 4
  sustain_seconds: 10
  ramp_down_seconds: 4
""",
        encoding="utf-8",
    )
    return p


@pytest.fixture
def chain_config_path(tmp_path: Path) -> Path:
    """Two-step login chain."""
    p = tmp_path / "chain.yaml"
    p.write_text(
        """
environment:
  base_url: https://api.example.com
variables:
  user: alice
steps:
  - id: login
    name: Login
    request:
      url: /login
      method: POST
      body: '{"user": "{{user}}"}'
      body_type: json
    extractions:
      - variable: token
        source: body
        path: $.data.token
    stop_on_error: true
  - id: me
    name: Profile
    request:
      url: /me
      headers:
        Authorization: Bearer {{token}}
    assertions:
      - type: status_code
        operator: equals
        expected: 200
""",
        encoding="utf-8",
    )
    return p
