"""YAML configuration loader for runs, chains and bulk runs.

Also holds the bound checks shared by the programmatic API and the CLI.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

from .exceptions import ConfigurationError
from .logging_config import get_logger
from .models import (
    DEFAULT_CACHE_HEADER,
    DEFAULT_MAX_CONCURRENCY,
    DEFAULT_MAX_ITERATIONS,
    DEFAULT_TIMEOUT_MS,
    DEFAULT_WARMUP_VUS_PERCENT,
    MAX_TIMEOUT_MS,
    MAX_TOTAL_REQUESTS,
    AssertionRule,
    AssertionType,
    AuthDescriptor,
    AuthType,
    BodyContentType,
    ChainDefinition,
    ChainStep,
    Environment,
    Extraction,
    ExtractionSource,
    FlatProfile,
    LoadProfile,
    Operator,
    PhasedProfile,
    PhaseSpec,
    RequestTemplate,
    RunRequest,
)

logger = get_logger("config")

MIN_TIMEOUT_MS = 1000
DEFAULT_CONCURRENCY = 1
DEFAULT_ITERATIONS = 1


def clamp_timeout(timeout_ms: int) -> int:
    """Per-request timeout bounded to 1..120 seconds."""
    return max(MIN_TIMEOUT_MS, min(MAX_TIMEOUT_MS, int(timeout_ms)))


def validate_profile(
    profile: LoadProfile,
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
    max_iterations: int = DEFAULT_MAX_ITERATIONS,
) -> LoadProfile:
    """Check a load profile and clamp it to the configured caps.

    Values below 1 are errors; values above the caps are clamped down.

    Raises:
        ConfigurationError: profile cannot run
    """
    if isinstance(profile, FlatProfile):
        if profile.concurrency < 1:
            raise ConfigurationError("concurrency must be >= 1", context={"concurrency": profile.concurrency})
        if profile.iterations < 1:
            raise ConfigurationError("iterations must be >= 1", context={"iterations": profile.iterations})
        concurrency = min(profile.concurrency, max_concurrency)
        iterations = min(profile.iterations, max_iterations)
        if (concurrency, iterations) != (profile.concurrency, profile.iterations):
            logger.warning(
                "Flat profile clamped to concurrency=%d iterations=%d", concurrency, iterations
            )
        if concurrency * iterations > MAX_TOTAL_REQUESTS:
            raise ConfigurationError(
                f"Too many requests: {concurrency * iterations} (max {MAX_TOTAL_REQUESTS})",
                context={"concurrency": concurrency, "iterations": iterations},
            )
        return FlatProfile(concurrency, iterations)

    if isinstance(profile, PhasedProfile):
        for phase, spec in profile.phases():
            if spec.duration_seconds < 0:
                raise ConfigurationError(
                    f"{phase.value} duration must be >= 0", context={"duration": spec.duration_seconds}
                )
            if spec.target_vus < 0:
                raise ConfigurationError(
                    f"{phase.value} target VUs must be >= 0", context={"target_vus": spec.target_vus}
                )
        if profile.total_duration_seconds <= 0:
            raise ConfigurationError("Phased profile needs at least one phase with a duration > 0")
        if profile.max_vus < 1:
            raise ConfigurationError("Phased profile needs at least one VU")
        if profile.max_requests < 0:
            raise ConfigurationError("max_requests must be >= 0")
        if profile.max_requests > MAX_TOTAL_REQUESTS:
            raise ConfigurationError(
                f"max_requests exceeds {MAX_TOTAL_REQUESTS}", context={"max_requests": profile.max_requests}
            )
        if profile.max_vus > max_concurrency:
            logger.warning("Phased profile VUs capped at %d", max_concurrency)
        return profile

    raise ConfigurationError(f"Unsupported load profile: {type(profile).__name__}")


def _read_yaml(path: str | Path) -> dict[str, Any]:
    p = Path(path)
    if not p.exists():
        raise ConfigurationError(f"Config file not found: {path}", context={"path": str(path)})
    try:
        raw = yaml.safe_load(p.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        logger.exception("Failed to parse YAML config file")
        raise ConfigurationError(
            f"Invalid YAML syntax in config file: {e}",
            context={"path": str(path)},
            original_error=e,
        ) from e
    except OSError as e:
        logger.exception("Failed to read config file")
        raise ConfigurationError(
            f"Cannot read config file: {e}",
            context={"path": str(path)},
            original_error=e,
        ) from e
    if not isinstance(raw, dict):
        raise ConfigurationError(
            "Config must be a YAML object/dictionary",
            context={"path": str(path), "actual_type": type(raw).__name__},
        )
    return raw


def _mapping(raw: dict[str, Any], key: str) -> dict[str, Any]:
    value = raw.get(key) or {}
    if not isinstance(value, dict):
        raise ConfigurationError(f"'{key}' must be a mapping", context={"actual_type": type(value).__name__})
    return value


def _string_map(value: Any, what: str) -> dict[str, str]:
    if not value:
        return {}
    if not isinstance(value, dict):
        raise ConfigurationError(f"'{what}' must be a mapping")
    return {str(k): "" if v is None else str(v) for k, v in value.items()}


def _enum(enum_cls: Any, value: Any, what: str) -> Any:
    try:
        return enum_cls(str(value).strip().lower())
    except ValueError as e:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ConfigurationError(f"Unknown {what}: {value!r} (expected one of {allowed})", original_error=e) from e


def parse_auth(raw: Any) -> AuthDescriptor:
    if not raw:
        return AuthDescriptor()
    if not isinstance(raw, dict):
        raise ConfigurationError("'auth' must be a mapping")
    auth_type = _enum(AuthType, raw.get("type") or "none", "auth type")
    return AuthDescriptor(
        type=auth_type,
        username=str(raw.get("username") or ""),
        password=str(raw.get("password") or ""),
        token=str(raw.get("token") or ""),
        key_name=str(raw.get("key_name") or raw.get("keyName") or ""),
        key_value=str(raw.get("key_value") or raw.get("keyValue") or ""),
    )


def parse_template(raw: Any) -> RequestTemplate:
    """RequestTemplate from a `request:` mapping (or a bare URL string)."""
    if isinstance(raw, str):
        return RequestTemplate(url=raw)
    if not isinstance(raw, dict) or not raw.get("url"):
        raise ConfigurationError("'request' must be a mapping with a 'url'")
    params = raw.get("query_params") or raw.get("params") or []
    if isinstance(params, dict):
        query_params = [(str(k), "" if v is None else str(v)) for k, v in params.items()]
    elif isinstance(params, list):
        query_params = []
        for item in params:
            if isinstance(item, dict):
                query_params.append((str(item.get("key", "")), str(item.get("value", ""))))
            elif isinstance(item, (list, tuple)) and len(item) == 2:
                query_params.append((str(item[0]), str(item[1])))
            else:
                raise ConfigurationError(f"Invalid query param entry: {item!r}")
    else:
        raise ConfigurationError("'query_params' must be a mapping or a list")
    return RequestTemplate(
        url=str(raw["url"]),
        method=str(raw.get("method") or "GET").upper(),
        headers=_string_map(raw.get("headers"), "headers"),
        query_params=query_params,
        body=str(raw.get("body") or ""),
        body_content_type=_enum(BodyContentType, raw.get("body_type") or "none", "body type"),
        auth=parse_auth(raw.get("auth")),
    )


def parse_environment(raw: dict[str, Any]) -> Environment:
    env = _mapping(raw, "environment")
    return Environment(
        base_url=str(env.get("base_url") or ""),
        variables=_string_map(env.get("variables"), "environment.variables"),
    )


def parse_assertions(raw: Any) -> list[AssertionRule]:
    if not raw:
        return []
    if not isinstance(raw, list):
        raise ConfigurationError("'assertions' must be a list")
    rules: list[AssertionRule] = []
    for item in raw:
        if not isinstance(item, dict):
            raise ConfigurationError(f"Invalid assertion entry: {item!r}")
        expected = item.get("expected", item.get("expected_value", ""))
        rules.append(
            AssertionRule(
                type=_enum(AssertionType, item.get("type"), "assertion type"),
                operator=_enum(Operator, item.get("operator") or "equals", "assertion operator"),
                expected_value="" if expected is None else str(expected),
                field_path=str(item.get("path") or item.get("field_path") or ""),
                enabled=bool(item.get("enabled", True)),
            )
        )
    return rules


def parse_profile(raw: dict[str, Any]) -> LoadProfile:
    """FlatProfile, or PhasedProfile when `phased: true`.

    Phased profiles accept either explicit `phases:` (duration/target per phase)
    or the percent form (`max_vus`, `warmup_vus_percent` and phase durations).
    """
    load = _mapping(raw, "load")
    try:
        if not load.get("phased"):
            return FlatProfile(
                concurrency=int(load.get("concurrency", DEFAULT_CONCURRENCY)),
                iterations=int(load.get("iterations", DEFAULT_ITERATIONS)),
            )
        if "phases" in load:
            phases = load.get("phases") or {}
            if not isinstance(phases, dict):
                raise ConfigurationError("'load.phases' must be a mapping")

            def spec(name: str) -> PhaseSpec:
                p = phases.get(name) or {}
                return PhaseSpec(float(p.get("duration_seconds", 0)), int(p.get("target_vus", 0)))

            return PhasedProfile(
                warmup=spec("warmup"),
                ramp_up=spec("rampup"),
                sustain=spec("sustain"),
                ramp_down=spec("rampdown"),
                max_requests=int(load.get("max_requests", 0)),
            )
        return PhasedProfile.from_percent(
            max_vus=int(load.get("max_vus", load.get("concurrency", DEFAULT_CONCURRENCY))),
            warmup_seconds=float(load.get("warmup_seconds", 0)),
            warmup_vus_percent=int(load.get("warmup_vus_percent", DEFAULT_WARMUP_VUS_PERCENT)),
            ramp_up_seconds=float(load.get("ramp_up_seconds", 0)),
            sustain_seconds=float(load.get("sustain_seconds", 0)),
            ramp_down_seconds=float(load.get("ramp_down_seconds", 0)),
            max_requests=int(load.get("max_requests", 0)),
        )
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid load value: {e}", original_error=e) from e


def parse_run_request(raw: dict[str, Any]) -> RunRequest:
    """RunRequest from an already-parsed mapping. Bounds are validated and clamped."""
    try:
        max_concurrency = int(raw.get("max_concurrency", DEFAULT_MAX_CONCURRENCY))
        max_iterations = int(raw.get("max_iterations", DEFAULT_MAX_ITERATIONS))
        timeout_ms = clamp_timeout(int(raw.get("timeout_ms", DEFAULT_TIMEOUT_MS)))
        hit_values = raw.get("cache_hit_values") or ["HIT"]
        if isinstance(hit_values, str):
            hit_values = [hit_values]
        request = RunRequest(
            template=parse_template(raw.get("request")),
            profile=validate_profile(parse_profile(raw), max_concurrency, max_iterations),
            timeout_ms=timeout_ms,
            assertions=parse_assertions(raw.get("assertions")),
            environment=parse_environment(raw),
            variables=_string_map(raw.get("variables"), "variables"),
            bypass_cache=bool(raw.get("bypass_cache", False)),
            cache_header=str(raw.get("cache_header") or DEFAULT_CACHE_HEADER),
            cache_hit_values=frozenset(str(v).upper() for v in hit_values),
            max_concurrency=max_concurrency,
            max_iterations=max_iterations,
            verify_tls=bool(raw.get("verify_tls", True)),
            http2=bool(raw.get("http2", True)),
        )
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid config value: {e}", original_error=e) from e
    return request


def load_run_request(path: str | Path) -> RunRequest:
    """Load a single-run configuration from a YAML file.

    Raises:
        ConfigurationError: file missing, invalid YAML or invalid values
    """
    raw = _read_yaml(path)
    try:
        request = parse_run_request(raw)
    except ConfigurationError as e:
        raise e.with_context(path=str(path))
    logger.debug("Loaded run config: url=%s profile=%s", request.template.url, type(request.profile).__name__)
    return request


def load_bulk(path: str | Path) -> list[tuple[str, RunRequest]]:
    """Load `runs:` (a list of named run configs) from a YAML file."""
    raw = _read_yaml(path)
    runs = raw.get("runs")
    if not isinstance(runs, list) or not runs:
        raise ConfigurationError("'runs' must be a non-empty list", context={"path": str(path)})
    out: list[tuple[str, RunRequest]] = []
    for i, item in enumerate(runs):
        if not isinstance(item, dict):
            raise ConfigurationError(f"Run #{i + 1} must be a mapping", context={"path": str(path)})
        # Shared top-level settings are inherited unless the run overrides them.
        merged = {k: v for k, v in raw.items() if k != "runs"}
        merged.update(item)
        name = str(item.get("name") or f"run-{i + 1}")
        try:
            out.append((name, parse_run_request(merged)))
        except ConfigurationError as e:
            raise e.with_context(path=str(path), run=name)
    return out


def parse_extractions(raw: Any) -> list[Extraction]:
    if not raw:
        return []
    if not isinstance(raw, list):
        raise ConfigurationError("'extractions' must be a list")
    out: list[Extraction] = []
    for item in raw:
        if not isinstance(item, dict):
            raise ConfigurationError(f"Invalid extraction entry: {item!r}")
        out.append(
            Extraction(
                variable_name=str(item.get("variable") or item.get("variable_name") or ""),
                source=_enum(ExtractionSource, item.get("source") or "body", "extraction source"),
                path=str(item.get("path") or ""),
            )
        )
    return out


def parse_chain(raw: dict[str, Any]) -> ChainDefinition:
    steps_raw = raw.get("steps")
    if not isinstance(steps_raw, list) or not steps_raw:
        raise ConfigurationError("'steps' must be a non-empty list")
    steps: list[ChainStep] = []
    for i, item in enumerate(steps_raw):
        if not isinstance(item, dict):
            raise ConfigurationError(f"Step #{i + 1} must be a mapping")
        steps.append(
            ChainStep(
                id=str(item.get("id") or i),
                name=str(item.get("name") or f"Step {i + 1}"),
                template=parse_template(item.get("request")),
                extractions=parse_extractions(item.get("extractions")),
                stop_on_error=bool(item.get("stop_on_error", False)),
                fail_on_http_error=bool(item.get("fail_on_http_error", True)),
                assertions=parse_assertions(item.get("assertions")),
            )
        )
    try:
        timeout_ms = clamp_timeout(int(raw.get("timeout_ms", DEFAULT_TIMEOUT_MS)))
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid config value: {e}", original_error=e) from e
    return ChainDefinition(
        steps=steps,
        variables=_string_map(raw.get("variables"), "variables"),
        environment=parse_environment(raw),
        timeout_ms=timeout_ms,
        verify_tls=bool(raw.get("verify_tls", True)),
    )


def load_chain(path: str | Path) -> ChainDefinition:
    """Load a chain definition from a YAML file.

    Raises:
        ConfigurationError: file missing, invalid YAML or invalid steps
    """
    raw = _read_yaml(path)
    try:
        chain = parse_chain(raw)
    except ConfigurationError as e:
        raise e.with_context(path=str(path))
    logger.debug("Loaded chain: %d steps", len(chain.steps))
    return chain
