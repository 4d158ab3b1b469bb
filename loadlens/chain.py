"""Sequential request chains with variable extraction between steps."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from .assertions import AssertionContext, evaluate, extract_json_path, parse_json_body, stringify
from .engine import ExecutorSettings, create_client, execute_request
from .exceptions import AssertionEvaluationError, ChainError, ConfigurationError
from .logging_config import get_logger
from .models import (
    DEFAULT_TIMEOUT_MS,
    ChainResult,
    ChainStep,
    Environment,
    Extraction,
    ExtractionSource,
    ResponseSample,
    StepResult,
    header_value,
    is_error_status,
)
from .resolver import resolve

if TYPE_CHECKING:
    import httpx

logger = get_logger("chain")


def extract_value(extraction: Extraction, sample: ResponseSample, body_json: Any, body_is_json: bool) -> str | None:
    """Value for one extraction, or None when it cannot be found (variable stays unset)."""
    if extraction.source == ExtractionSource.STATUS:
        return str(sample.status)
    if not extraction.path:
        return None
    if extraction.source == ExtractionSource.HEADER:
        return header_value(sample.headers, extraction.path)
    if not body_is_json:
        return None
    try:
        value = extract_json_path(body_json, extraction.path)
    except AssertionEvaluationError as e:
        logger.warning("Extraction %s skipped: %s", extraction.variable_name, e.message)
        return None
    return None if value is None else stringify(value)


async def _run_step(
    client: httpx.AsyncClient,
    step: ChainStep,
    position: int,
    variables: dict[str, str],
    environment: Environment | None,
    settings: ExecutorSettings,
) -> StepResult:
    try:
        spec = resolve(step.template, variables, environment)
    except ConfigurationError as e:
        logger.warning("Step %s not sent: %s", step.id, e.message)
        return StepResult(step.id, step.name, ran=True, success=False, error=e.message)

    m = await execute_request(client, spec, settings, index=position, capture=True)
    sample = m.sample or ResponseSample(m.status, {}, "")

    extracted: dict[str, str] = {}
    if m.error is None:
        body_json, body_is_json = parse_json_body(sample.body)
        for extraction in step.extractions:
            if not extraction.variable_name:
                continue
            value = extract_value(extraction, sample, body_json, body_is_json)
            if value is None:
                logger.debug("Step %s: %s not found, left unset", step.id, extraction.variable_name)
                continue
            extracted[extraction.variable_name] = value
            variables[extraction.variable_name] = value

    assertions = []
    if step.assertions and m.error is None:
        assertions = evaluate(step.assertions, AssertionContext.from_sample(sample, m.total_time))

    success = m.error is None and not (step.fail_on_http_error and is_error_status(m.status))
    return StepResult(
        step_id=step.id,
        step_name=step.name,
        ran=True,
        success=success,
        status=m.status,
        duration_ms=m.total_time,
        extracted_variables=extracted,
        assertions=assertions,
        error=m.error,
        response_body=sample.body,
    )


async def run_chain(
    steps: list[ChainStep],
    global_variables: dict[str, str] | None = None,
    environment: Environment | None = None,
    timeout_ms: int = DEFAULT_TIMEOUT_MS,
    client: httpx.AsyncClient | None = None,
    verify_tls: bool = True,
) -> ChainResult:
    """
    Execute steps in order. Later steps see earlier extractions; a later
    extraction with the same name overwrites the earlier value.

    A step succeeds when it got a response and, with fail_on_http_error, the
    status is below 400. A failed step with stop_on_error halts the chain; the
    remaining steps are reported with ran=False.

    Raises:
        ChainError: steps is empty
    """
    if not steps:
        raise ChainError("Chain has no steps")

    variables: dict[str, str] = {k: str(v) for k, v in (global_variables or {}).items()}
    settings = ExecutorSettings(timeout_ms=timeout_ms)
    owns_client = client is None
    if client is None:
        client = await create_client(http2=False, timeout=timeout_ms / 1000.0, verify=verify_tls)

    results: list[StepResult] = []
    halted = False
    try:
        for position, step in enumerate(steps):
            if halted:
                results.append(StepResult(step.id, step.name, ran=False, success=False))
                continue
            result = await _run_step(client, step, position, variables, environment, settings)
            results.append(result)
            if not result.success and step.stop_on_error:
                logger.info("Chain halted at step %s", step.id)
                halted = True
    finally:
        if owns_client:
            await client.aclose()

    total = sum(r.duration_ms for r in results)
    return ChainResult(
        success=all(r.success for r in results),
        steps=results,
        variables=variables,
        total_duration_ms=total,
    )
