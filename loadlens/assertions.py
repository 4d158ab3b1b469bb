"""Assertion evaluation against a representative response and run statistics."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any

import orjson

from .exceptions import AssertionEvaluationError
from .logging_config import get_logger
from .models import (
    AssertionResult,
    AssertionRule,
    AssertionType,
    Operator,
    ResponseSample,
    header_value,
)

logger = get_logger("assertions")

# One dotted path segment: name followed by any number of [index] suffixes.
_SEGMENT = re.compile(r"^([^\[\]]*)((?:\[\d+\])*)$")
_INDEX = re.compile(r"\[(\d+)\]")
EXISTENCE_OPERATORS = frozenset({Operator.EXISTS, Operator.NOT_EXISTS})
ORDERING_OPERATORS = frozenset({Operator.GT, Operator.LT, Operator.GTE, Operator.LTE})
UNDEFINED = "undefined"


def _path_steps(path: str) -> list[str | int]:
    text = path.strip()
    if text.startswith("$"):
        text = text[1:]
    text = text.lstrip(".")
    steps: list[str | int] = []
    if not text:
        return steps
    for part in text.split("."):
        match = _SEGMENT.match(part)
        if match is None or (not match.group(1) and not match.group(2)):
            raise AssertionEvaluationError(f"Malformed JSON path: {path!r}", context={"path": path})
        if match.group(1):
            steps.append(match.group(1))
        steps.extend(int(i) for i in _INDEX.findall(match.group(2)))
    return steps


def extract_json_path(data: Any, path: str) -> Any:
    """Value at `$.a.b[0].c` (leading `$.` optional), or None when absent.

    Numeric segments also index into lists (`items.0.id`).

    Raises:
        AssertionEvaluationError: path is syntactically malformed
    """
    current = data
    for step in _path_steps(path):
        if isinstance(step, int) or (isinstance(current, list) and step.isdigit()):
            idx = int(step)
            if not isinstance(current, list) or idx >= len(current):
                return None
            current = current[idx]
        elif isinstance(current, dict):
            if step not in current:
                return None
            current = current[step]
        else:
            return None
    return current


def stringify(value: Any) -> str:
    """String form used for equals/contains and variable extraction."""
    if value is None:
        return UNDEFINED
    if isinstance(value, str):
        return value
    if isinstance(value, bool) or isinstance(value, (dict, list)):
        return orjson.dumps(value).decode("utf-8")
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _to_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


@dataclass(slots=True)
class AssertionContext:
    """What assertions are evaluated against."""

    status: int = 0
    body_json: Any = None
    body_is_json: bool = False
    headers: dict[str, str] = field(default_factory=dict)
    mean_response_time: float = 0.0

    @classmethod
    def from_sample(cls, sample: ResponseSample | None, mean_response_time: float = 0.0) -> "AssertionContext":
        if sample is None:
            return cls(mean_response_time=mean_response_time)
        body_json, is_json = parse_json_body(sample.body)
        return cls(
            status=sample.status,
            body_json=body_json,
            body_is_json=is_json,
            headers=dict(sample.headers),
            mean_response_time=mean_response_time,
        )


def parse_json_body(body: str) -> tuple[Any, bool]:
    """(parsed, True) for a JSON body, (None, False) otherwise."""
    if not body:
        return None, False
    try:
        return orjson.loads(body), True
    except orjson.JSONDecodeError:
        return None, False


def compare(actual: Any, operator: Operator, expected: str) -> bool:
    """Value comparison shared by every assertion type.

    Numeric when both sides coerce to numbers, string otherwise. A missing
    actual (None) never satisfies a value comparison.

    Raises:
        AssertionEvaluationError: ordering operator with a non-numeric side
    """
    if actual is None:
        return False
    if operator in (Operator.EQUALS, Operator.NEQ):
        a, e = _to_number(actual), _to_number(expected)
        equal = a == e if a is not None and e is not None else stringify(actual) == expected
        return equal if operator == Operator.EQUALS else not equal
    if operator == Operator.CONTAINS:
        return expected in stringify(actual)
    if operator in ORDERING_OPERATORS:
        a, e = _to_number(actual), _to_number(expected)
        if a is None:
            raise AssertionEvaluationError(
                f"Actual value {stringify(actual)!r} is not numeric", context={"actual": actual}
            )
        if e is None:
            raise AssertionEvaluationError(f"Expected value {expected!r} is not numeric")
        if operator == Operator.GT:
            return a > e
        if operator == Operator.LT:
            return a < e
        if operator == Operator.GTE:
            return a >= e
        return a <= e
    raise AssertionEvaluationError(f"Unsupported operator: {operator.value}")


def _actual_for(rule: AssertionRule, context: AssertionContext) -> Any:
    if rule.type == AssertionType.STATUS_CODE:
        return context.status
    if rule.type == AssertionType.RESPONSE_TIME:
        return round(context.mean_response_time, 2)
    if rule.type == AssertionType.JSON_PATH:
        if not rule.field_path:
            raise AssertionEvaluationError("json_path assertion requires a field path")
        if not context.body_is_json:
            return None
        return extract_json_path(context.body_json, rule.field_path)
    if rule.type == AssertionType.HEADER:
        if not rule.field_path:
            raise AssertionEvaluationError("header assertion requires a header name")
        return header_value(context.headers, rule.field_path)
    raise AssertionEvaluationError(f"Unsupported assertion type: {rule.type!r}")


def _evaluate_rule(rule: AssertionRule, context: AssertionContext) -> AssertionResult:
    type_name = rule.type.value
    expected = rule.expected_value
    actual = _actual_for(rule, context)

    if rule.operator in EXISTENCE_OPERATORS:
        if rule.type not in (AssertionType.JSON_PATH, AssertionType.HEADER):
            raise AssertionEvaluationError(
                f"Operator {rule.operator.value} is not supported for {type_name}"
            )
        expected = "exists" if rule.operator == Operator.EXISTS else "not exists"
        passed = (actual is not None) == (rule.operator == Operator.EXISTS)
    else:
        if rule.type == AssertionType.STATUS_CODE and _to_number(expected) is None:
            raise AssertionEvaluationError(f"Expected status code {expected!r} is not a number")
        passed = compare(actual, rule.operator, expected)

    message = ""
    if not passed:
        unit = "ms" if rule.type == AssertionType.RESPONSE_TIME else ""
        got = UNDEFINED if actual is None else f"{stringify(actual)}{unit}"
        message = f"Expected {type_name} {rule.operator.value} {expected}{unit}, but got {got}"
    return AssertionResult(
        type=type_name,
        operator=rule.operator.value,
        expected=expected,
        actual=UNDEFINED if actual is None else actual,
        passed=passed,
        message=message,
    )


def evaluate(rules: list[AssertionRule], context: AssertionContext) -> list[AssertionResult]:
    """
    Evaluate every enabled rule. Disabled rules are left out of the result.

    Never raises for a bad rule: it is reported as failed with the reason as
    its message.
    """
    results: list[AssertionResult] = []
    for rule in rules:
        if not rule.enabled:
            continue
        try:
            results.append(_evaluate_rule(rule, context))
        except AssertionEvaluationError as e:
            logger.warning("Assertion %s %s failed to evaluate: %s", rule.type.value, rule.operator.value, e.message)
            results.append(
                AssertionResult(
                    type=rule.type.value,
                    operator=rule.operator.value,
                    expected=rule.expected_value,
                    actual=e.context.get("actual"),
                    passed=False,
                    message=e.message,
                )
            )
    return results
