"""Evaluate declarative quota criteria against submission answers."""

from __future__ import annotations

import json
import math
import operator
import re
from typing import Any, Callable, Mapping, Optional, Sequence, Tuple

from core.logging import get_logger

logger = get_logger(__name__)

# Longer prefixes first so ">=" is not read as ">".
_OPERATORS: Tuple[Tuple[str, Callable[[float, float], bool]], ...] = (
    (">=", operator.ge),
    ("<=", operator.le),
    ("!=", operator.ne),
    (">", operator.gt),
    ("<", operator.lt),
)
_FLOAT_PREFIX_RE = re.compile(r"^[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?")
_NUMBER_RE = re.compile(r"^[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?$")
_EMPTY_CRITERIA_TEXT = {"", "{}", "[]", "null"}
# Marks an answer key absent from the submission (distinct from an explicit null).
MISSING = object()


def stringify(value: Any) -> str:
    """Render a value the way the form front-end serialises answers."""

    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (list, tuple)):
        return ",".join(stringify(item) for item in value)
    return str(value)


def parse_float_prefix(value: Any) -> float:
    """Lenient float parser: reads the leading numeric part, NaN when absent."""

    match = _FLOAT_PREFIX_RE.match(stringify(value).strip())
    if not match:
        return math.nan
    try:
        return float(match.group(0))
    except ValueError:
        return math.nan


def coerce_equal(actual: Any, expected: Any) -> bool:
    """Loose equality: numeric comparison when both sides are numbers, else trimmed text."""

    left = stringify(actual).strip()
    right = stringify(expected).strip()
    if _NUMBER_RE.match(left) and _NUMBER_RE.match(right):
        return float(left) == float(right)
    return left == right


def evaluate_condition(actual: Any, expected: Any) -> bool:
    """Evaluate a single ``(actual, expected)`` pair.

    ``expected`` may carry a comparison prefix (``>=``, ``<=``, ``>``, ``<``
    or ``!=``) in which case both sides are compared as numbers.
    """

    if expected is None:
        return actual is None
    if actual is MISSING:
        actual = ""

    expected_text = stringify(expected).strip()
    for prefix, compare in _OPERATORS:
        if expected_text.startswith(prefix):
            threshold = parse_float_prefix(expected_text[len(prefix):])
            return compare(parse_float_prefix(actual), threshold)
    return coerce_equal(actual, expected)


def _decode_criteria(criteria: Any) -> Tuple[bool, Any]:
    """Return ``(ok, decoded)``; ``ok`` is False when a string could not be parsed."""

    if not isinstance(criteria, str):
        return True, criteria
    text = criteria.strip()
    if text in _EMPTY_CRITERIA_TEXT:
        return True, None
    try:
        return True, json.loads(text)
    except (TypeError, ValueError) as exc:
        logger.warning("Unparsable quota criteria %r: %s", criteria[:200], exc)
        return False, None


def _matches_mapping(data: Mapping[str, Any], criteria: Mapping[str, Any]) -> bool:
    return all(evaluate_condition(data.get(key, MISSING), expected) for key, expected in criteria.items())


def _matches_legacy_list(data: Mapping[str, Any], criteria: Sequence[Any]) -> bool:
    for item in criteria:
        if not isinstance(item, Mapping) or "question" not in item:
            logger.warning("Malformed legacy criteria entry never matches: %r", item)
            return False
        if not evaluate_condition(data.get(str(item["question"]), MISSING), item.get("answer")):
            return False
    return True


def matches_criteria(data: Optional[Mapping[str, Any]], criteria: Any) -> bool:
    """Return True when ``data`` satisfies every condition in ``criteria``.

    Empty criteria (``None``, ``{}``, ``[]`` or their JSON text) always
    match. Criteria that cannot be decoded never match.
    """

    ok, decoded = _decode_criteria(criteria)
    if not ok:
        return False
    if decoded is None:
        return True
    record: Mapping[str, Any] = data if isinstance(data, Mapping) else {}
    if isinstance(decoded, Mapping):
        return _matches_mapping(record, decoded)
    if isinstance(decoded, (list, tuple)):
        return _matches_legacy_list(record, decoded)
    logger.warning("Unsupported quota criteria shape: %s", type(decoded).__name__)
    return False


__all__ = [
    "MISSING",
    "coerce_equal",
    "evaluate_condition",
    "matches_criteria",
    "parse_float_prefix",
    "stringify",
]
