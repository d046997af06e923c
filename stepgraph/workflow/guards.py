import operator
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Tuple

from .templating import lookup_variable, stringify

_ALIASES = {
    "notExists": "not_exists",
    "isNull": "is_null",
    "isNotNull": "is_not_null",
    "eq": "equals",
    "notEquals": "not_equals",
    "ne": "not_equals",
    "notContains": "not_contains",
    "gt": "greater_than",
    "lt": "less_than",
    "greater_than_or_equal": "gte",
    "less_than_or_equal": "lte",
}


def _is_blank(value: Any) -> bool:
    return value is None or value == ""


def _text(value: Any) -> str:
    return "" if value is None else stringify(value).lower()


def _number(value: Any) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _numeric(compare: Callable[[float, float], bool]) -> Callable[[Any, Any], bool]:
    def _check(actual: Any, expected: Any) -> bool:
        left, right = _number(actual), _number(expected)
        if left is None or right is None:
            return False
        return compare(left, right)
    return _check


# Text comparisons are case-insensitive.
_OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "exists": lambda actual, _: not _is_blank(actual),
    "not_exists": lambda actual, _: _is_blank(actual),
    "is_null": lambda actual, _: actual is None,
    "is_not_null": lambda actual, _: actual is not None,
    "equals": lambda actual, expected: _text(actual) == _text(expected),
    "not_equals": lambda actual, expected: _text(actual) != _text(expected),
    "contains": lambda actual, expected: _text(expected) in _text(actual),
    "not_contains": lambda actual, expected: _text(expected) not in _text(actual),
    "greater_than": _numeric(operator.gt),
    "less_than": _numeric(operator.lt),
    "gte": _numeric(operator.ge),
    "lte": _numeric(operator.le),
}


def canonical_operator(name: str) -> str:
    """Map legacy operator spellings onto their canonical names."""
    canonical = _ALIASES.get(name, name)
    if canonical not in _OPERATORS:
        raise ValueError(f"Unsupported condition operator: {name}")
    return canonical


@dataclass(frozen=True)
class ConditionOutcome:
    met: bool
    actual_value: Any
    results: Tuple[bool, ...] = ()


def evaluate_condition(json_path: str, operator_name: str, expected: Any,
                       context: Mapping[str, Any]) -> Tuple[bool, Any]:
    """
    Evaluate one condition. The path is looked up under ``execute`` first,
    then from the context root. Returns ``(met, actual_value)``.
    """
    _, actual = lookup_variable(context, json_path or "")
    check = _OPERATORS[canonical_operator(operator_name or "exists")]
    return check(actual, expected), actual


def evaluate_conditions(json_path: str, operator_name: str, expected: Any,
                        context: Mapping[str, Any], additional: Iterable[Any] = (),
                        logical_operator: str = "AND") -> ConditionOutcome:
    """
    Primary condition plus additional ones, combined by one flat AND/OR.
    Additional conditions without a path are ignored.
    """
    met, actual = evaluate_condition(json_path, operator_name, expected, context)
    results = [met]
    for condition in additional:
        if not condition.json_path:
            continue
        extra_met, _ = evaluate_condition(condition.json_path, condition.operator,
                                          condition.expected_value, context)
        results.append(extra_met)

    combined = all(results) if logical_operator.upper() == "AND" else any(results)
    return ConditionOutcome(met=combined, actual_value=actual, results=tuple(results))
