"""Expand one API step into the concrete calls its array mode asks for.

Modes: ``none`` (one call), ``loop`` (one call per row of an array group),
``batch`` (one call with every row bound to a placeholder), ``single_array``
(one call, body wrapped in a one-element array) and ``conditional_hardcode``
(one wrapped call per matching condition).
"""

import copy
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from .context import EXECUTE
from .models import Group
from .schema import ApiStepConfig, BodyFieldMapping
from .templating import lookup_variable, resolve, set_value_by_path

logger = logging.getLogger(__name__)

EXECUTOR_SCOPES = ("execute", "response")
_LEADING_INDEX = re.compile(r"^\d+\.")
_LEADING_INT = re.compile(r"^\s*[-+]?\d+")


@dataclass(frozen=True)
class PlannedCall:
    index: int
    context: Dict[str, Any]
    field_mappings: Tuple[BodyFieldMapping, ...] = ()
    wrap_in_array: bool = False


@dataclass(frozen=True)
class ArrayPlan:
    mode: str
    calls: Tuple[PlannedCall, ...]
    stop_on_error: bool = True
    total_rows: int = 0
    total_conditions: int = 0
    skipped_reason: Optional[str] = None

    @property
    def skipped(self) -> bool:
        return not self.calls


def matches_array_condition(operator: str, actual: Any, expected: Any) -> bool:
    """Case-sensitive comparison used by ``conditional_hardcode``."""
    actual_text = "" if actual is None else str(actual)
    expected_text = "" if expected is None else str(expected)
    if operator == "equals":
        return actual_text == expected_text
    if operator == "not_equals":
        return actual_text != expected_text
    if operator == "contains":
        return expected_text in actual_text
    if operator == "not_contains":
        return expected_text not in actual_text
    raise ValueError(f"Unsupported array condition operator: {operator}")


def array_rows(context: Mapping[str, Any], group: Optional[Group]) -> List[Dict[str, Any]]:
    if group is None:
        return []
    rows = (context.get(EXECUTE) or {}).get(group.array_key)
    return list(rows) if isinstance(rows, list) else []


def _row_context(context: Mapping[str, Any], row: Mapping[str, Any]) -> Dict[str, Any]:
    data = copy.deepcopy(dict(context))
    data[EXECUTE] = {**(data.get(EXECUTE) or {}), **row}
    return data


def plan_array_calls(config: ApiStepConfig, context: Mapping[str, Any],
                     groups: Mapping[str, Group]) -> ArrayPlan:
    mode = config.array_processing_mode
    base = copy.deepcopy(dict(context))
    mappings = tuple(config.request_body_field_mappings)

    if mode == "single_array":
        stripped = tuple(m.model_copy(update={"field_name": _LEADING_INDEX.sub("", m.field_name)})
                         for m in mappings)
        return ArrayPlan(mode, (PlannedCall(0, base, stripped, wrap_in_array=True),))

    if mode == "conditional_hardcode":
        calls = []
        for condition in config.conditional_array_mappings:
            _, actual = lookup_variable(context, condition.variable)
            if matches_array_condition(condition.operator, actual, condition.expected_value):
                calls.append(PlannedCall(len(calls), copy.deepcopy(base),
                                         tuple(condition.field_mappings), wrap_in_array=True))
        total = len(config.conditional_array_mappings)
        if not calls:
            logger.info("No array conditions matched out of %d", total)
            return ArrayPlan(mode, (), total_conditions=total, skipped_reason="No conditions matched")
        return ArrayPlan(mode, tuple(calls), stop_on_error=False, total_conditions=total)

    single = ArrayPlan("none", (PlannedCall(0, base, mappings, config.wrap_body_in_array),))
    if mode in ("loop", "batch"):
        if not config.array_source_group_id:
            return single
        rows = array_rows(context, groups.get(config.array_source_group_id))
        if not rows:
            logger.info("No rows for array group %s; making a single call", config.array_source_group_id)
            return single
        if mode == "loop":
            calls = tuple(PlannedCall(i, _row_context(base, row), mappings, config.wrap_body_in_array)
                          for i, row in enumerate(rows))
            return ArrayPlan(mode, calls, stop_on_error=config.stop_on_error, total_rows=len(rows))
        batch_context = {**base, config.batch_placeholder: rows}
        return ArrayPlan(mode, (PlannedCall(0, batch_context, mappings, config.wrap_body_in_array),),
                         total_rows=len(rows))
    return single


def coerce_value(value: Any, data_type: str) -> Any:
    if data_type == "integer":
        match = _LEADING_INT.match(str(value))
        return int(match.group(0)) if match else None
    if data_type == "number":
        try:
            return float(str(value))
        except ValueError:
            return None
    if data_type == "boolean":
        # target APIs expect the capitalised string form
        return "True" if str(value).lower() == "true" else "False"
    return str(value)


def body_from_mappings(mappings: Sequence[BodyFieldMapping], context: Mapping[str, Any]) -> Dict[str, Any]:
    body: Dict[str, Any] = {}
    for mapping in mappings:
        if mapping.type == "variable":
            found, value = lookup_variable(context, str(mapping.value or ""))
            if not found:
                continue
        else:
            value = mapping.value
        if value is None:
            continue
        set_value_by_path(body, mapping.field_name, coerce_value(value, mapping.data_type))
    return body


def build_request_body(call: PlannedCall, template: str, escape_single_quotes: bool = False) -> str:
    """Render the body for one planned call; field mappings win over the template."""
    if call.field_mappings:
        body = json.dumps(body_from_mappings(call.field_mappings, call.context))
    else:
        body = resolve(template or "", call.context, escape_single_quotes=escape_single_quotes,
                       scopes=EXECUTOR_SCOPES)

    if call.wrap_in_array and body.strip():
        try:
            parsed = json.loads(body)
        except json.JSONDecodeError:
            logger.warning("Could not wrap request body in array: not valid JSON")
            return body
        if not isinstance(parsed, list):
            body = json.dumps([parsed])
    return body
