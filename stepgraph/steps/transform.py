import re
from typing import Any

from ..workflow.arrays import EXECUTOR_SCOPES
from ..workflow.context import ExecutionContext
from ..workflow.schema import DataTransformConfig, Transformation
from ..workflow.templating import lookup_variable, resolve_value
from .base import BaseStep, StepOutcome


def format_phone_us(value: Any) -> Any:
    """``(555) 123-4567`` for 10 digits (or 11 with a leading 1); otherwise unchanged."""
    digits = re.sub(r"\D", "", str(value))
    if len(digits) == 11 and digits.startswith("1"):
        digits = digits[1:]
    if len(digits) != 10:
        return value
    return f"({digits[:3]}) {digits[3:6]}-{digits[6:]}"


class DataTransformStep(BaseStep):
    """ Apply set/copy/append/remove/format operations to context paths. """

    config: DataTransformConfig

    def _apply(self, context: ExecutionContext, change: Transformation) -> ExecutionContext:
        path = change.json_path
        if change.operation == "set_value":
            return context.set(path, resolve_value(change.value, context.data, scopes=EXECUTOR_SCOPES))
        if change.operation == "copy_from":
            found, value = lookup_variable(context.data, change.source_json_path, scopes=())
            return context.set(path, value) if found else context
        if change.operation == "append":
            addition = resolve_value(change.value, context.data, scopes=EXECUTOR_SCOPES)
            current = context.get(path)
            if isinstance(current, list):
                return context.set(path, current + [addition])
            if current is None:
                return context.set(path, addition)
            return context.set(path, f"{current}{addition}")
        if change.operation == "remove":
            return context.without(path)
        current = context.get(path)
        return context.set(path, format_phone_us(current)) if current is not None else context

    def execute(self, context: ExecutionContext) -> StepOutcome:
        for change in self.config.transformations:
            context = self._apply(context, change)
        return StepOutcome(
            output={"transformed": True, "operations": len(self.config.transformations)},
            context=context,
        )

    dry_run = execute
