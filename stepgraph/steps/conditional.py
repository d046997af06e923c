from ..workflow.context import ExecutionContext
from ..workflow.guards import evaluate_conditions
from ..workflow.models import Handle
from ..workflow.schema import ConditionalCheckConfig
from .base import BaseStep, StepOutcome


class ConditionalCheckStep(BaseStep):
    """ Evaluate conditions and pick the success or failure branch. """

    config: ConditionalCheckConfig

    def execute(self, context: ExecutionContext) -> StepOutcome:
        config = self.config
        outcome = evaluate_conditions(
            config.json_path,
            config.operator,
            config.expected_value,
            context.data,
            additional=config.additional_conditions,
            logical_operator=config.logical_operator,
        )
        store_as = config.store_result_as or f"condition_{self.env.position}_result"
        output = {
            "conditionMet": outcome.met,
            "fieldPath": config.json_path,
            "operator": config.operator,
            "actualValue": outcome.actual_value,
            "expectedValue": config.expected_value,
            "additionalConditions": len(config.additional_conditions),
        }
        if config.additional_conditions:
            output["logicalOperator"] = config.logical_operator
        return StepOutcome(
            output=output,
            context=context.set(store_as, outcome.met),
            handle=Handle.SUCCESS.value if outcome.met else Handle.FAILURE.value,
        )

    dry_run = execute
