"""Steps that hand control back to the user: confirmation prompts and exits."""

from ..workflow.context import ExecutionContext
from ..workflow.schema import ExitConfig, UserConfirmationConfig
from ..workflow.templating import lookup_path, resolve
from .base import BaseStep, StepOutcome


class UserConfirmationStep(BaseStep):
    """ Pause the flow until the user answers yes or no. """

    config: UserConfirmationConfig

    def execute(self, context: ExecutionContext) -> StepOutcome:
        config = self.config
        latitude = longitude = None
        if config.show_location_map:
            _, latitude = lookup_path(context.data, config.latitude_variable)
            _, longitude = lookup_path(context.data, config.longitude_variable)

        confirmation = {
            "nodeId": self.node_id,
            "nodeLabel": self.label,
            "promptMessage": resolve(config.prompt_message, context.data),
            "yesButtonLabel": config.yes_button_label,
            "noButtonLabel": config.no_button_label,
            "showLocationMap": config.show_location_map,
            "latitude": latitude,
            "longitude": longitude,
        }
        return StepOutcome(output=confirmation, context=context, confirmation=confirmation)

    dry_run = execute


class ExitStep(BaseStep):
    """ End the flow with a message. """

    config: ExitConfig

    def execute(self, context: ExecutionContext) -> StepOutcome:
        exit_data = {
            "exitMessage": resolve(self.config.exit_message, context.data),
            "showRestartButton": self.config.show_restart_button,
        }
        return StepOutcome(output=exit_data, context=context, exit=exit_data)

    dry_run = execute
