from ..errors import StepExecutionError
from ..workflow.context import ExecutionContext
from ..workflow.schema import EmailActionConfig
from .base import BaseStep, StepOutcome


class EmailActionStep(BaseStep):
    """ Render an email from the context and pass it to ``email.send``. """

    config: EmailActionConfig

    def execute(self, context: ExecutionContext) -> StepOutcome:
        to = self.render(self.config.to, context).strip()
        if not to:
            raise StepExecutionError("Email recipient is empty after variable substitution")
        subject = self.render(self.config.subject, context)
        self.service("email.send")(
            to=to,
            subject=subject,
            body=self.render(self.config.body, context),
            cc=self.render(self.config.cc, context) if self.config.cc else None,
            from_address=self.render(self.config.from_address, context) if self.config.from_address else None,
        )
        return StepOutcome(output={"success": True, "to": to, "subject": subject}, context=context)
