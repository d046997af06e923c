from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional

from ..config import Settings, get_settings
from ..errors import StepExecutionError
from ..services.registry import get_service
from ..workflow.arrays import EXECUTOR_SCOPES
from ..workflow.context import ExecutionContext
from ..workflow.models import Group
from ..workflow.schema import ConfigModel
from ..workflow.templating import resolve


@dataclass(frozen=True)
class StepEnvironment:
    """What a step may know about the run beyond its own config."""
    groups: Mapping[str, Group] = field(default_factory=dict)
    settings: Settings = field(default_factory=get_settings)
    position: int = 0


@dataclass(frozen=True)
class StepOutcome:
    output: Any
    context: ExecutionContext
    handle: Optional[str] = None
    confirmation: Optional[Dict[str, Any]] = None
    exit: Optional[Dict[str, Any]] = None


class BaseStep(ABC):
    """ Abstract base class for all flow steps. """

    def __init__(self, node_id: str, label: str, config: ConfigModel,
                 env: Optional[StepEnvironment] = None):
        self.node_id = node_id
        self.label = label
        self.config = config
        self.env = env or StepEnvironment()

    @abstractmethod
    def execute(self, context: ExecutionContext) -> StepOutcome:
        """
        Run the step against ``context`` and return the updated context.
        Must be implemented by subclasses.
        """
        pass

    def dry_run(self, context: ExecutionContext) -> StepOutcome:
        """
        Simulate execution without side effects.
        """
        return StepOutcome(output={"dryRun": True, "node": self.label or self.node_id}, context=context)

    def render(self, template: str, context: ExecutionContext, escape_single_quotes: bool = False) -> str:
        return resolve(template, context.data, escape_single_quotes=escape_single_quotes, scopes=EXECUTOR_SCOPES)

    def service(self, name: str) -> Callable:
        try:
            return get_service(name)
        except ValueError as e:
            raise StepExecutionError(str(e)) from e
