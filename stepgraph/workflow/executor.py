"""
In-process step executor: walks the flow graph from the submitted group node,
running workflow nodes until it reaches the next group node, a confirmation
prompt, an exit step, a failure or the end of the graph.
"""
import copy
import logging
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence, Union
from zoneinfo import ZoneInfo

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ..config import Settings, get_settings
from ..steps.base import StepEnvironment
from .context import EXECUTE, ExecutionContext
from .factory import make_step_handler
from .graph import FlowGraph, chain_to_graph
from .models import Group, Handle, Node, Step, Workflow

logger = logging.getLogger(__name__)


class _Envelope(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class ExecutorRequest(_Envelope):
    button_id: Optional[str] = None
    execute_parameters: Dict[str, Any] = Field(default_factory=dict)
    user_id: Optional[str] = None
    current_group_node_id: Optional[str] = None
    existing_context_data: Optional[Dict[str, Any]] = None
    user_confirmation_response: Optional[bool] = None
    pending_context_data: Optional[Dict[str, Any]] = None


class NextGroupNode(_Envelope):
    id: str
    label: str = ""
    group_id: Optional[str] = None


class ExecutorResponse(_Envelope):
    success: bool = True
    requires_confirmation: bool = False
    confirmation_data: Optional[Dict[str, Any]] = None
    pending_context_data: Optional[Dict[str, Any]] = None
    exit_data: Optional[Dict[str, Any]] = None
    next_group_node: Optional[NextGroupNode] = None
    flow_complete: bool = False
    context_data: Optional[Dict[str, Any]] = None
    results: List[Dict[str, Any]] = Field(default_factory=list)
    steps_executed: int = 0
    error: Optional[str] = None
    message: Optional[str] = None

    @property
    def outcome(self) -> str:
        if self.requires_confirmation:
            return "confirmation"
        if self.exit_data is not None:
            return "exit"
        if self.next_group_node is not None:
            return "next_group"
        return "terminal"


class StepExecutor(Protocol):
    def execute(self, request: ExecutorRequest) -> ExecutorResponse: ...


def failed_result(node: Node, error: Exception) -> Dict[str, Any]:
    result: Dict[str, Any] = {"node": node.label or node.id, "status": "failed", "error": str(error)}
    for attr, key in (("request_url", "requestUrl"), ("request_body", "requestBody"), ("http_method", "httpMethod")):
        value = getattr(error, attr, None)
        if value:
            result[key] = value
    return result


class FlowExecutor:
    """
    Reference ``StepExecutor`` over a ``FlowGraph``.

    Conditional steps follow their ``success``/``failure`` handle (a success
    outcome falls back to the default edge); every other step follows its
    default edge, or its only edge. Disabled nodes are passed through.
    """

    def __init__(self, graph: FlowGraph, groups: Iterable[Group] = (), settings: Optional[Settings] = None, *,
                 button_name: str = "", dry_run: bool = False,
                 clock: Optional[Callable[[], datetime]] = None):
        graph.validate()
        self.graph = graph
        self.groups = {g.id: g for g in groups}
        self.settings = settings or get_settings()
        self.button_name = button_name
        self.dry_run = dry_run
        self._clock = clock or (lambda: datetime.now(ZoneInfo(self.settings.timezone)))

    @classmethod
    def from_workflow(cls, workflow: Workflow, settings: Optional[Settings] = None, **kwargs: Any) -> "FlowExecutor":
        if workflow.nodes:
            graph = FlowGraph(workflow.nodes, workflow.edges)
        else:
            graph = chain_to_graph(workflow.steps)
        return cls(graph, workflow.groups, settings, button_name=kwargs.pop("button_name", workflow.name), **kwargs)

    @classmethod
    def from_steps(cls, steps: Sequence[Step], groups: Iterable[Group] = (),
                   settings: Optional[Settings] = None, **kwargs: Any) -> "FlowExecutor":
        """Run a legacy pointer chain; disabled steps are passed through like disabled nodes."""
        return cls(chain_to_graph(steps), groups, settings, **kwargs)

    def initial_context(self, request: ExecutorRequest) -> ExecutionContext:
        params = dict(request.execute_parameters or {})
        pending = request.pending_context_data or {}
        if pending.get("contextData") is not None:
            return ExecutionContext.from_dict(pending["contextData"]).with_inputs(params)
        if request.existing_context_data is not None:
            return ExecutionContext.from_dict(request.existing_context_data).with_inputs(params)
        return ExecutionContext.from_dict({
            EXECUTE: {},
            "userId": request.user_id,
            "buttonId": request.button_id,
            "buttonName": self.button_name,
            "timestamp": self._clock().strftime("%m/%d/%Y, %I:%M %p"),
            **params,
        }).with_inputs(params)

    def execute(self, request: Union[ExecutorRequest, Mapping[str, Any]]) -> ExecutorResponse:
        if not isinstance(request, ExecutorRequest):
            request = ExecutorRequest.model_validate(request)

        context = self.initial_context(request)
        resumed = False
        current = None

        if request.user_confirmation_response is not None and request.pending_context_data:
            node_id = request.pending_context_data.get("confirmationNodeId")
            if node_id in self.graph:
                handle = Handle.SUCCESS.value if request.user_confirmation_response else Handle.FAILURE.value
                edge = self.graph.edge_for(node_id, handle)
                if edge is None:
                    message = ("User confirmed - no next step defined" if request.user_confirmation_response
                               else "User declined - workflow ended")
                    logger.info("%s (node %s)", message, node_id)
                    return ExecutorResponse(flow_complete=True, message=message, context_data=context.to_dict())
                context = context.with_edge_handle(handle)
                current = edge.target
                resumed = True
            else:
                logger.warning("Confirmation node %s not found; starting from the beginning", node_id)

        if not resumed:
            current, resumed = self._start(request)

        return self._run(current, context, resumed)

    def _start(self, request: ExecutorRequest):
        node_id = request.current_group_node_id
        if node_id and node_id in self.graph:
            logger.debug("Starting after group node %s", node_id)
            return self.graph.next_node_id(node_id), True
        order = self.graph.execution_order()
        return (order[0].id if order else None), False

    def _run(self, current: Optional[str], context: ExecutionContext, resumed: bool) -> ExecutorResponse:
        positions = {n.id: i for i, n in enumerate(self.graph.execution_order())}
        results: List[Dict[str, Any]] = []
        visited = 0

        while current is not None:
            node = self.graph.node(current)

            if node.is_group:
                if not resumed and not results:
                    logger.debug("Skipping initial group node %s", node.label or node.id)
                    current = self.graph.next_node_id(node.id)
                    continue
                logger.info("Pausing at group node %s", node.label or node.id)
                return ExecutorResponse(
                    results=results,
                    steps_executed=len(results),
                    next_group_node=NextGroupNode(id=node.id, label=node.label, group_id=node.group_id),
                    context_data=context.to_dict(),
                )

            visited += 1
            if visited > self.settings.max_flow_steps:
                error = f"Flow exceeded the maximum of {self.settings.max_flow_steps} steps"
                logger.error(error)
                return ExecutorResponse(success=False, error=error, results=results, steps_executed=len(results))

            if not node.enabled:
                logger.info("Skipping disabled node %s", node.label or node.id)
                current = self.graph.next_node_id(node.id)
                continue

            env = StepEnvironment(groups=self.groups, settings=self.settings, position=positions.get(node.id, 0))
            try:
                handler = make_step_handler(node, env)
                outcome = handler.dry_run(context) if self.dry_run else handler.execute(context)
            except Exception as e:
                logger.exception("Node %s failed", node.label or node.id)
                results.append(failed_result(node, e))
                return ExecutorResponse(success=False, error=str(e), results=results, steps_executed=len(results))

            context = outcome.context
            if outcome.confirmation is not None:
                return ExecutorResponse(
                    requires_confirmation=True,
                    confirmation_data=outcome.confirmation,
                    pending_context_data={
                        "confirmationNodeId": node.id,
                        "contextData": context.to_dict(),
                        "pendingNodeIndex": positions.get(node.id, 0),
                    },
                    results=results,
                    steps_executed=len(results),
                )
            if outcome.exit is not None:
                logger.info("Exit step reached: %s", outcome.exit.get("exitMessage"))
                return ExecutorResponse(
                    exit_data=outcome.exit,
                    flow_complete=True,
                    results=results,
                    steps_executed=len(results),
                    context_data=context.to_dict(),
                )

            logger.info("Node %s completed", node.label or node.id)
            results.append({"node": node.label or node.id, "status": "completed", "output": copy.deepcopy(outcome.output)})
            current = self.graph.next_node_id(node.id, outcome.handle)
            if outcome.handle and current is not None:
                context = context.with_edge_handle(outcome.handle)

        return ExecutorResponse(
            results=results,
            steps_executed=len(results),
            flow_complete=True,
            context_data=context.to_dict(),
        )
