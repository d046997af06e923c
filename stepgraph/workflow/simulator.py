"""
Execution simulator: pages a user through grouped form inputs, calls a
``StepExecutor`` on submit and reacts to the envelope it returns.

Every transition is a method taking a ``SimulatorState`` and returning a new
one; nothing is mutated in place.
"""
import copy
import logging
import re
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from ..errors import IllegalTransitionError
from .context import EDGE_HANDLE_TAKEN, ExecutionContext
from .executor import ExecutorRequest, ExecutorResponse, StepExecutor
from .models import FormField, Group, Node, Workflow
from .templating import lookup_path, resolve, stringify

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


class SimulatorStatus(str, Enum):
    COLLECTING = "collecting"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    EXITED = "exited"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = {SimulatorStatus.EXITED, SimulatorStatus.COMPLETED, SimulatorStatus.FAILED}


@dataclass(frozen=True)
class SimulatorState:
    """
    ``step_path`` holds the pages visited so far, each a tuple of group ids;
    ``page_index`` points into it.
    """
    step_path: Tuple[Tuple[str, ...], ...] = ()
    page_index: int = 0
    form_data: Dict[str, Any] = field(default_factory=dict)
    array_data: Dict[str, List[Dict[str, Any]]] = field(default_factory=dict)
    context: Optional[ExecutionContext] = None
    pending_confirmation: Optional[Dict[str, Any]] = None
    exit_state: Optional[Dict[str, Any]] = None
    result: Optional[Dict[str, Any]] = None
    errors: Dict[str, str] = field(default_factory=dict)
    status: SimulatorStatus = SimulatorStatus.COLLECTING

    @property
    def current_page(self) -> Tuple[str, ...]:
        if not self.step_path:
            return ()
        return self.step_path[self.page_index]

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


def _blank_row(fields: List[FormField]) -> Dict[str, str]:
    return {f.field_key: f.initial_value for f in fields}


class FlowSimulator:
    def __init__(self, workflow: Workflow, executor: StepExecutor, *,
                 button_id: Optional[str] = None, user_id: str = "user"):
        self.workflow = workflow
        self.executor = executor
        self.button_id = button_id or workflow.id
        self.user_id = user_id
        self._group_nodes: Dict[str, Node] = {
            n.group_id: n for n in workflow.nodes if n.is_group and n.group_id
        }

    # -- pages -------------------------------------------------------------

    def combined_page(self, group_id: str) -> Tuple[str, ...]:
        """The group plus every following group shown with its previous one."""
        groups = self.workflow.groups
        index = next((i for i, g in enumerate(groups) if g.id == group_id), None)
        if index is None:
            return ()
        page = [groups[index].id]
        for group in groups[index + 1:]:
            node = self._group_nodes.get(group.id)
            if node is None or not node.display_with_previous:
                break
            page.append(group.id)
        return tuple(page)

    def page_header(self, state: SimulatorState, group_id: str) -> Optional[str]:
        node = self._group_nodes.get(group_id)
        if node is None or not node.header_content:
            return None
        data = state.context.data if state.context else {}
        return resolve(node.header_content, data)

    # -- form state --------------------------------------------------------

    def initial_state(self) -> SimulatorState:
        form_data: Dict[str, Any] = {}
        array_data: Dict[str, List[Dict[str, Any]]] = {}
        for group in self.workflow.groups:
            fields = self.workflow.fields_for(group.id)
            if group.is_array_group:
                array_data[group.array_key] = [_blank_row(fields) for _ in range(group.array_min_rows)]
                continue
            for f in fields:
                if f.default_value or f.field_type == "checkbox":
                    form_data[f.field_key] = f.initial_value

        groups = self.workflow.groups
        step_path = (self.combined_page(groups[0].id),) if groups else ()
        return SimulatorState(step_path=step_path, form_data=form_data, array_data=array_data)

    def set_field(self, state: SimulatorState, field_key: str, value: Any) -> SimulatorState:
        self._require(state, SimulatorStatus.COLLECTING, "edit a field")
        errors = {k: v for k, v in state.errors.items() if k != field_key}
        return replace(state, form_data={**state.form_data, field_key: value}, errors=errors)

    def add_row(self, state: SimulatorState, group_id: str) -> SimulatorState:
        self._require(state, SimulatorStatus.COLLECTING, "add a row")
        group = self._array_group(group_id)
        rows = state.array_data.get(group.array_key, [])
        if group.array_max_rows is not None and len(rows) >= group.array_max_rows:
            return state
        new_rows = copy.deepcopy(rows) + [_blank_row(self.workflow.fields_for(group.id))]
        return replace(state, array_data={**state.array_data, group.array_key: new_rows})

    def remove_row(self, state: SimulatorState, group_id: str, row_index: int) -> SimulatorState:
        self._require(state, SimulatorStatus.COLLECTING, "remove a row")
        group = self._array_group(group_id)
        rows = state.array_data.get(group.array_key, [])
        if len(rows) <= group.array_min_rows:
            return state
        new_rows = [copy.deepcopy(r) for i, r in enumerate(rows) if i != row_index]
        return replace(state, array_data={**state.array_data, group.array_key: new_rows})

    def set_row_field(self, state: SimulatorState, group_id: str, row_index: int,
                      field_key: str, value: Any) -> SimulatorState:
        self._require(state, SimulatorStatus.COLLECTING, "edit a row")
        group = self._array_group(group_id)
        rows = copy.deepcopy(state.array_data.get(group.array_key, []))
        if not 0 <= row_index < len(rows):
            raise IndexError(f"Row {row_index} does not exist in {group.array_key}")
        rows[row_index][field_key] = value
        error_key = f"{group.array_key}[{row_index}].{field_key}"
        errors = {k: v for k, v in state.errors.items() if k != error_key}
        return replace(state, array_data={**state.array_data, group.array_key: rows}, errors=errors)

    def validate_page(self, state: SimulatorState) -> Dict[str, str]:
        """Field-level errors for the current page; empty when it may be submitted."""
        errors: Dict[str, str] = {}
        for group_id in state.current_page:
            group = self.workflow.group(group_id)
            fields = self.workflow.fields_for(group_id)
            if group is not None and group.is_array_group:
                for row_index, row in enumerate(state.array_data.get(group.array_key, [])):
                    for f in fields:
                        message = _field_error(f, row.get(f.field_key))
                        if message:
                            errors[f"{group.array_key}[{row_index}].{f.field_key}"] = message
            else:
                for f in fields:
                    message = _field_error(f, state.form_data.get(f.field_key))
                    if message:
                        errors[f.field_key] = message
        return errors

    # -- navigation --------------------------------------------------------

    def back(self, state: SimulatorState) -> SimulatorState:
        self._require(state, SimulatorStatus.COLLECTING, "go back")
        if state.page_index == 0:
            raise IllegalTransitionError("Already on the first page")
        moved = replace(state, page_index=state.page_index - 1, errors={})
        return replace(moved, form_data=self._apply_field_mappings(moved.current_page, moved.form_data, moved.context))

    def restart(self, state: SimulatorState) -> SimulatorState:
        logger.info("Restarting simulation from %s", state.status.value)
        return self.initial_state()

    def submit(self, state: SimulatorState) -> SimulatorState:
        self._require(state, SimulatorStatus.COLLECTING, "submit")
        errors = self.validate_page(state)
        if errors:
            logger.info("Page %d has %d invalid field(s)", state.page_index, len(errors))
            return replace(state, errors=errors)

        page = state.current_page
        group_node = self._group_nodes.get(page[0]) if page else None
        request = ExecutorRequest(
            button_id=self.button_id,
            execute_parameters={**state.form_data, **copy.deepcopy(state.array_data)},
            user_id=self.user_id,
            current_group_node_id=group_node.id if group_node else None,
            existing_context_data=state.context.to_dict() if state.context else None,
        )
        return self._call(replace(state, errors={}), request)

    def respond(self, state: SimulatorState, confirmed: bool) -> SimulatorState:
        self._require(state, SimulatorStatus.AWAITING_CONFIRMATION, "answer a confirmation")
        request = ExecutorRequest(
            button_id=self.button_id,
            execute_parameters=dict(state.form_data),
            user_id=self.user_id,
            user_confirmation_response=confirmed,
            pending_context_data=state.pending_confirmation.get("pendingContextData"),
        )
        return self._call(replace(state, pending_confirmation=None), request)

    # -- internals ---------------------------------------------------------

    def _call(self, state: SimulatorState, request: ExecutorRequest) -> SimulatorState:
        try:
            response = self.executor.execute(request)
        except Exception as e:
            logger.exception("Step executor raised")
            return self._finish(state, SimulatorStatus.FAILED, {"success": False, "results": [], "error": str(e)})
        return self._apply_response(state, response)

    def _apply_response(self, state: SimulatorState, response: ExecutorResponse) -> SimulatorState:
        outcome = response.outcome
        if outcome == "confirmation":
            logger.info("Awaiting confirmation for %s", (response.confirmation_data or {}).get("nodeLabel"))
            return replace(state, status=SimulatorStatus.AWAITING_CONFIRMATION, pending_confirmation={
                "confirmationData": response.confirmation_data,
                "pendingContextData": response.pending_context_data,
            })
        if outcome == "exit":
            logger.info("Flow exited: %s", response.exit_data.get("exitMessage"))
            return replace(state, status=SimulatorStatus.EXITED, exit_state=dict(response.exit_data))

        context = state.context
        if response.context_data:
            context = (context or ExecutionContext()).merge(response.context_data)
            if context.edge_handle_taken:
                context = context.set(EDGE_HANDLE_TAKEN, context.edge_handle_taken)
        state = replace(state, context=context)

        if outcome == "next_group":
            group_id = response.next_group_node.group_id
            page = self.combined_page(group_id) if group_id else ()
            if page:
                return self._advance(state, page)
            logger.warning("Next group %s is not part of this workflow", group_id)

        status = SimulatorStatus.COMPLETED if response.success else SimulatorStatus.FAILED
        return self._finish(state, status, {
            "success": response.success,
            "results": response.results,
            "error": response.error,
            "contextData": response.context_data,
            "message": response.message,
        })

    def _advance(self, state: SimulatorState, page: Tuple[str, ...]) -> SimulatorState:
        form_data = dict(state.form_data)
        for page_group in page:
            group = self.workflow.group(page_group)
            if group is not None and group.is_array_group:
                continue
            for f in self.workflow.fields_for(page_group):
                form_data[f.field_key] = f.reset_value
        form_data = self._apply_field_mappings(page, form_data, state.context)

        step_path = state.step_path[:state.page_index + 1] + (page,)
        logger.info("Advancing to page %d (%s)", len(step_path) - 1, ", ".join(page))
        return replace(state, step_path=step_path, page_index=len(step_path) - 1, form_data=form_data,
                       status=SimulatorStatus.COLLECTING, errors={})

    def _apply_field_mappings(self, page: Tuple[str, ...], form_data: Dict[str, Any],
                              context: Optional[ExecutionContext]) -> Dict[str, Any]:
        if context is None:
            return form_data
        handle = context.edge_handle_taken
        updated = dict(form_data)
        for group_id in page:
            node = self._group_nodes.get(group_id)
            if node is None:
                continue
            for field_key, mapping in node.field_mappings.items():
                if not mapping.variable_path or not mapping.applies_to(handle):
                    continue
                found, value = lookup_path(context.data, mapping.variable_path)
                if found:
                    updated[field_key] = stringify(value)
        return updated

    def _finish(self, state: SimulatorState, status: SimulatorStatus, result: Dict[str, Any]) -> SimulatorState:
        logger.info("Simulation %s", status.value)
        return replace(state, status=status, result=result, pending_confirmation=None)

    def _array_group(self, group_id: str) -> Group:
        group = self.workflow.group(group_id)
        if group is None or not group.is_array_group:
            raise ValueError(f"Not an array group: {group_id}")
        return group

    @staticmethod
    def _require(state: SimulatorState, status: SimulatorStatus, action: str) -> None:
        if state.status != status:
            raise IllegalTransitionError(f"Cannot {action} while {state.status.value}")


def _field_error(form_field: FormField, value: Any) -> Optional[str]:
    if form_field.is_required and (value is None or value == ""):
        return f"{form_field.name or form_field.field_key} is required"
    if form_field.field_type == "email" and value and not EMAIL_PATTERN.match(str(value)):
        return "Please enter a valid email address"
    return None
