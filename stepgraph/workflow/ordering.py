"""Sparse ordering of workflow steps.

Orders are spaced 100 apart so a move only rewrites the moved step: it takes
the midpoint between its new neighbours. When neighbours get closer than
``MIN_GAP`` the whole list is renumbered.
"""

import copy
import logging
import uuid
from dataclasses import replace
from typing import Any, Dict, List, Optional, Sequence

from ..errors import WorkflowValidationError
from .models import TEMP_ID_PREFIX, Step, StepType
from .persistence import CommandResult, WorkflowRepository
from .schema import normalize_config

logger = logging.getLogger(__name__)

ORDER_STEP = 100
MIN_GAP = 10


def sort_steps(steps: Sequence[Step]) -> List[Step]:
    return sorted(steps, key=lambda s: s.order)


def needs_migration(steps: Sequence[Step]) -> bool:
    """Older workflows numbered steps 1, 2, 3…; anything below 100 is legacy."""
    return any(s.order < ORDER_STEP for s in steps)


def renumber(steps: Sequence[Step]) -> List[Step]:
    """Reassign ``(index + 1) * 100`` keeping the given sequence."""
    return [replace(s, order=(i + 1) * ORDER_STEP) for i, s in enumerate(steps)]


def next_order(steps: Sequence[Step]) -> int:
    return max((s.order for s in steps), default=0) + ORDER_STEP


def _gaps_ok(steps: Sequence[Step]) -> bool:
    return all(b.order - a.order >= MIN_GAP for a, b in zip(steps, steps[1:]))


def move_step(steps: Sequence[Step], step_id: str, direction: str) -> List[Step]:
    """
    Return the steps re-sorted with ``step_id`` moved one place ``up`` or
    ``down``. Moving past either end leaves the list unchanged.
    """
    if direction not in ("up", "down"):
        raise ValueError(f"Unknown move direction: {direction}")
    ordered = sort_steps(steps)
    index = next((i for i, s in enumerate(ordered) if s.id == step_id), None)
    if index is None:
        raise KeyError(step_id)

    new_index = index - 1 if direction == "up" else index + 1
    if new_index < 0 or new_index >= len(ordered):
        return ordered

    passed = ordered[new_index]
    if direction == "up":
        above = ordered[new_index - 1] if new_index > 0 else None
        order = (above.order + passed.order) // 2 if above else passed.order - ORDER_STEP
    else:
        below = ordered[new_index + 1] if new_index + 1 < len(ordered) else None
        order = (passed.order + below.order) // 2 if below else passed.order + ORDER_STEP

    moved = replace(ordered[index], order=order)
    sequence = [s for s in ordered if s.id != step_id]
    sequence.insert(new_index, moved)
    if not _gaps_ok(sequence):
        logger.info("Order gaps below %d after moving %s; renumbering", MIN_GAP, step_id)
        sequence = renumber(sequence)
    return sequence


def remove_step(steps: Sequence[Step], step_id: str) -> List[Step]:
    """Drop a step and clear every pointer that referenced it."""
    remaining = []
    for step in steps:
        if step.id == step_id:
            continue
        if step_id in (step.next_on_success, step.next_on_failure):
            step = replace(
                step,
                next_on_success=None if step.next_on_success == step_id else step.next_on_success,
                next_on_failure=None if step.next_on_failure == step_id else step.next_on_failure,
            )
        remaining.append(step)
    return remaining


def clone_steps(steps: Sequence[Step], start_order: int = ORDER_STEP) -> List[Step]:
    """Copy a chain under fresh temporary ids, remapping internal pointers."""
    id_map = {s.id: f"{TEMP_ID_PREFIX}{uuid.uuid4().hex}" for s in steps}
    clones = []
    for offset, step in enumerate(sort_steps(steps)):
        clones.append(replace(
            step,
            id=id_map[step.id],
            order=start_order + offset * ORDER_STEP,
            config=copy.deepcopy(step.config),
            next_on_success=id_map.get(step.next_on_success) if step.next_on_success else None,
            next_on_failure=id_map.get(step.next_on_failure) if step.next_on_failure else None,
        ))
    return clones


class OrderManager:
    """
    Owns the in-memory step list of one workflow. Every mutation is saved
    first and only replaces ``steps`` once the store accepted it.
    """

    def __init__(self, repository: WorkflowRepository):
        self.repository = repository
        self.steps: List[Step] = []

    def load(self) -> CommandResult:
        steps = self.repository.load_steps()
        if needs_migration(steps):
            logger.info("Migrating legacy step orders for %s", self.repository.workflow_id)
            return self._commit(renumber(sort_steps(steps)))
        self.steps = steps
        return CommandResult.success(list(self.steps))

    def add_step(self, step_type: Any, name: str = "", config: Optional[Dict[str, Any]] = None) -> CommandResult:
        try:
            kind = StepType(step_type)
            normalized = normalize_config(kind, config or {})
        except (ValueError, WorkflowValidationError) as e:
            return CommandResult.failure(e)
        step = Step(
            id=f"{TEMP_ID_PREFIX}{uuid.uuid4().hex}",
            type=kind,
            order=next_order(self.steps),
            name=name or kind.value.replace("_", " ").title(),
            config=normalized,
        )
        result = self._commit(self.steps + [step])
        if not result.ok:
            return result
        return CommandResult.success(self.steps[-1])

    def update_step(self, step_id: str, **changes: Any) -> CommandResult:
        current = self._find(step_id)
        if current is None:
            return CommandResult.failure(KeyError(step_id))
        if "config" in changes:
            try:
                changes["config"] = normalize_config(current.type, changes["config"])
            except WorkflowValidationError as e:
                return CommandResult.failure(e)
        updated = replace(current, **changes)
        return self._commit([updated if s.id == step_id else s for s in self.steps])

    def move_up(self, step_id: str) -> CommandResult:
        return self._move(step_id, "up")

    def move_down(self, step_id: str) -> CommandResult:
        return self._move(step_id, "down")

    def delete_step(self, step_id: str) -> CommandResult:
        if self._find(step_id) is None:
            return CommandResult.failure(KeyError(step_id))
        return self._commit(remove_step(self.steps, step_id))

    def import_steps(self, source: Sequence[Step]) -> CommandResult:
        """Append copies of another workflow's steps after the current ones."""
        return self._commit(self.steps + clone_steps(source, next_order(self.steps)))

    def _move(self, step_id: str, direction: str) -> CommandResult:
        if self._find(step_id) is None:
            return CommandResult.failure(KeyError(step_id))
        return self._commit(move_step(self.steps, step_id, direction))

    def _find(self, step_id: str) -> Optional[Step]:
        return next((s for s in self.steps if s.id == step_id), None)

    def _commit(self, proposed: List[Step]) -> CommandResult:
        result = self.repository.save_steps(proposed)
        if result.ok:
            self.steps = result.value
        else:
            logger.warning("Keeping previous step list for %s: %s", self.repository.workflow_id, result.message)
        return result
