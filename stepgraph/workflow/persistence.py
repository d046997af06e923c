"""Persisted record formats, the store interface, and save reconciliation.

Saving a workflow never issues blind deletes: the client's list is compared
with what the store holds, matching ids are updated, new ids inserted (with
temporary ``temp-`` ids swapped for permanent ones) and only the remainder
deleted. Running the same save twice produces no inserts or deletes.
"""

import copy
import logging
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional, Protocol, Sequence, Set, Tuple

from ..errors import PersistenceError, WorkflowValidationError
from .graph import FlowGraph
from .models import (ApplyCondition, Edge, FieldMapping, Node, NodeKind, Step, StepType,
                     is_temporary_id)
from .schema import normalize_config

logger = logging.getLogger(__name__)

STEPS = "steps"
NODES = "nodes"
EDGES = "edges"

STEP_REFERENCES = ("nextOnSuccessId", "nextOnFailureId")
EDGE_REFERENCES = ("sourceNodeId", "targetNodeId")

Record = Dict[str, Any]


@dataclass(frozen=True)
class CommandResult:
    """Outcome of a persistence command; ``value`` is only set on success."""
    ok: bool
    message: str = ""
    value: Any = None
    error: Optional[Exception] = None

    @classmethod
    def success(cls, value: Any = None, message: str = "") -> "CommandResult":
        return cls(ok=True, message=message, value=value)

    @classmethod
    def failure(cls, error: Exception) -> "CommandResult":
        return cls(ok=False, message=str(error), error=error)


class RecordStore(Protocol):
    def fetch(self, table: str, workflow_id: str) -> List[Record]: ...

    def insert(self, table: str, workflow_id: str, records: Sequence[Record]) -> List[Record]: ...

    def update(self, table: str, workflow_id: str, records: Sequence[Record]) -> None: ...

    def delete(self, table: str, workflow_id: str, ids: Sequence[str]) -> None: ...

    def transaction(self) -> Any: ...


class InMemoryStore:
    """Dict-backed store; ``transaction()`` restores every table on error."""

    def __init__(self, id_factory: Callable[[], str] = lambda: str(uuid.uuid4())):
        self._tables: Dict[str, Dict[str, Dict[str, Record]]] = {}
        self._id_factory = id_factory

    def _rows(self, table: str, workflow_id: str) -> Dict[str, Record]:
        return self._tables.setdefault(table, {}).setdefault(workflow_id, {})

    def fetch(self, table: str, workflow_id: str) -> List[Record]:
        return [copy.deepcopy(r) for r in self._rows(table, workflow_id).values()]

    def insert(self, table: str, workflow_id: str, records: Sequence[Record]) -> List[Record]:
        rows = self._rows(table, workflow_id)
        stored = []
        for record in records:
            record = copy.deepcopy(dict(record))
            if not record.get("id") or is_temporary_id(record["id"]):
                record["id"] = self._id_factory()
            if record["id"] in rows:
                raise PersistenceError(f"Duplicate id in {table}: {record['id']}")
            record["workflowId"] = workflow_id
            rows[record["id"]] = record
            stored.append(copy.deepcopy(record))
        return stored

    def update(self, table: str, workflow_id: str, records: Sequence[Record]) -> None:
        rows = self._rows(table, workflow_id)
        for record in records:
            if record.get("id") not in rows:
                raise PersistenceError(f"Cannot update missing {table} row: {record.get('id')}")
            rows[record["id"]] = {**copy.deepcopy(dict(record)), "workflowId": workflow_id}

    def delete(self, table: str, workflow_id: str, ids: Sequence[str]) -> None:
        rows = self._rows(table, workflow_id)
        for record_id in ids:
            rows.pop(record_id, None)

    @contextmanager
    def transaction(self) -> Iterator["InMemoryStore"]:
        snapshot = copy.deepcopy(self._tables)
        try:
            yield self
        except Exception:
            self._tables = snapshot
            raise


# --- record formats ---------------------------------------------------------

def step_to_record(step: Step) -> Record:
    return {
        "id": step.id,
        "order": step.order,
        "type": StepType(step.type).value,
        "name": step.name,
        "config": copy.deepcopy(step.config),
        "nextOnSuccessId": step.next_on_success,
        "nextOnFailureId": step.next_on_failure,
        "enabled": step.enabled,
    }


def step_from_record(record: Record) -> Step:
    step_type = StepType(record["type"])
    return Step(
        id=record["id"],
        type=step_type,
        order=int(record.get("order") or 0),
        name=record.get("name") or "",
        config=normalize_config(step_type, record.get("config")),
        enabled=record.get("enabled", True),
        next_on_success=record.get("nextOnSuccessId"),
        next_on_failure=record.get("nextOnFailureId"),
    )


def node_to_record(node: Node) -> Record:
    return {
        "id": node.id,
        "nodeType": NodeKind(node.kind).value,
        "label": node.label,
        "positionX": node.position[0],
        "positionY": node.position[1],
        "groupId": node.group_id,
        "stepType": StepType(node.step_type).value if node.step_type else None,
        "config": copy.deepcopy(node.config),
        "fieldMappings": {
            key: {"variablePath": m.variable_path, "applyCondition": ApplyCondition(m.apply_condition).value}
            for key, m in node.field_mappings.items()
        },
        "headerContent": node.header_content,
        "displayWithPrevious": node.display_with_previous,
        "enabled": node.enabled,
    }


def field_mapping_from_raw(raw: Any) -> FieldMapping:
    # older rows store the variable path as a bare string
    if isinstance(raw, str):
        return FieldMapping(variable_path=raw)
    return FieldMapping(
        variable_path=raw.get("variablePath") or raw.get("variable_path") or "",
        apply_condition=ApplyCondition(raw.get("applyCondition") or raw.get("apply_condition") or "always"),
    )


def node_from_record(record: Record) -> Node:
    kind = NodeKind(record.get("nodeType") or "workflow")
    step_type = StepType(record["stepType"]) if record.get("stepType") else None
    if kind == NodeKind.WORKFLOW and step_type is None:
        raise WorkflowValidationError(f"Workflow node {record['id']} has no step type", field="stepType")
    return Node(
        id=record["id"],
        kind=kind,
        label=record.get("label") or "",
        position=(float(record.get("positionX") or 0), float(record.get("positionY") or 0)),
        group_id=record.get("groupId"),
        step_type=step_type,
        config=normalize_config(step_type, record.get("config")) if step_type else {},
        field_mappings={k: field_mapping_from_raw(v) for k, v in (record.get("fieldMappings") or {}).items()},
        header_content=record.get("headerContent") or "",
        display_with_previous=bool(record.get("displayWithPrevious")),
        enabled=record.get("enabled", True),
    )


def edge_to_record(edge: Edge) -> Record:
    return {
        "id": edge.id,
        "sourceNodeId": edge.source,
        "targetNodeId": edge.target,
        "sourceHandle": edge.source_handle,
        "targetHandle": edge.target_handle,
        "label": edge.label,
    }


def edge_from_record(record: Record) -> Edge:
    handle = record.get("sourceHandle") or ""
    # the canvas stores the unlabeled handle as "default"
    if handle == "default":
        handle = ""
    return Edge(
        id=record["id"],
        source=record["sourceNodeId"],
        target=record["targetNodeId"],
        source_handle=handle,
        target_handle=record.get("targetHandle") or "",
        label=record.get("label") or "",
    )


# --- reconciliation ----------------------------------------------------------

@dataclass(frozen=True)
class ReconcilePlan:
    to_update: Tuple[Record, ...]
    to_insert: Tuple[Record, ...]
    to_delete: Tuple[str, ...]


@dataclass(frozen=True)
class ReconcileResult:
    records: List[Record]
    id_map: Dict[str, str] = field(default_factory=dict)
    updated: int = 0
    inserted: int = 0
    deleted: int = 0


def plan_reconciliation(persisted_ids: Set[str], records: Sequence[Record]) -> ReconcilePlan:
    to_update: List[Record] = []
    to_insert: List[Record] = []
    for record in records:
        if record.get("id") in persisted_ids and not is_temporary_id(record["id"]):
            to_update.append(record)
        else:
            to_insert.append(record)
    keep = {r["id"] for r in to_update}
    keep.update(r["id"] for r in to_insert if r.get("id") and not is_temporary_id(r["id"]))
    to_delete = sorted(i for i in persisted_ids if i not in keep)
    return ReconcilePlan(tuple(to_update), tuple(to_insert), tuple(to_delete))


def remap_references(records: Sequence[Record], id_map: Dict[str, str],
                     keys: Sequence[str]) -> List[Record]:
    remapped = []
    for record in records:
        record = dict(record)
        for key in ("id", *keys):
            if record.get(key) in id_map:
                record[key] = id_map[record[key]]
        remapped.append(record)
    return remapped


def reconcile(store: RecordStore, table: str, workflow_id: str, records: Sequence[Record],
              reference_keys: Sequence[str] = ()) -> ReconcileResult:
    """
    Make ``table`` hold exactly ``records`` for this workflow. References in
    ``reference_keys`` that point at temporary ids are rewritten to the
    permanent ids handed out on insert.
    """
    persisted_ids = {r["id"] for r in store.fetch(table, workflow_id)}
    plan = plan_reconciliation(persisted_ids, records)

    if plan.to_update:
        store.update(table, workflow_id, plan.to_update)
    inserted = store.insert(table, workflow_id, plan.to_insert) if plan.to_insert else []
    id_map = {old["id"]: new["id"] for old, new in zip(plan.to_insert, inserted)
              if old.get("id") and old["id"] != new["id"]}

    final = remap_references(records, id_map, reference_keys)
    if id_map and reference_keys:
        changed = [r for r, before in zip(final, records)
                   if any(r.get(k) != before.get(k) for k in reference_keys)]
        if changed:
            store.update(table, workflow_id, changed)

    keep = {r["id"] for r in final}
    to_delete = [i for i in plan.to_delete if i not in keep]
    if to_delete:
        store.delete(table, workflow_id, to_delete)

    logger.info("Reconciled %s for %s: %d updated, %d inserted, %d deleted",
                table, workflow_id, len(plan.to_update), len(inserted), len(to_delete))
    return ReconcileResult(records=final, id_map=id_map, updated=len(plan.to_update),
                           inserted=len(inserted), deleted=len(to_delete))


class WorkflowRepository:
    """Loads and saves one workflow's steps and graph through a RecordStore."""

    def __init__(self, store: RecordStore, workflow_id: str):
        self.store = store
        self.workflow_id = workflow_id

    def load_steps(self) -> List[Step]:
        steps = [step_from_record(r) for r in self.store.fetch(STEPS, self.workflow_id)]
        return sorted(steps, key=lambda s: s.order)

    def save_steps(self, steps: Sequence[Step]) -> CommandResult:
        records = [step_to_record(s) for s in steps]
        try:
            with self.store.transaction():
                result = reconcile(self.store, STEPS, self.workflow_id, records, STEP_REFERENCES)
        except PersistenceError as e:
            logger.warning("Saving steps for %s failed: %s", self.workflow_id, e)
            return CommandResult.failure(e)
        saved = [step_from_record(r) for r in result.records]
        return CommandResult.success(sorted(saved, key=lambda s: s.order))

    def load_graph(self) -> FlowGraph:
        nodes = [node_from_record(r) for r in self.store.fetch(NODES, self.workflow_id)]
        edges = [edge_from_record(r) for r in self.store.fetch(EDGES, self.workflow_id)]
        return FlowGraph(nodes, edges)

    def save_graph(self, graph: FlowGraph) -> CommandResult:
        graph.validate()
        node_records = [node_to_record(n) for n in graph.nodes]
        edge_records = [edge_to_record(e) for e in graph.edges]
        try:
            with self.store.transaction():
                nodes = reconcile(self.store, NODES, self.workflow_id, node_records)
                edge_records = remap_references(edge_records, nodes.id_map, EDGE_REFERENCES)
                edges = reconcile(self.store, EDGES, self.workflow_id, edge_records)
        except PersistenceError as e:
            logger.warning("Saving graph for %s failed: %s", self.workflow_id, e)
            return CommandResult.failure(e)
        return CommandResult.success(FlowGraph(
            [node_from_record(r) for r in nodes.records],
            [edge_from_record(r) for r in edges.records],
        ))
