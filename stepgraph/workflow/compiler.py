""" Load and validate a Workflow from YAML, and write one back. """

from typing import Any, Dict

import yaml

from ..errors import WorkflowValidationError
from .graph import FlowGraph, auto_layout, chain_to_graph, edge_id_for
from .models import ApplyCondition, Edge, FormField, Group, Node, NodeKind, Step, StepType, Workflow
from .persistence import field_mapping_from_raw
from .schema import normalize_config


def load_workflow(yaml_text: str) -> Workflow:
    """
    Load a Workflow from a YAML string.

    A workflow is either a legacy ``steps:`` chain or a ``nodes:``/``edges:``
    graph; ``groups:`` and ``fields:`` describe the input form.
    """
    data = yaml.safe_load(yaml_text)
    if not isinstance(data, dict):
        raise WorkflowValidationError("Workflow YAML must be a mapping")

    if "name" not in data:
        raise WorkflowValidationError("Missing required top-level field: name", field="name")
    if "steps" in data and "nodes" in data:
        raise WorkflowValidationError("Use either 'steps' or 'nodes', not both")

    groups = [_group(g) for g in data.get("groups") or []]
    group_ids = {g.id for g in groups}
    fields = [_field(f, group_ids) for f in data.get("fields") or []]

    workflow = Workflow(
        id=str(data.get("id") or data["name"]),
        name=data["name"],
        description=data.get("description", ""),
        groups=groups,
        fields=fields,
    )

    if "steps" in data:
        workflow.steps = [_step(s, i) for i, s in enumerate(data.get("steps") or [])]
        chain_to_graph(workflow.steps).validate()
    else:
        raw_nodes = data.get("nodes") or []
        positions = auto_layout([str(n.get("id")) for n in raw_nodes if isinstance(n, dict)])
        workflow.nodes = [_node(n, group_ids, positions) for n in raw_nodes]
        workflow.edges = [_edge(e) for e in data.get("edges") or []]
        FlowGraph(workflow.nodes, workflow.edges).validate()

    return workflow


def dump_workflow(workflow: Workflow) -> str:
    data: Dict[str, Any] = {"id": workflow.id, "name": workflow.name}
    if workflow.description:
        data["description"] = workflow.description
    if workflow.groups:
        data["groups"] = [_dump_group(g) for g in workflow.groups]
    if workflow.fields:
        data["fields"] = [_dump_field(f) for f in workflow.fields]
    if workflow.nodes:
        data["nodes"] = [_dump_node(n) for n in workflow.nodes]
        data["edges"] = [_dump_edge(e) for e in workflow.edges]
    else:
        data["steps"] = [_dump_step(s) for s in workflow.steps]
    return yaml.safe_dump(data, sort_keys=False, allow_unicode=True)


def _require(raw: Dict[str, Any], key: str, what: str) -> Any:
    if not isinstance(raw, dict) or raw.get(key) in (None, ""):
        raise WorkflowValidationError(f"{what} is missing '{key}'", field=key)
    return raw[key]


def _group(raw: Dict[str, Any]) -> Group:
    group_id = str(_require(raw, "id", "Group"))
    array = raw.get("array") or {}
    return Group(
        id=group_id,
        name=raw.get("name") or group_id,
        is_array_group=bool(array),
        array_min_rows=int(array.get("min_rows", 0)),
        array_max_rows=array.get("max_rows"),
        array_field_name=array.get("field_name"),
        description=raw.get("description", ""),
    )


def _field(raw: Dict[str, Any], group_ids) -> FormField:
    key = str(_require(raw, "key", "Field"))
    group_id = str(_require(raw, "group", f"Field {key}"))
    if group_id not in group_ids:
        raise WorkflowValidationError(f"Field {key} references unknown group: {group_id}", field="group")
    default = raw.get("default")
    return FormField(
        id=str(raw.get("id") or f"{group_id}.{key}"),
        group_id=group_id,
        field_key=key,
        name=raw.get("name") or key,
        field_type=raw.get("type", "text"),
        is_required=bool(raw.get("required", False)),
        default_value=None if default is None else str(default),
    )


def _step(raw: Dict[str, Any], index: int) -> Step:
    step_id = str(_require(raw, "id", "Step"))
    step_type = _step_type(raw.get("type"), step_id)
    return Step(
        id=step_id,
        type=step_type,
        order=int(raw.get("order", (index + 1) * 100)),
        name=raw.get("name", ""),
        config=normalize_config(step_type, raw.get("config")),
        enabled=bool(raw.get("enabled", True)),
        next_on_success=raw.get("on_success"),
        next_on_failure=raw.get("on_failure"),
    )


def _step_type(value: Any, owner: str) -> StepType:
    try:
        return StepType(value)
    except ValueError:
        raise WorkflowValidationError(f"{owner} has unsupported step type: {value}", field="type") from None


def _node(raw: Dict[str, Any], group_ids, positions) -> Node:
    node_id = str(_require(raw, "id", "Node"))
    position = raw.get("position")
    position = (float(position[0]), float(position[1])) if position else positions[node_id]
    if raw.get("group"):
        if raw["group"] not in group_ids:
            raise WorkflowValidationError(f"Node {node_id} references unknown group: {raw['group']}", field="group")
        return Node(
            id=node_id,
            kind=NodeKind.GROUP,
            label=raw.get("label", ""),
            position=position,
            group_id=raw["group"],
            field_mappings={k: field_mapping_from_raw(v) for k, v in (raw.get("field_mappings") or {}).items()},
            header_content=raw.get("header", ""),
            display_with_previous=bool(raw.get("display_with_previous", False)),
            enabled=bool(raw.get("enabled", True)),
        )
    step_type = _step_type(raw.get("type"), f"Node {node_id}")
    return Node(
        id=node_id,
        kind=NodeKind.WORKFLOW,
        label=raw.get("label", ""),
        position=position,
        step_type=step_type,
        config=normalize_config(step_type, raw.get("config")),
        enabled=bool(raw.get("enabled", True)),
    )


def _edge(raw: Dict[str, Any]) -> Edge:
    source = str(_require(raw, "from", "Edge"))
    target = str(_require(raw, "to", "Edge"))
    handle = raw.get("handle") or ""
    if handle == "default":
        handle = ""
    return Edge(
        id=raw.get("id") or edge_id_for(source, target, handle),
        source=source,
        target=target,
        source_handle=handle,
        label=raw.get("label", ""),
    )


def _dump_group(group: Group) -> Dict[str, Any]:
    data: Dict[str, Any] = {"id": group.id, "name": group.name}
    if group.description:
        data["description"] = group.description
    if group.is_array_group:
        data["array"] = {"field_name": group.array_key, "min_rows": group.array_min_rows}
        if group.array_max_rows is not None:
            data["array"]["max_rows"] = group.array_max_rows
    return data


def _dump_field(form_field: FormField) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "key": form_field.field_key,
        "group": form_field.group_id,
        "name": form_field.name,
        "type": form_field.field_type,
    }
    if form_field.is_required:
        data["required"] = True
    if form_field.default_value is not None:
        data["default"] = form_field.default_value
    return data


def _dump_step(step: Step) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "id": step.id,
        "type": StepType(step.type).value,
        "name": step.name,
        "order": step.order,
        "config": step.config,
    }
    if not step.enabled:
        data["enabled"] = False
    if step.next_on_success:
        data["on_success"] = step.next_on_success
    if step.next_on_failure:
        data["on_failure"] = step.next_on_failure
    return data


def _dump_node(node: Node) -> Dict[str, Any]:
    data: Dict[str, Any] = {"id": node.id, "label": node.label, "position": list(node.position)}
    if node.is_group:
        data["group"] = node.group_id
        if node.header_content:
            data["header"] = node.header_content
        if node.display_with_previous:
            data["display_with_previous"] = True
        if node.field_mappings:
            data["field_mappings"] = {
                key: {"variable_path": m.variable_path, "apply_condition": ApplyCondition(m.apply_condition).value}
                for key, m in node.field_mappings.items()
            }
    else:
        data["type"] = StepType(node.step_type).value
        data["config"] = node.config
    if not node.enabled:
        data["enabled"] = False
    return data


def _dump_edge(edge: Edge) -> Dict[str, Any]:
    data: Dict[str, Any] = {"id": edge.id, "from": edge.source, "to": edge.target}
    if edge.source_handle:
        data["handle"] = edge.source_handle
    if edge.label:
        data["label"] = edge.label
    return data
