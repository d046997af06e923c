""" Node/edge flow graph and conversion to and from legacy step chains. """

import copy
import logging
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from ..errors import GraphError
from .models import Edge, Handle, Node, NodeKind, Step

logger = logging.getLogger(__name__)

_HANDLES = {h.value for h in Handle}


def edge_id_for(source: str, target: str, handle: str = "") -> str:
    return f"{source}->{target}:{handle or 'default'}"


class FlowGraph:
    """
    Directed acyclic graph of group and workflow nodes. A node has at most
    one outgoing edge per source handle; removing a node removes its edges.
    """

    def __init__(self, nodes: Iterable[Node] = (), edges: Iterable[Edge] = ()):
        self._nodes: Dict[str, Node] = {}
        self._edges: List[Edge] = []
        for node in nodes:
            self._nodes[node.id] = node
        self._edges = list(edges)

    @property
    def nodes(self) -> List[Node]:
        return list(self._nodes.values())

    @property
    def edges(self) -> List[Edge]:
        return list(self._edges)

    def __contains__(self, node_id: str) -> bool:
        return node_id in self._nodes

    def node(self, node_id: str) -> Node:
        if node_id not in self._nodes:
            raise GraphError(f"Unknown node: {node_id}")
        return self._nodes[node_id]

    def copy(self) -> "FlowGraph":
        return FlowGraph(copy.deepcopy(self.nodes), copy.deepcopy(self._edges))

    def remove_node(self, node_id: str) -> List[Edge]:
        """Remove a node and every edge touching it; returns the removed edges."""
        self.node(node_id)
        del self._nodes[node_id]
        removed = [e for e in self._edges if node_id in (e.source, e.target)]
        self._edges = [e for e in self._edges if node_id not in (e.source, e.target)]
        return removed

    def connect(self, source: str, target: str, handle: str = "", *,
                edge_id: Optional[str] = None, label: str = "", replace: bool = False) -> Edge:
        self.node(source)
        self.node(target)
        if handle not in _HANDLES:
            raise GraphError(f"Unknown source handle: {handle!r}")
        existing = self.edge_for(source, handle)
        if existing is not None:
            if not replace:
                raise GraphError(f"Node {source} already has an outgoing '{handle or 'default'}' edge")
            self._edges.remove(existing)
        edge = Edge(id=edge_id or edge_id_for(source, target, handle), source=source,
                    target=target, source_handle=handle, label=label)
        self._edges.append(edge)
        if self._has_cycle():
            self._edges.remove(edge)
            if existing is not None:
                self._edges.append(existing)
            raise GraphError(f"Edge {source} -> {target} would create a cycle")
        return edge

    def outgoing(self, node_id: str) -> List[Edge]:
        return [e for e in self._edges if e.source == node_id]

    def edge_for(self, node_id: str, handle: str) -> Optional[Edge]:
        return next((e for e in self._edges if e.source == node_id and e.source_handle == handle), None)

    def next_node_id(self, node_id: str, outcome: Optional[str] = None) -> Optional[str]:
        """
        Target to follow after ``node_id``. ``success`` falls back to the
        default edge; ``failure`` never does. Without an outcome the default
        edge is preferred, then any outgoing edge.
        """
        if outcome:
            edge = self.edge_for(node_id, outcome)
            if edge is None and outcome == Handle.SUCCESS.value:
                edge = self.edge_for(node_id, Handle.DEFAULT.value)
            return edge.target if edge else None
        edge = self.edge_for(node_id, Handle.DEFAULT.value)
        if edge is None:
            outgoing = self.outgoing(node_id)
            edge = outgoing[0] if outgoing else None
        return edge.target if edge else None

    def group_node_for(self, group_id: str) -> Optional[Node]:
        return next((n for n in self._nodes.values() if n.is_group and n.group_id == group_id), None)

    def start_nodes(self) -> List[Node]:
        targets = {e.target for e in self._edges}
        return [n for n in self._nodes.values() if n.id not in targets]

    def execution_order(self) -> List[Node]:
        """Depth-first pre-order from every node without incoming edges."""
        order: List[Node] = []
        visited = set()

        def _visit(node_id: str) -> None:
            if node_id in visited or node_id not in self._nodes:
                return
            visited.add(node_id)
            order.append(self._nodes[node_id])
            for edge in self.outgoing(node_id):
                _visit(edge.target)

        for start in self.start_nodes():
            _visit(start.id)
        return order

    def _has_cycle(self) -> bool:
        indegree = {node_id: 0 for node_id in self._nodes}
        adjacency: Dict[str, List[str]] = {node_id: [] for node_id in self._nodes}
        for edge in self._edges:
            if edge.source in adjacency and edge.target in indegree:
                adjacency[edge.source].append(edge.target)
                indegree[edge.target] += 1

        queue = [node_id for node_id, deg in indegree.items() if deg == 0]
        visited = 0
        while queue:
            current = queue.pop(0)
            visited += 1
            for neighbor in adjacency[current]:
                indegree[neighbor] -= 1
                if indegree[neighbor] == 0:
                    queue.append(neighbor)
        return visited != len(self._nodes)

    def validate(self) -> None:
        seen_handles = set()
        for edge in self._edges:
            if edge.source not in self._nodes or edge.target not in self._nodes:
                raise GraphError(f"Edge references unknown node: {edge.source} -> {edge.target}")
            if edge.source_handle not in _HANDLES:
                raise GraphError(f"Unknown source handle on edge {edge.id}: {edge.source_handle!r}")
            key = (edge.source, edge.source_handle)
            if key in seen_handles:
                raise GraphError(f"Node {edge.source} has more than one '{edge.source_handle or 'default'}' edge")
            seen_handles.add(key)
        for node in self._nodes.values():
            if node.kind == NodeKind.WORKFLOW and node.step_type is None:
                raise GraphError(f"Workflow node {node.id} has no step type")
            if node.kind == NodeKind.GROUP and not node.group_id:
                raise GraphError(f"Group node {node.id} has no group")
        if self._has_cycle():
            raise GraphError("Cycle detected in flow graph.")


def auto_layout(node_ids: Sequence[str]) -> Dict[str, Tuple[float, float]]:
    """
    Very simple layout: put nodes in a vertical column.
    """
    positions = {}
    x, y, dy = 400.0, 200.0, 150.0
    for node_id in node_ids:
        positions[node_id] = (x, y)
        y += dy
    return positions


def chain_to_graph(steps: Sequence[Step]) -> FlowGraph:
    """
    Build a graph from a legacy pointer chain. A step with only a success
    pointer gets a default edge; one with a failure pointer gets explicit
    ``success``/``failure`` edges.
    """
    ordered = sorted(steps, key=lambda s: s.order)
    positions = auto_layout([s.id for s in ordered])
    graph = FlowGraph(Node(
        id=step.id,
        kind=NodeKind.WORKFLOW,
        label=step.name,
        position=positions[step.id],
        step_type=step.type,
        config=copy.deepcopy(step.config),
        enabled=step.enabled,
    ) for step in ordered)

    for step in ordered:
        for target in (step.next_on_success, step.next_on_failure):
            if target and target not in graph:
                raise GraphError(f"Step {step.id} points at unknown step {target}")
        if step.next_on_failure:
            if step.next_on_success:
                graph.connect(step.id, step.next_on_success, Handle.SUCCESS.value)
            graph.connect(step.id, step.next_on_failure, Handle.FAILURE.value)
        elif step.next_on_success:
            graph.connect(step.id, step.next_on_success, Handle.DEFAULT.value)
    return graph


def graph_to_chain(graph: FlowGraph) -> List[Step]:
    """
    Flatten the workflow nodes of a graph into a pointer chain ordered by
    execution order. Edges into group nodes have no chain equivalent and are
    dropped.
    """
    steps = []
    workflow_nodes = [n for n in graph.execution_order() if not n.is_group]
    for index, node in enumerate(workflow_nodes):
        success = graph.edge_for(node.id, Handle.SUCCESS.value) or graph.edge_for(node.id, Handle.DEFAULT.value)
        failure = graph.edge_for(node.id, Handle.FAILURE.value)
        pointers = []
        for edge in (success, failure):
            if edge is not None and graph.node(edge.target).is_group:
                logger.debug("Dropping edge %s into group node for chain conversion", edge.id)
                edge = None
            pointers.append(edge.target if edge else None)
        steps.append(Step(
            id=node.id,
            type=node.step_type,
            order=(index + 1) * 100,
            name=node.label,
            config=copy.deepcopy(node.config),
            enabled=node.enabled,
            next_on_success=pointers[0],
            next_on_failure=pointers[1],
        ))
    return steps
