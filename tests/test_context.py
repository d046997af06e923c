"""Tests for the execution context and its append-only namespaces."""

import pytest

from stepgraph.workflow.context import NAMESPACES, ExecutionContext


def _context():
    return ExecutionContext({"form": {"f": 1}, "execute": {"a": 1}, "response": {"id": 1}})


@pytest.mark.parametrize("namespace", NAMESPACES)
def test_without_never_removes_a_namespace(namespace):
    context = _context()

    assert context.without(namespace).data == context.data


@pytest.mark.parametrize("namespace", NAMESPACES)
def test_without_removes_leaves_inside_a_namespace(namespace):
    context = _context().set(f"{namespace}.extra", "x")

    assert context.without(f"{namespace}.extra").data == _context().data


@pytest.mark.parametrize("namespace", NAMESPACES)
def test_set_scalar_over_namespace_is_ignored(namespace):
    context = _context()

    assert context.set(namespace, "flat").data == context.data
    assert context.set_many({namespace: 5, "other": True}).data == {**context.data, "other": True}


@pytest.mark.parametrize("namespace", NAMESPACES)
def test_set_mapping_over_namespace_extends_it(namespace):
    context = _context()
    before = context.get(namespace)

    updated = context.set(namespace, {"new": 2})

    assert updated.get(namespace) == {**before, "new": 2}
    assert context.get(namespace) == before


@pytest.mark.parametrize("namespace", NAMESPACES)
def test_merge_keeps_namespaces(namespace):
    context = _context()
    before = context.get(namespace)

    assert context.merge({namespace: None}).get(namespace) == before
    assert context.merge({namespace: "flat"}).get(namespace) == before
    assert context.merge({namespace: {"b": 2}}).get(namespace) == {**before, "b": 2}


def test_set_does_not_share_state_with_caller():
    value = {"nested": [1]}
    context = ExecutionContext().set("execute.value", value)
    value["nested"].append(2)

    assert context.get("execute.value") == {"nested": [1]}


def test_with_inputs_and_edge_handle():
    context = ExecutionContext().with_inputs({"name": "Ada"}).with_edge_handle("success")

    assert context.get("form.name") == "Ada"
    assert context.get("execute.name") == "Ada"
    assert context.edge_handle_taken == "success"
