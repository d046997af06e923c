"""Tests for {{variable}} resolution."""

from stepgraph.workflow.templating import (delete_value_by_path, find_tokens, lookup_path, lookup_variable,
                                           resolve, resolve_path_variables, resolve_value,
                                           set_value_by_path, stringify)


def test_resolve_leaves_unresolved_tokens_untouched():
    """A missing segment keeps the token byte-identical."""
    context = {"form": {"name": "Ann"}, "response": {}}

    assert resolve("Hello {{form.name}}, ID {{response.id}}", context) == "Hello Ann, ID {{response.id}}"


def test_resolve_treats_null_leaf_as_unresolved():
    context = {"execute": {"orderId": None}}

    assert resolve("Order {{execute.orderId}}", context) == "Order {{execute.orderId}}"


def test_resolve_fully_resolved_template_has_no_tokens():
    context = {"a": {"b": 1}, "c": "x"}

    out = resolve("{{a.b}}-{{c}}-{{ a.b }}", context)
    assert "{{" not in out
    assert out == "1-x-1"


def test_resolve_walks_list_indexes():
    context = {"response": {"items": [{"sku": "A1"}, {"sku": "B2"}]}}

    assert resolve("{{response.items[1].sku}}", context) == "B2"
    assert resolve("{{response.items.0.sku}}", context) == "A1"
    assert resolve("{{response.items[5].sku}}", context) == "{{response.items[5].sku}}"


def test_resolve_stringifies_values():
    context = {"flag": True, "off": False, "count": 3.0, "ratio": 2.5, "obj": {"a": 1}, "arr": [1, 2]}

    assert resolve("{{flag}}/{{off}}", context) == "true/false"
    assert resolve("{{count}}", context) == "3"
    assert resolve("{{ratio}}", context) == "2.5"
    assert resolve("{{obj}}", context) == '{"a":1}'
    assert resolve("{{arr}}", context) == "[1,2]"


def test_resolve_escapes_single_quotes_in_values_only():
    """OData filters need quotes doubled inside values, never in the template."""
    context = {"execute": {"name": "O'Brien"}}

    out = resolve("$filter=Name eq '{{execute.name}}'", context, escape_single_quotes=True, scopes=("execute",))
    assert out == "$filter=Name eq 'O''Brien'"


def test_resolve_with_scopes_prefers_namespace_then_root():
    context = {"execute": {"id": "from-execute"}, "response": {"id": "from-response"}, "id": "root"}

    assert resolve("{{id}}", context, scopes=("execute", "response")) == "from-execute"
    assert resolve("{{id}}", context, scopes=("response",)) == "from-response"
    assert resolve("{{id}}", context) == "root"


def test_resolve_never_touches_single_brace_placeholders():
    assert resolve("/orders/{orderId}/${lineId}", {"orderId": 5}) == "/orders/{orderId}/${lineId}"


def test_resolve_returns_non_strings_unchanged():
    assert resolve(None, {}) is None
    assert resolve("no tokens", {}) == "no tokens"


def test_resolve_path_variables_replaces_both_forms():
    path = resolve_path_variables("/orders/{orderId}/lines/${lineId}", [("orderId", "42"), ("lineId", "7")])

    assert path == "/orders/42/lines/7"


def test_find_tokens():
    assert find_tokens("{{ a.b }} and {{c}}") == ["a.b", "c"]
    assert find_tokens(None) == []


def test_lookup_variable_accepts_braced_paths():
    context = {"execute": {"type": "EMAIL"}}

    assert lookup_variable(context, "{{type}}") == (True, "EMAIL")
    assert lookup_variable(context, "execute.type") == (True, "EMAIL")
    assert lookup_variable(context, "missing") == (False, None)


def test_lookup_path_empty_path_is_a_miss():
    assert lookup_path({"a": 1}, "") == (False, None)


def test_resolve_value_recurses():
    context = {"execute": {"city": "Reno"}}

    value = resolve_value({"to": ["{{city}}", 1], "note": "x"}, context, scopes=("execute",))
    assert value == {"to": ["Reno", 1], "note": "x"}


def test_set_value_by_path_creates_intermediates():
    target = {}
    set_value_by_path(target, "order.lines[1].sku", "B2")
    set_value_by_path(target, "order.customer", "Ann")

    assert target == {"order": {"lines": [None, {"sku": "B2"}], "customer": "Ann"}}


def test_set_value_by_path_numeric_segment_indexes_existing_list():
    target = {"items": [{"sku": "A"}, {"sku": "B"}]}

    set_value_by_path(target, "items.1.qty", 3)
    set_value_by_path(target, "items.0", {"sku": "Z"})

    assert target == {"items": [{"sku": "Z"}, {"sku": "B", "qty": 3}]}
    assert lookup_path(target, "items.1.qty") == (True, 3)


def test_set_value_by_path_numeric_segment_on_missing_key_is_a_dict_key():
    target = {}
    set_value_by_path(target, "codes.7", "x")

    assert target == {"codes": {"7": "x"}}


def test_delete_value_by_path():
    target = {"a": {"b": 1, "c": 2}}

    assert delete_value_by_path(target, "a.b") is True
    assert delete_value_by_path(target, "a.zzz") is False
    assert delete_value_by_path(target, "x.y") is False
    assert target == {"a": {"c": 2}}


def test_stringify_plain_values():
    assert stringify("x") == "x"
    assert stringify(10) == "10"
    assert stringify(None) == "None"
