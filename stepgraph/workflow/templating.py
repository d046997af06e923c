""" Resolve ``{{namespace.path}}`` tokens against an execution context. """

import json
import re
from typing import Any, Iterable, List, Mapping, MutableMapping, Sequence, Tuple, Union

TOKEN_PATTERN = re.compile(r"\{\{([^{}]+)\}\}")
_INDEXED_SEGMENT = re.compile(r"^(.+?)\[(\d+)\]$")

_MISSING = object()


def find_tokens(template: str) -> List[str]:
    """Return the trimmed paths of every ``{{path}}`` token, in order."""
    if not isinstance(template, str):
        return []
    return [m.group(1).strip() for m in TOKEN_PATTERN.finditer(template)]


def _step_into(current: Any, segment: str) -> Any:
    indexed = _INDEXED_SEGMENT.match(segment)
    if indexed:
        current = _step_into(current, indexed.group(1))
        segment = indexed.group(2)
        if current is _MISSING:
            return _MISSING

    if isinstance(current, Mapping):
        return current.get(segment, _MISSING)
    if isinstance(current, (list, tuple)) and segment.isdigit():
        index = int(segment)
        return current[index] if index < len(current) else _MISSING
    return _MISSING


def lookup_path(data: Any, path: str) -> Tuple[bool, Any]:
    """
    Walk ``path`` (dotted, with optional ``name[0]`` or numeric list segments)
    through ``data``. Returns ``(found, value)``; a ``None`` leaf counts as
    not found.
    """
    if not path:
        return False, None
    current = data
    for segment in path.strip().split("."):
        current = _step_into(current, segment)
        if current is _MISSING or current is None:
            return False, None
    return True, current


def lookup_variable(context: Mapping[str, Any], path: str,
                    scopes: Sequence[str] = ("execute",)) -> Tuple[bool, Any]:
    """
    Look ``path`` up inside each scope namespace first, then from the root.
    Surrounding ``{{ }}`` are tolerated.
    """
    path = path.strip()
    if path.startswith("{{") and path.endswith("}}"):
        path = path[2:-2].strip()
    for scope in scopes:
        found, value = lookup_path(context.get(scope), path)
        if found:
            return found, value
    return lookup_path(context, path)


def stringify(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (Mapping, list, tuple)):
        return json.dumps(value, separators=(",", ":"), default=str)
    return str(value)


def resolve(template: str, context: Mapping[str, Any], *,
            escape_single_quotes: bool = False,
            scopes: Sequence[str] = ()) -> str:
    """
    Substitute every ``{{path}}`` token whose path resolves to a non-null
    value; unresolved tokens are left exactly as written.

    With ``escape_single_quotes`` every ``'`` inside a substituted value is
    doubled. Literal text of the template is never altered.
    """
    if not isinstance(template, str) or "{{" not in template:
        return template

    def _replace(match: "re.Match[str]") -> str:
        found, value = lookup_variable(context, match.group(1), scopes)
        if not found:
            return match.group(0)
        text = stringify(value)
        if escape_single_quotes:
            text = text.replace("'", "''")
        return text

    return TOKEN_PATTERN.sub(_replace, template)


def resolve_value(value: Any, context: Mapping[str, Any], *, scopes: Sequence[str] = ()) -> Any:
    """Resolve templates recursively inside dicts, lists and strings."""
    if isinstance(value, str):
        return resolve(value, context, scopes=scopes)
    if isinstance(value, Mapping):
        return {k: resolve_value(v, context, scopes=scopes) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve_value(v, context, scopes=scopes) for v in value]
    return value


def resolve_path_variables(path: str, variables: Iterable[Tuple[str, str]]) -> str:
    """
    Replace single-brace ``{name}`` and ``${name}`` placeholders of an API
    path with already-resolved values. Used for configured path variables
    only; free text never goes through here.
    """
    for name, value in variables:
        path = path.replace(f"${{{name}}}", value)
        path = path.replace(f"{{{name}}}", value)
    return path


def _path_keys(path: str) -> List[Union[str, int]]:
    keys: List[Union[str, int]] = []
    for segment in path.split("."):
        indexed = _INDEXED_SEGMENT.match(segment)
        if indexed:
            keys.extend((indexed.group(1), int(indexed.group(2))))
        else:
            keys.append(segment)
    return keys


def _child(container: Any, key: Union[str, int]) -> Any:
    if isinstance(container, list):
        index = int(key)
        return container[index] if index < len(container) else None
    return container.get(key)


def _put(container: Any, key: Union[str, int], value: Any) -> None:
    if isinstance(container, list):
        index = int(key)
        while len(container) <= index:
            container.append(None)
        container[index] = value
    else:
        container[key] = value


def _container_for(existing: Any, next_key: Union[str, int]) -> Any:
    if isinstance(existing, list) and (isinstance(next_key, int) or next_key.isdigit()):
        return existing
    if isinstance(next_key, int):
        return []
    return existing if isinstance(existing, dict) else {}


def set_value_by_path(target: MutableMapping[str, Any], path: str, value: Any) -> None:
    """
    Assign ``value`` at a dotted path, creating intermediate dicts and lists.
    Segments like ``items[0]`` address list positions, and a numeric segment
    such as ``items.1`` indexes a list that is already there.
    """
    keys = _path_keys(path)
    current: Any = target
    for key, next_key in zip(keys, keys[1:]):
        existing = _child(current, key)
        child = _container_for(existing, next_key)
        if child is not existing:
            _put(current, key, child)
        current = child
    _put(current, keys[-1], value)


def delete_value_by_path(target: MutableMapping[str, Any], path: str) -> bool:
    """Remove the leaf at ``path``; returns False when nothing was there."""
    parent_path, _, leaf = path.rpartition(".")
    parent = target
    if parent_path:
        found, parent = lookup_path(target, parent_path)
        if not found:
            return False
    if isinstance(parent, MutableMapping) and leaf in parent:
        del parent[leaf]
        return True
    return False
