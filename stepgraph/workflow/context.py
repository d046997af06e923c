""" Execution context passed between flow steps. """
import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from .templating import delete_value_by_path, lookup_path, set_value_by_path

logger = logging.getLogger(__name__)

FORM = "form"
EXECUTE = "execute"
RESPONSE = "response"
NAMESPACES = (FORM, EXECUTE, RESPONSE)
LAST_EDGE_HANDLE = "lastEdgeHandle"
EDGE_HANDLE_TAKEN = "edgeHandleTaken"


def _merge(base: Dict[str, Any], incoming: Mapping[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in incoming.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), Mapping):
            merged[key] = _merge(dict(merged[key]), value)
        elif value is None and isinstance(merged.get(key), Mapping):
            # namespaces are never dropped
            continue
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _assign(data: Dict[str, Any], path: str, value: Any) -> None:
    """Set ``path`` in place; a whole namespace can only be extended, never replaced."""
    if path in NAMESPACES:
        if not isinstance(value, Mapping):
            logger.warning("Ignoring write of a non-mapping value over the %s namespace", path)
            return
        data[path] = _merge(dict(data.get(path) or {}), value)
        return
    set_value_by_path(data, path, copy.deepcopy(value))


@dataclass(frozen=True)
class ExecutionContext:
    """
    Immutable snapshot of run data. Every update returns a new context, so a
    step can never mutate the context another step (or the caller) holds.

    The ``form``, ``execute`` and ``response`` namespaces are append-only for
    a run: writes and removals reach their leaves but never the namespace
    itself.
    """
    data: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "ExecutionContext":
        return cls(data=copy.deepcopy(dict(data or {})))

    def get(self, path: str, default: Any = None) -> Any:
        found, value = lookup_path(self.data, path)
        return value if found else default

    def to_dict(self) -> Dict[str, Any]:
        return copy.deepcopy(self.data)

    def set(self, path: str, value: Any) -> "ExecutionContext":
        return self.set_many({path: value})

    def set_many(self, kv: Mapping[str, Any]) -> "ExecutionContext":
        data = copy.deepcopy(self.data)
        for path, value in kv.items():
            _assign(data, path, value)
        return ExecutionContext(data=data)

    def without(self, path: str) -> "ExecutionContext":
        if path in NAMESPACES:
            logger.warning("Ignoring removal of the %s namespace", path)
            return self
        data = copy.deepcopy(self.data)
        delete_value_by_path(data, path)
        return ExecutionContext(data=data)

    def merge(self, incoming: Optional[Mapping[str, Any]]) -> "ExecutionContext":
        if not incoming:
            return self
        kept = {}
        for key, value in incoming.items():
            if key in NAMESPACES and value is not None and not isinstance(value, Mapping):
                logger.warning("Ignoring non-mapping %s namespace in merged data", key)
                continue
            kept[key] = value
        return ExecutionContext(data=_merge(self.data, kept))

    def with_inputs(self, params: Optional[Mapping[str, Any]]) -> "ExecutionContext":
        """Record submitted form values under both ``form`` and ``execute``."""
        if not params:
            return self
        return self.merge({FORM: dict(params), EXECUTE: dict(params)})

    def with_edge_handle(self, handle: str) -> "ExecutionContext":
        return self.set_many({LAST_EDGE_HANDLE: handle, EDGE_HANDLE_TAKEN: handle})

    @property
    def edge_handle_taken(self) -> Optional[str]:
        return self.data.get(LAST_EDGE_HANDLE) or self.data.get(EDGE_HANDLE_TAKEN)
