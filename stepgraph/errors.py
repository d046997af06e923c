""" Error types raised by stepgraph. """

from typing import Any, Optional


class WorkflowValidationError(ValueError):
    """A step config, workflow definition or form input failed validation.

    ``line`` and ``column`` are 1-based and only set for JSON parse failures.
    """

    def __init__(self, message: str, *, field: Optional[str] = None,
                 line: Optional[int] = None, column: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.field = field
        self.line = line
        self.column = column

    def __str__(self) -> str:
        parts = [self.message]
        if self.field:
            parts.insert(0, f"{self.field}:")
        if self.line is not None:
            parts.append(f"(line {self.line}, column {self.column})")
        return " ".join(parts)


class GraphError(ValueError):
    """ The node/edge graph violates a structural rule. """


class PersistenceError(RuntimeError):
    """ A store rejected a write; in-memory state must be rolled back. """


class StepExecutionError(RuntimeError):
    """A step failed while running; carries the request that was attempted."""

    def __init__(self, message: str, *, request_url: Optional[str] = None,
                 request_body: Any = None, http_method: Optional[str] = None):
        super().__init__(message)
        self.request_url = request_url
        self.request_body = request_body
        self.http_method = http_method


class IllegalTransitionError(ValueError):
    pass
