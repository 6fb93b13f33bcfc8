"""Exception hierarchy for the flow engine."""

from typing import List, Optional


class FlowEngineError(Exception):
    """Base class for all engine errors."""


class FlowValidationError(FlowEngineError):
    """Flow definition rejected before any node ran."""

    def __init__(self, errors: List[str], warnings: Optional[List[str]] = None):
        self.errors = list(errors)
        self.warnings = list(warnings or [])
        super().__init__("Flow validation failed: " + "; ".join(self.errors))


class NodeExecutionError(FlowEngineError):
    """A single node failed (after exhausting its retries, once raised by the retry executor)."""

    def __init__(self, node_id: str, message: str, attempts: int = 1):
        self.node_id = node_id
        self.message = message
        self.attempts = attempts
        super().__init__(message)


class ExpressionError(FlowEngineError):
    """An expression or template could not be evaluated."""

    def __init__(self, expression: str, message: str):
        self.expression = expression
        self.message = message
        super().__init__(f"{message} (in expression: {expression!r})")


class RuntimeConnectivityError(FlowEngineError):
    """The durable runtime is unreachable or rejected a request."""


class FlowTimeoutError(FlowEngineError):
    """A run exceeded its timeout."""

    def __init__(self, timeout_ms: int):
        self.timeout_ms = timeout_ms
        super().__init__(f"Flow execution timed out after {timeout_ms}ms")
