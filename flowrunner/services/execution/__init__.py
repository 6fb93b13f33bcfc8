"""Flow execution engine.

Components:
- validator: structural checks before a run starts
- context: run-scoped variables, outputs and logs
- expressions: restricted expression evaluation and templating
- retry: per-node retry with exponential backoff and jitter
- handlers: task node implementations (sandbox or live)
- walker: graph traversal with branch/loop/fan-out semantics
"""

from .context import ExecutionContext
from .exceptions import (
    ExpressionError,
    FlowEngineError,
    FlowTimeoutError,
    FlowValidationError,
    NodeExecutionError,
    RuntimeConnectivityError,
)
from .handlers import NodeHandlers, NodeResult
from .retry import RetryExecutor, calculate_backoff
from .validator import validate_flow
from .walker import GraphWalker

__all__ = [
    # Context
    "ExecutionContext",
    # Errors
    "FlowEngineError",
    "FlowValidationError",
    "NodeExecutionError",
    "ExpressionError",
    "RuntimeConnectivityError",
    "FlowTimeoutError",
    # Engine
    "NodeHandlers",
    "NodeResult",
    "RetryExecutor",
    "calculate_backoff",
    "validate_flow",
    "GraphWalker",
]
