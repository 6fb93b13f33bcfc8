"""Run-scoped mutable execution state.

One ExecutionContext belongs to exactly one flow run. Node handlers read
``variables`` and return patches that are merged back (last write wins);
``outputs`` and ``logs`` are append-only.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from flowrunner.core.logging import get_logger

logger = get_logger(__name__)

_LOG_METHODS = {"info": "info", "warn": "warning", "error": "error"}


@dataclass
class ExecutionContext:
    """Variable bag plus output/log accumulators for one run."""
    flow_id: str
    variables: Dict[str, Any] = field(default_factory=dict)
    outputs: List[Dict[str, Any]] = field(default_factory=list)
    logs: List[Dict[str, Any]] = field(default_factory=list)
    clock: Callable[[], float] = time.time
    echo: bool = True  # mirror log entries to the structured logger

    @classmethod
    def create(cls, flow_id: str, variables: Optional[Dict[str, Any]] = None,
               **kwargs) -> "ExecutionContext":
        """Create a context seeded with a copy of the caller's variables."""
        return cls(flow_id=flow_id, variables=dict(variables or {}), **kwargs)

    def now_ms(self) -> int:
        return int(self.clock() * 1000)

    def log(self, level: str, message: str, node_id: Optional[str] = None, **fields) -> None:
        entry: Dict[str, Any] = {"level": level, "message": message, "timestamp": self.now_ms()}
        if node_id is not None:
            entry["nodeId"] = node_id
        self.logs.append(entry)

        if self.echo:
            log_method = getattr(logger, _LOG_METHODS.get(level, "info"))
            log_method(message, flow_id=self.flow_id, node_id=node_id, **fields)

    def record_output(self, node_id: str, node_type: str, result: Any) -> None:
        self.outputs.append({
            "nodeId": node_id,
            "type": node_type,
            "result": result,
            "timestamp": self.now_ms(),
        })

    def record_error(self, node_id: str, node_type: str, error: str) -> None:
        self.outputs.append({
            "nodeId": node_id,
            "type": node_type,
            "error": error,
            "timestamp": self.now_ms(),
        })

    def merge_variables(self, patch: Optional[Dict[str, Any]]) -> None:
        if patch:
            self.variables.update(patch)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "flowId": self.flow_id,
            "variables": self.variables,
            "outputs": self.outputs,
            "logs": self.logs,
        }
