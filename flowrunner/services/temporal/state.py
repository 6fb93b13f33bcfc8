"""Durable execution state machine.

    running -> paused -> running
    running|paused -> cancelled | completed | failed

Terminal states (completed, failed, cancelled) are final: every later
transition is a no-op. The workflow owns one instance and exposes it
through signals (mutations) and queries (reads).
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from flowrunner.services.execution.context import ExecutionContext


class DurableStatus(str, Enum):
    RUNNING = "running"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset([DurableStatus.CANCELLED, DurableStatus.COMPLETED, DurableStatus.FAILED])


@dataclass
class DurableExecutionState:
    """Status, progress, variables and logs of one durable run."""
    context: ExecutionContext
    total_nodes: int
    status: DurableStatus = DurableStatus.RUNNING
    processed_nodes: Set[str] = field(default_factory=set)
    current_node_id: Optional[str] = None
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_running(self) -> bool:
        return self.status == DurableStatus.RUNNING

    @property
    def progress(self) -> int:
        if self.total_nodes <= 0:
            return 100 if self.status == DurableStatus.COMPLETED else 0
        return min(100, round(len(self.processed_nodes) / self.total_nodes * 100))

    @property
    def variables(self) -> Dict[str, Any]:
        return self.context.variables

    @property
    def logs(self) -> List[Dict[str, Any]]:
        return self.context.logs

    # =========================================================================
    # Signals
    # =========================================================================

    def pause(self) -> bool:
        if self.status != DurableStatus.RUNNING:
            return False
        self.status = DurableStatus.PAUSED
        self.context.log("info", "Workflow paused")
        return True

    def resume(self) -> bool:
        if self.status != DurableStatus.PAUSED:
            return False
        self.status = DurableStatus.RUNNING
        self.context.log("info", "Workflow resumed")
        return True

    def cancel(self) -> bool:
        if self.is_terminal:
            return False
        self.status = DurableStatus.CANCELLED
        self.context.log("warn", "Workflow cancelled")
        return True

    def update_variables(self, patch: Dict[str, Any]) -> bool:
        if self.is_terminal or not patch:
            return False
        self.context.merge_variables(patch)
        self.context.log("info", f"Variables updated: {', '.join(sorted(patch))}")
        return True

    # =========================================================================
    # Engine events
    # =========================================================================

    def node_started(self, node_id: str) -> None:
        self.current_node_id = node_id

    def node_processed(self, node_id: str) -> None:
        self.processed_nodes.add(node_id)

    def complete(self) -> bool:
        if self.is_terminal:
            return False
        self.status = DurableStatus.COMPLETED
        self.current_node_id = None
        self.context.log("info", "Workflow completed")
        return True

    def fail(self, error: str) -> bool:
        if self.is_terminal:
            return False
        self.status = DurableStatus.FAILED
        self.error = error
        self.context.log("error", f"Workflow failed: {error}")
        return True

    # =========================================================================
    # Queries
    # =========================================================================

    def snapshot(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "progress": self.progress,
            "variables": self.variables,
            "logs": self.logs,
            "currentNodeId": self.current_node_id,
            "error": self.error,
        }
