"""Pydantic models for flow definitions, run options and run results.

Wire format is camelCase (``retryPolicy``, ``durationMs``); attribute
access is snake_case. Every model accepts either spelling on input.
"""

from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, PrivateAttr, field_validator

NodeType = Literal["http", "transform", "delay", "branch", "loop", "call", "webhook", "schedule"]


class ExecutionStatus(str, Enum):
    """Terminal (or in-flight, for recurring durable runs) run states."""
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"


class ExecutionMode(str, Enum):
    SANDBOX = "sandbox"
    LIVE = "live"
    DURABLE = "durable"


# =============================================================================
# FLOW DEFINITION
# =============================================================================

class RetryPolicy(BaseModel):
    """Per-node retry configuration.

    Delay before retry n (1-indexed): backoff_ms * 2^(n-1), scaled by
    (1 + U[0, 0.1)) when jitter is enabled.
    """
    model_config = {"populate_by_name": True, "frozen": True}

    max_attempts: int = Field(default=1, ge=1, alias="maxAttempts")
    backoff_ms: int = Field(default=0, ge=0, alias="backoffMs")
    jitter: bool = False


class FlowNode(BaseModel):
    """One typed vertex of a flow graph."""
    model_config = {"populate_by_name": True, "frozen": True}

    id: str = Field(min_length=1)
    type: NodeType
    config: Dict[str, Any] = Field(default_factory=dict)
    next: List[str] = Field(default_factory=list)
    retry_policy: Optional[RetryPolicy] = Field(default=None, alias="retryPolicy")


class FlowSchedule(BaseModel):
    """Flow-level schedule: a cron expression or a fixed interval in ms."""
    model_config = {"populate_by_name": True, "frozen": True}

    cron: Optional[str] = None
    interval: Optional[int] = Field(default=None, gt=0)
    timezone: Optional[str] = None


class FlowDefinition(BaseModel):
    """A named graph of nodes with a single entry point.

    Nodes are held as a list plus an id -> index map, so cyclic graphs
    are ordinary data. Structural problems (duplicate ids, dangling
    references, missing entry) are reported by the validator, not here.
    """
    model_config = {"populate_by_name": True, "frozen": True}

    id: str
    name: str
    description: Optional[str] = None
    nodes: List[FlowNode]
    entry: str
    schedule: Optional[FlowSchedule] = None
    idempotency_key: Optional[str] = Field(default=None, alias="idempotencyKey")

    _index: Dict[str, int] = PrivateAttr(default_factory=dict)

    @field_validator("schedule", mode="before")
    @classmethod
    def coerce_schedule(cls, v):
        """Accept a bare cron string as shorthand for ``{"cron": ...}``."""
        if isinstance(v, str):
            return {"cron": v}
        return v

    def model_post_init(self, __context: Any) -> None:
        index: Dict[str, int] = {}
        for position, node in enumerate(self.nodes):
            index.setdefault(node.id, position)
        self._index = index

    def get_node(self, node_id: str) -> Optional[FlowNode]:
        """Look up a node by id (first occurrence wins on duplicates)."""
        position = self._index.get(node_id)
        return self.nodes[position] if position is not None else None

    def has_node(self, node_id: str) -> bool:
        return node_id in self._index

    def is_recurring(self) -> bool:
        """True when a schedule node is marked recurring."""
        return any(
            node.type == "schedule" and bool(node.config.get("recurring"))
            for node in self.nodes
        )


# =============================================================================
# RUN OPTIONS AND RESULTS
# =============================================================================

class ExecutionOptions(BaseModel):
    """Per-invocation run configuration. Never persisted on its own."""
    model_config = {"populate_by_name": True}

    sandbox: bool = True
    temporal_enabled: bool = Field(default=False, alias="temporalEnabled")
    timeout_ms: Optional[int] = Field(default=None, gt=0, alias="timeoutMs")
    variables: Dict[str, Any] = Field(default_factory=dict)
    workflow_id: Optional[str] = Field(default=None, alias="workflowId")
    task_queue: Optional[str] = Field(default=None, alias="taskQueue")


class OutputRecord(BaseModel):
    model_config = {"populate_by_name": True, "frozen": True}

    node_id: str = Field(alias="nodeId")
    type: str
    result: Optional[Any] = None
    error: Optional[str] = None
    timestamp: int


class LogEntry(BaseModel):
    model_config = {"populate_by_name": True, "frozen": True}

    level: Literal["info", "warn", "error"]
    message: str
    timestamp: int
    node_id: Optional[str] = Field(default=None, alias="nodeId")


class ExecutionResult(BaseModel):
    """Terminal snapshot of one flow run."""
    model_config = {"populate_by_name": True, "frozen": True}

    flow_id: str = Field(alias="flowId")
    execution_id: Optional[str] = Field(default=None, alias="executionId")
    success: bool
    outputs: List[OutputRecord] = Field(default_factory=list)
    logs: List[LogEntry] = Field(default_factory=list)
    duration_ms: int = Field(alias="durationMs")
    status: ExecutionStatus = ExecutionStatus.COMPLETED
    mode: ExecutionMode = ExecutionMode.SANDBOX
    error: Optional[str] = None
    workflow_id: Optional[str] = Field(default=None, alias="workflowId")
    run_id: Optional[str] = Field(default=None, alias="runId")
    final_variables: Dict[str, Any] = Field(default_factory=dict, alias="finalVariables")


class ValidationReport(BaseModel):
    model_config = {"populate_by_name": True, "frozen": True}

    is_valid: bool = Field(alias="isValid")
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


# =============================================================================
# REQUEST BODIES
# =============================================================================

class FlowRunRequest(BaseModel):
    flow: FlowDefinition
    options: Optional[ExecutionOptions] = None


class ScheduleFlowRequest(BaseModel):
    """Register a flow for recurring local execution."""
    model_config = {"populate_by_name": True}

    flow: FlowDefinition
    options: Optional[ExecutionOptions] = None
    cron: Optional[str] = None
    interval_ms: Optional[int] = Field(default=None, gt=0, alias="intervalMs")
