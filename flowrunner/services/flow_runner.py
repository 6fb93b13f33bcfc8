"""Flow runner - validates a flow and executes it in one of three modes.

- sandbox: side-effecting nodes are simulated, no network I/O
- live: side-effecting nodes go through the API client
- durable: the run is handed to Temporal; when Temporal is unreachable
  (or the remote run fails and fallback is enabled) the flow runs locally

Every run returns an ExecutionResult. Validation errors are the only
expected failure raised to the caller (FlowValidationError), before any
node has run.
"""

import asyncio
import random
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

import structlog
from temporalio.exceptions import TemporalError

from flowrunner.constants import (
    FLOW_WORKFLOW_TYPE,
    SEARCH_ATTRIBUTE_FLOW_ID,
    SEARCH_ATTRIBUTE_FLOW_NAME,
)
from flowrunner.core.config import Settings
from flowrunner.core.logging import get_logger
from flowrunner.models.flow import (
    ExecutionMode,
    ExecutionOptions,
    ExecutionResult,
    ExecutionStatus,
    FlowDefinition,
    FlowNode,
    LogEntry,
    ValidationReport,
)
from flowrunner.services.api_client import ApiClient
from flowrunner.services.execution.context import ExecutionContext
from flowrunner.services.execution.exceptions import (
    FlowTimeoutError,
    FlowValidationError,
    NodeExecutionError,
    RuntimeConnectivityError,
)
from flowrunner.services.execution.handlers import NodeHandlers, NodeResult
from flowrunner.services.execution.retry import RetryExecutor
from flowrunner.services.execution.validator import validate_flow
from flowrunner.services.execution.walker import GraphWalker

logger = get_logger(__name__)

REMOTE_STATUS_MAP = {
    "completed": ExecutionStatus.COMPLETED,
    "cancelled": ExecutionStatus.CANCELLED,
    "timed_out": ExecutionStatus.TIMED_OUT,
    "failed": ExecutionStatus.FAILED,
    "terminated": ExecutionStatus.FAILED,
}


def _now_ms() -> int:
    return int(time.time() * 1000)


class FlowRunnerService:
    """Entry point for validating and running flows."""

    def __init__(
        self,
        settings: Settings,
        api_client: Optional[ApiClient] = None,
        temporal_client=None,
        database=None,
        sleep: Optional[Callable[[float], Any]] = None,
        rng: Callable[[], float] = random.random,
    ):
        """Initialize the runner.

        Args:
            settings: Application settings
            api_client: Collaborator for live http/webhook/call nodes
            temporal_client: TemporalClientWrapper (or compatible adapter)
            database: Execution record store; records are skipped when None
            sleep: Sleep used for delays and retry backoff (tests inject a fake)
            rng: Random source for retry jitter
        """
        self.settings = settings
        self.api_client = api_client
        self.temporal_client = temporal_client
        self.database = database
        self._sandbox_handlers = NodeHandlers(settings, api_client=None, sandbox=True, sleep=sleep)
        self._live_handlers = NodeHandlers(settings, api_client=api_client, sandbox=False, sleep=sleep)
        self._retry = RetryExecutor(sleep=sleep, rng=rng)

    # =========================================================================
    # Validation
    # =========================================================================

    def validate(self, flow: FlowDefinition) -> ValidationReport:
        return validate_flow(flow, reject_cycles=self.settings.reject_cycles)

    def _ensure_valid(self, flow: FlowDefinition) -> ValidationReport:
        report = self.validate(flow)
        if not report.is_valid:
            logger.warning("Rejected invalid flow", flow_id=flow.id, errors=report.errors)
            raise FlowValidationError(report.errors, report.warnings)
        return report

    # =========================================================================
    # Public run modes
    # =========================================================================

    async def run_sandbox(self, flow: FlowDefinition,
                          options: Optional[ExecutionOptions] = None) -> ExecutionResult:
        """Simulate the flow. No network or external I/O is performed."""
        options = (options or ExecutionOptions()).model_copy(update={"sandbox": True, "temporal_enabled": False})
        report = self._ensure_valid(flow)
        result = await self._run_local(flow, options, ExecutionMode.SANDBOX, report.warnings)
        return await self._finish(flow, options, result)

    async def run_live(self, flow: FlowDefinition,
                       options: Optional[ExecutionOptions] = None) -> ExecutionResult:
        """Execute with real side effects; delegates to durable mode when requested."""
        options = (options or ExecutionOptions()).model_copy(update={"sandbox": False})
        if options.temporal_enabled:
            return await self.run_durable(flow, options)

        report = self._ensure_valid(flow)
        result = await self._run_local(flow, options, ExecutionMode.LIVE, report.warnings)
        return await self._finish(flow, options, result)

    async def run_durable(self, flow: FlowDefinition,
                          options: Optional[ExecutionOptions] = None) -> ExecutionResult:
        """Hand the flow to Temporal, falling back to local execution when needed."""
        options = (options or ExecutionOptions()).model_copy(update={"temporal_enabled": True})
        report = self._ensure_valid(flow)

        client = self.temporal_client
        if client is None or not client.is_connected:
            logger.warning(
                "Temporal not connected, falling back to local execution",
                flow_id=flow.id,
                fallback=self._fallback_mode(options).value,
            )
            result = await self._run_local(flow, options, self._fallback_mode(options), report.warnings)
            return await self._finish(flow, options, result)

        result = await self._run_remote(flow, options, report)
        return await self._finish(flow, options, result)

    # =========================================================================
    # Local execution
    # =========================================================================

    def _fallback_mode(self, options: ExecutionOptions) -> ExecutionMode:
        if options.sandbox or self.settings.durable_fallback_mode == "sandbox":
            return ExecutionMode.SANDBOX
        return ExecutionMode.LIVE

    async def _run_local(self, flow: FlowDefinition, options: ExecutionOptions,
                         mode: ExecutionMode, warnings: List[str]) -> ExecutionResult:
        handlers = self._sandbox_handlers if mode == ExecutionMode.SANDBOX else self._live_handlers
        context = ExecutionContext.create(flow.id, options.variables)
        for warning in warnings:
            context.log("warn", warning)
        context.log("info", f"Starting {mode.value} execution of flow '{flow.name}'")

        async def run_node(node: FlowNode, variables: Dict[str, Any]) -> NodeResult:
            return await self._retry.run(node, handlers.bind(node, variables))

        walker = GraphWalker(
            flow,
            context,
            run_node=run_node,
            max_iterations=self.settings.loop_max_iterations,
            abort_on_failure=self.settings.abort_on_node_failure,
        )

        start_time = time.time()
        status = ExecutionStatus.COMPLETED
        error: Optional[str] = None

        try:
            with structlog.contextvars.bound_contextvars(flow_id=flow.id, mode=mode.value):
                if options.timeout_ms:
                    await asyncio.wait_for(walker.execute(), timeout=options.timeout_ms / 1000)
                else:
                    await walker.execute()
        except asyncio.TimeoutError:
            status = ExecutionStatus.TIMED_OUT
            error = str(FlowTimeoutError(options.timeout_ms))
            context.log("error", error)
        except NodeExecutionError as e:
            status = ExecutionStatus.FAILED
            error = f"Node '{e.node_id}' failed: {e.message}"
            context.log("error", f"Flow aborted: {error}", node_id=e.node_id)
        else:
            context.log("info", f"Flow '{flow.name}' finished")

        return ExecutionResult(
            flow_id=flow.id,
            execution_id=uuid.uuid4().hex,
            success=status == ExecutionStatus.COMPLETED,
            outputs=context.outputs,
            logs=context.logs,
            duration_ms=int((time.time() - start_time) * 1000),
            status=status,
            mode=mode,
            error=error,
            final_variables=context.variables,
        )

    # =========================================================================
    # Durable execution
    # =========================================================================

    def _workflow_payload(self, flow: FlowDefinition, options: ExecutionOptions) -> Dict[str, Any]:
        return {
            "flow": flow.model_dump(by_alias=True, mode="json"),
            "options": options.model_dump(by_alias=True, mode="json"),
            "engine": {
                "maxIterations": self.settings.loop_max_iterations,
                "abortOnFailure": self.settings.abort_on_node_failure,
            },
            "cycle": 0,
        }

    async def _run_remote(self, flow: FlowDefinition, options: ExecutionOptions,
                          report: ValidationReport) -> ExecutionResult:
        client = self.temporal_client
        workflow_id = options.workflow_id or f"flow-{flow.id}-{_now_ms()}"
        task_queue = options.task_queue or self.settings.temporal_task_queue
        timeout = (timedelta(milliseconds=options.timeout_ms) if options.timeout_ms
                   else timedelta(seconds=self.settings.temporal_execution_timeout))
        search_attributes = None
        if self.settings.temporal_search_attributes_enabled:
            search_attributes = {SEARCH_ATTRIBUTE_FLOW_ID: flow.id, SEARCH_ATTRIBUTE_FLOW_NAME: flow.name}

        start_time = time.time()
        started_log = {"level": "info", "message": f"Durable workflow '{workflow_id}' started on '{task_queue}'",
                       "timestamp": _now_ms()}

        try:
            started = await client.start_workflow(
                workflow_id=workflow_id,
                task_queue=task_queue,
                workflow_type=FLOW_WORKFLOW_TYPE,
                args=[self._workflow_payload(flow, options)],
                execution_timeout=timeout,
                search_attributes=search_attributes,
                memo={"flowId": flow.id, "flowName": flow.name, "sandbox": options.sandbox},
            )
            run_id = started.get("runId")

            if flow.is_recurring():
                logger.info("Recurring durable workflow started", flow_id=flow.id, workflow_id=workflow_id)
                return ExecutionResult(
                    flow_id=flow.id,
                    execution_id=uuid.uuid4().hex,
                    success=True,
                    logs=[started_log],
                    duration_ms=int((time.time() - start_time) * 1000),
                    status=ExecutionStatus.RUNNING,
                    mode=ExecutionMode.DURABLE,
                    workflow_id=workflow_id,
                    run_id=run_id,
                    final_variables=dict(options.variables),
                )

            remote = await client.get_workflow_result(workflow_id, run_id)
        except (RuntimeConnectivityError, TemporalError) as e:
            logger.warning("Durable runtime unavailable, falling back to local execution",
                           flow_id=flow.id, workflow_id=workflow_id, error=str(e))
            return await self._run_local(flow, options, self._fallback_mode(options), report.warnings)

        remote_status = remote.get("status", "failed")
        payload = remote.get("result") or {}
        if remote_status == "completed":
            remote_status = payload.get("status", "completed")
        status = REMOTE_STATUS_MAP.get(remote_status, ExecutionStatus.FAILED)
        error = remote.get("error") or payload.get("error")

        if status == ExecutionStatus.FAILED and self.settings.durable_fallback_on_failure:
            logger.error("Durable workflow failed, running local fallback",
                         flow_id=flow.id, workflow_id=workflow_id, error=error)
            fallback = await self._run_local(flow, options, self._fallback_mode(options), report.warnings)
            failure_log = LogEntry(level="error", timestamp=_now_ms(),
                                   message=f"Durable workflow '{workflow_id}' failed: {error}; ran local fallback")
            return fallback.model_copy(update={
                "logs": [LogEntry.model_validate(started_log), failure_log] + list(fallback.logs),
                "workflow_id": workflow_id,
                "run_id": run_id,
            })

        logger.info("Durable workflow finished", flow_id=flow.id, workflow_id=workflow_id, status=status.value)
        return ExecutionResult(
            flow_id=flow.id,
            execution_id=uuid.uuid4().hex,
            success=status == ExecutionStatus.COMPLETED,
            outputs=payload.get("outputs") or [],
            logs=[started_log] + list(payload.get("logs") or []),
            duration_ms=int((time.time() - start_time) * 1000),
            status=status,
            mode=ExecutionMode.DURABLE,
            error=None if status == ExecutionStatus.COMPLETED else error,
            workflow_id=workflow_id,
            run_id=run_id,
            final_variables=payload.get("variables") or {},
        )

    # =========================================================================
    # Execution records
    # =========================================================================

    async def _finish(self, flow: FlowDefinition, options: ExecutionOptions,
                      result: ExecutionResult) -> ExecutionResult:
        logger.info(
            "Flow run finished",
            flow_id=flow.id,
            execution_id=result.execution_id,
            mode=result.mode.value,
            status=result.status.value,
            success=result.success,
            outputs=len(result.outputs),
            duration_ms=result.duration_ms,
        )
        await self._record(flow, options, result)
        return result

    async def _record(self, flow: FlowDefinition, options: ExecutionOptions, result: ExecutionResult) -> None:
        if self.database is None or not self.settings.execution_records_enabled:
            return

        completed_at = datetime.now(timezone.utc)
        closed = result.status != ExecutionStatus.RUNNING
        dumped = result.model_dump(by_alias=True, mode="json")
        await self.database.save_execution_record(
            record_id=result.execution_id,
            flow_id=flow.id,
            workflow_id=result.workflow_id,
            status=result.status.value,
            mode=result.mode.value,
            input={
                "flow": flow.model_dump(by_alias=True, mode="json"),
                "options": options.model_dump(by_alias=True, mode="json"),
            },
            output={
                "success": dumped["success"],
                "outputs": dumped["outputs"],
                "finalVariables": dumped["finalVariables"],
                "error": dumped["error"],
            },
            logs=dumped["logs"],
            error=result.error,
            started_at=completed_at - timedelta(milliseconds=result.duration_ms),
            completed_at=completed_at if closed else None,
            duration_ms=result.duration_ms if closed else None,
        )
