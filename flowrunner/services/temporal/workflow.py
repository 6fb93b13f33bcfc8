"""Temporal workflow - durable execution of one flow.

The workflow reuses the local GraphWalker for traversal; only node
execution and suspension differ:
- Delay nodes become durable timers (cancel-aware)
- Other task nodes run as ``execute_flow_node`` activities with a Temporal
  retry policy derived from the node's retryPolicy (jitter is not
  expressible there and is ignored)
- Between nodes and loop iterations the walker checkpoints: a paused run
  blocks until resume or cancel, a cancelled run stops

Signals (pause, resume, cancel, updateVariables) and queries (getStatus,
getProgress, getVariables, getLogs, getState) are served from a
DurableExecutionState. Recurring flows wait for the next schedule tick and
continue-as-new so per-run history stays bounded.
"""

import asyncio
from datetime import timedelta
from typing import Any, Dict, List, Optional

from temporalio import workflow
from temporalio.common import RetryPolicy as TemporalRetryPolicy
from temporalio.exceptions import ActivityError, ApplicationError

from flowrunner.constants import (
    DEFAULT_LOOP_MAX_ITERATIONS,
    EXECUTE_NODE_ACTIVITY,
    FLOW_WORKFLOW_TYPE,
    SIGNAL_CANCEL,
    SIGNAL_PAUSE,
    SIGNAL_RESUME,
    SIGNAL_UPDATE_VARIABLES,
)
from flowrunner.models.flow import FlowDefinition, FlowNode, RetryPolicy
from flowrunner.services.execution.context import ExecutionContext
from flowrunner.services.execution.exceptions import NodeExecutionError
from flowrunner.services.execution.handlers import NodeResult, delay_duration_ms
from flowrunner.services.execution.walker import GraphWalker
from flowrunner.services.scheduler import next_fire_time
from flowrunner.services.temporal.state import DurableExecutionState, DurableStatus

ACTIVITY_START_TO_CLOSE = timedelta(minutes=10)


def build_activity_retry_policy(policy: Optional[RetryPolicy]) -> TemporalRetryPolicy:
    """Translate a node retry policy into a Temporal retry policy."""
    policy = policy or RetryPolicy()
    return TemporalRetryPolicy(
        initial_interval=timedelta(milliseconds=max(policy.backoff_ms, 1)),
        backoff_coefficient=2.0,
        maximum_attempts=policy.max_attempts,
    )


async def _workflow_wait_any(tasks: List["asyncio.Future[Any]"]) -> None:
    running = [task for task in tasks if not task.done()]
    if running:
        await workflow.wait_condition(lambda: any(task.done() for task in running))


@workflow.defn(name=FLOW_WORKFLOW_TYPE, sandboxed=False)
class FlowExecutionWorkflow:
    """Durable flow run with pause/resume/cancel and live queries."""

    def __init__(self) -> None:
        # Signals may be delivered before run() starts, so state exists up front
        context = ExecutionContext(flow_id="", clock=workflow.time, echo=False)
        self._state = DurableExecutionState(context=context, total_nodes=0)
        self._cancel_requested = False
        self._sandbox = True

    @workflow.run
    async def run(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Execute the flow.

        Args:
            payload: Dict containing:
                - flow: FlowDefinition in wire format
                - options: ExecutionOptions in wire format
                - engine: maxIterations / abortOnFailure
                - cycle: continue-as-new generation (recurring flows)

        Returns:
            Dict with status, outputs, logs, variables, progress and error
        """
        flow = FlowDefinition.model_validate(payload["flow"])
        options = payload.get("options") or {}
        engine = payload.get("engine") or {}
        cycle = int(payload.get("cycle", 0))
        self._sandbox = bool(options.get("sandbox", True))

        state = self._state
        context = state.context
        context.flow_id = flow.id
        # Variables patched by early signals win over the seed
        context.variables = {**(options.get("variables") or {}), **context.variables}
        state.total_nodes = len(flow.nodes)

        workflow.logger.info(f"Starting flow {flow.id} ({len(flow.nodes)} nodes, cycle {cycle})")
        context.log("info", f"Durable execution started for flow '{flow.id}'" + (f" (cycle {cycle})" if cycle else ""))

        walker = GraphWalker(
            flow,
            context,
            run_node=self._run_node,
            checkpoint=self._checkpoint,
            on_node_started=state.node_started,
            on_node_processed=state.node_processed,
            max_iterations=int(engine.get("maxIterations", DEFAULT_LOOP_MAX_ITERATIONS)),
            abort_on_failure=bool(engine.get("abortOnFailure", False)),
            wait_any_fn=_workflow_wait_any,
        )

        try:
            await walker.execute()
        except NodeExecutionError as e:
            state.fail(e.message)
            raise ApplicationError(e.message, self._result(cycle), type="NodeExecutionError",
                                   non_retryable=True) from e
        except asyncio.CancelledError:
            # Temporal-native cancellation: record it and let the workflow close as cancelled
            state.cancel()
            raise

        if state.status == DurableStatus.CANCELLED or self._cancel_requested:
            state.cancel()
            workflow.logger.info(f"Flow {flow.id} cancelled")
            return self._result(cycle)

        state.complete()
        workflow.logger.info(f"Flow {flow.id} completed, progress {state.progress}%")

        if flow.is_recurring():
            await self._wait_for_next_cycle(flow, payload, cycle)

        return self._result(cycle)

    def _result(self, cycle: int) -> Dict[str, Any]:
        context = self._state.context
        return {
            "flowId": context.flow_id,
            "status": self._state.status.value,
            "outputs": context.outputs,
            "logs": context.logs,
            "variables": context.variables,
            "progress": self._state.progress,
            "error": self._state.error,
            "cycle": cycle,
        }

    async def _wait_for_next_cycle(self, flow: FlowDefinition, payload: Dict[str, Any], cycle: int) -> None:
        """Sleep until the next schedule tick, then continue-as-new.

        Returns only when cancelled while waiting.
        """
        schedule_node = next(n for n in flow.nodes if n.type == "schedule" and n.config.get("recurring"))
        now = workflow.now()
        fire_at = next_fire_time(
            cron=schedule_node.config.get("cron"),
            interval_ms=schedule_node.config.get("interval"),
            timezone=schedule_node.config.get("timezone"),
            now=now,
        )
        if fire_at is None:
            return

        wait = max(fire_at - now, timedelta(milliseconds=1))
        self._state.context.log("info", f"Next cycle scheduled at {fire_at.isoformat()}")
        try:
            await workflow.wait_condition(lambda: self._cancel_requested, timeout=wait)
        except asyncio.TimeoutError:
            workflow.continue_as_new(args=[{**payload, "cycle": cycle + 1}])
        # Cancel arrived while idle between cycles
        self._state.context.log("warn", "Recurring schedule cancelled")

    async def _checkpoint(self) -> bool:
        if self._state.status == DurableStatus.PAUSED:
            await workflow.wait_condition(lambda: self._state.status != DurableStatus.PAUSED)
        return self._state.status == DurableStatus.RUNNING

    async def _run_node(self, node: FlowNode, variables: Dict[str, Any]) -> NodeResult:
        if node.type == "delay":
            return await self._durable_delay(node)

        policy = node.retry_policy or RetryPolicy()
        try:
            payload = await workflow.execute_activity(
                EXECUTE_NODE_ACTIVITY,
                args=[{
                    "node": node.model_dump(by_alias=True, mode="json"),
                    "variables": dict(variables),
                    "sandbox": self._sandbox,
                }],
                start_to_close_timeout=ACTIVITY_START_TO_CLOSE,
                retry_policy=build_activity_retry_policy(policy),
            )
        except ActivityError as e:
            cause = e.cause
            message = cause.message if isinstance(cause, ApplicationError) else str(cause or e)
            raise NodeExecutionError(node.id, message, attempts=policy.max_attempts) from e

        return NodeResult.from_dict(payload)

    async def _durable_delay(self, node: FlowNode) -> NodeResult:
        try:
            delay_ms = delay_duration_ms(node.config)
        except ValueError as e:
            raise NodeExecutionError(node.id, str(e)) from e

        try:
            await workflow.wait_condition(
                lambda: self._state.status == DurableStatus.CANCELLED,
                timeout=timedelta(milliseconds=delay_ms),
            )
        except asyncio.TimeoutError:
            pass
        return NodeResult(data={"delayMs": delay_ms, "waitedMs": delay_ms})

    # =========================================================================
    # Signals
    # =========================================================================

    @workflow.signal(name=SIGNAL_PAUSE)
    def pause(self) -> None:
        self._state.pause()

    @workflow.signal(name=SIGNAL_RESUME)
    def resume(self) -> None:
        self._state.resume()

    @workflow.signal(name=SIGNAL_CANCEL)
    def cancel(self) -> None:
        self._cancel_requested = True
        self._state.cancel()

    @workflow.signal(name=SIGNAL_UPDATE_VARIABLES)
    def update_variables(self, patch: Dict[str, Any]) -> None:
        self._state.update_variables(patch or {})

    # =========================================================================
    # Queries
    # =========================================================================

    @workflow.query(name="getStatus")
    def get_status(self) -> str:
        return self._state.status.value

    @workflow.query(name="getProgress")
    def get_progress(self) -> int:
        return self._state.progress

    @workflow.query(name="getVariables")
    def get_variables(self) -> Dict[str, Any]:
        return self._state.variables

    @workflow.query(name="getLogs")
    def get_logs(self) -> List[Dict[str, Any]]:
        return self._state.logs

    @workflow.query(name="getState")
    def get_state(self) -> Dict[str, Any]:
        return self._state.snapshot()
