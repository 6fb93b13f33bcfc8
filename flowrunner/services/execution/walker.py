"""Graph walker - traverses a flow from its entry node.

Implements:
- Visited-set traversal: every node runs at most once per pass, so cyclic
  graphs terminate
- Branch nodes pick exactly one successor and ignore ``next``
- Loop nodes re-run a single body node while the condition holds, bounded
  by ``maxIterations``
- Fork/join fan-out over multiple ``next`` entries (pending siblings are
  cancelled in ``next`` order when one raises; the wait primitive is
  injectable so the durable workflow can use ``workflow.wait_condition``)
- Best-effort continuation: a failed node is recorded and the walk goes on
  to its successors unless ``abort_on_failure`` is set

The walker does not know about execution modes. Node execution (including
retries) is the ``run_node`` callable's job; suspension points (pause,
cancel) are the ``checkpoint`` callable's job.
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from flowrunner.constants import CONTROL_FLOW_NODE_TYPES, DEFAULT_LOOP_MAX_ITERATIONS
from flowrunner.core.logging import get_logger
from flowrunner.models.flow import FlowDefinition, FlowNode
from flowrunner.services.execution.context import ExecutionContext
from flowrunner.services.execution.exceptions import ExpressionError, NodeExecutionError
from flowrunner.services.execution.expressions import evaluate_condition
from flowrunner.services.execution.handlers import NodeResult

logger = get_logger(__name__)

RunNode = Callable[[FlowNode, Dict[str, Any]], Awaitable[NodeResult]]
Checkpoint = Callable[[], Awaitable[bool]]
NodeHook = Callable[[str], None]
WaitAny = Callable[[List["asyncio.Future[Any]"]], Awaitable[None]]


async def wait_any(tasks: List["asyncio.Future[Any]"]) -> None:
    """Block until at least one of the still-running tasks finishes."""
    running = [task for task in tasks if not task.done()]
    if running:
        await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)


def _first_failure(tasks: List["asyncio.Future[Any]"]) -> Optional[BaseException]:
    failure: Optional[BaseException] = None
    for task in tasks:
        if task.done() and not task.cancelled():
            error = task.exception()
            if failure is None:
                failure = error
    return failure


class GraphWalker:
    """Walks one flow run, mutating its ExecutionContext in place."""

    def __init__(
        self,
        flow: FlowDefinition,
        context: ExecutionContext,
        run_node: RunNode,
        checkpoint: Optional[Checkpoint] = None,
        on_node_started: Optional[NodeHook] = None,
        on_node_processed: Optional[NodeHook] = None,
        max_iterations: int = DEFAULT_LOOP_MAX_ITERATIONS,
        abort_on_failure: bool = False,
        wait_any_fn: Optional[WaitAny] = None,
    ):
        self.flow = flow
        self.context = context
        self._run_node = run_node
        self._checkpoint = checkpoint
        self._on_node_started = on_node_started
        self._on_node_processed = on_node_processed
        self.max_iterations = max_iterations
        self.abort_on_failure = abort_on_failure
        self._wait_any = wait_any_fn or wait_any
        self.visited: Set[str] = set()
        self.stopped = False

    async def execute(self) -> None:
        """Walk the flow from its entry node.

        Raises:
            NodeExecutionError: only when ``abort_on_failure`` is set.
        """
        self.visited = set()
        self.stopped = False
        await self._visit(self.flow.entry)

    async def _should_continue(self) -> bool:
        if self.stopped:
            return False
        if self._checkpoint is not None and not await self._checkpoint():
            self.stopped = True
            return False
        return True

    async def _visit(self, node_id: str) -> None:
        """Follow single-successor chains iteratively; fork on fan-out."""
        pending: List[str] = [node_id]

        while pending:
            if len(pending) > 1:
                await self._fan_out(pending)
                return

            current_id = pending[0]
            if not await self._should_continue():
                return
            if current_id in self.visited:
                return

            node = self.flow.get_node(current_id)
            if node is None:
                self.context.log("warn", f"Node '{current_id}' not found, skipping")
                return

            self.visited.add(current_id)
            pending = await self._execute_node(node)

    async def _fan_out(self, node_ids: List[str]) -> None:
        """Run sibling branches concurrently and join before returning.

        Failures are picked and siblings cancelled in ``next`` order, never
        in completion-set order, so a durable replay issues the same commands.
        """
        tasks = [asyncio.ensure_future(self._visit(node_id)) for node_id in node_ids]
        try:
            while not all(task.done() for task in tasks):
                await self._wait_any(tasks)
                if _first_failure(tasks) is not None:
                    break
        except asyncio.CancelledError:
            # Run timed out or was cancelled: take the sibling branches down too
            for task in tasks:
                task.cancel()
            raise

        failure = _first_failure(tasks)
        if failure is None:
            return
        for task in tasks:
            if not task.done():
                task.cancel()
        while not all(task.done() for task in tasks):
            await self._wait_any(tasks)
        raise failure

    async def _execute_node(self, node: FlowNode) -> List[str]:
        """Execute one node and return the successors to visit."""
        if self._on_node_started is not None:
            self._on_node_started(node.id)

        if node.type == "branch":
            return self._execute_branch(node)
        if node.type == "loop":
            return await self._execute_loop(node)

        await self._run_task(node)
        return list(node.next)

    def _node_processed(self, node: FlowNode) -> None:
        if self._on_node_processed is not None:
            self._on_node_processed(node.id)

    def _fail_node(self, node: FlowNode, error: NodeExecutionError) -> None:
        self.context.record_error(node.id, node.type, error.message)
        self.context.log(
            "error",
            f"Node '{node.id}' failed after {error.attempts} attempt(s): {error.message}",
            node_id=node.id,
            attempts=error.attempts,
        )
        self._node_processed(node)
        if self.abort_on_failure:
            raise error

    async def _run_task(self, node: FlowNode) -> None:
        self.context.log("info", f"Executing {node.type} node '{node.id}'", node_id=node.id)
        try:
            result = await self._run_node(node, self.context.variables)
        except NodeExecutionError as e:
            self._fail_node(node, e)
            return

        self.context.merge_variables(result.variables)
        self.context.record_output(node.id, node.type, result.data)
        self._node_processed(node)

    def _execute_branch(self, node: FlowNode) -> List[str]:
        config = node.config
        try:
            outcome = evaluate_condition(config.get("condition"), self.context.variables,
                                         language=config.get("language"))
        except ExpressionError as e:
            self._fail_node(node, NodeExecutionError(node.id, str(e)))
            return []

        chosen = config.get("trueNodeId") if outcome else config.get("falseNodeId")
        self.context.record_output(node.id, node.type, {"condition": outcome, "nextNodeId": chosen})
        self.context.log("info", f"Branch '{node.id}' evaluated {outcome}, continuing to '{chosen}'", node_id=node.id)
        self._node_processed(node)
        return [chosen] if chosen else []

    async def _execute_loop(self, node: FlowNode) -> List[str]:
        config = node.config
        condition = config.get("condition")
        max_iterations = config.get("maxIterations")
        if max_iterations is None:
            max_iterations = self.max_iterations

        body_id = config.get("bodyNodeId")
        body = self.flow.get_node(body_id) if body_id else None
        if body_id:
            # The body only ever runs inside the loop
            self.visited.add(body_id)
        if body is not None and body.type in CONTROL_FLOW_NODE_TYPES:
            self.context.log("warn", f"Loop '{node.id}' body '{body_id}' is a control-flow node, skipping body",
                             node_id=node.id)
            body = None

        iterations = 0
        capped = False
        while True:
            if iterations >= max_iterations:
                capped = True
                break
            if not await self._should_continue():
                return []

            scope = dict(self.context.variables)
            scope["iteration"] = iterations
            try:
                keep_going = evaluate_condition(condition, scope, language=node.config.get("language"))
            except ExpressionError as e:
                self._fail_node(node, NodeExecutionError(node.id, str(e)))
                self.context.merge_variables({"loop_iterations": iterations})
                return list(node.next)

            if not keep_going:
                break
            if body is not None:
                await self._run_task(body)
            iterations += 1

        self.context.merge_variables({"loop_iterations": iterations})
        self.context.record_output(node.id, node.type, {"iterations": iterations, "capped": capped})
        self.context.log(
            "info",
            f"Loop '{node.id}' finished after {iterations} iteration(s)" + (" (max iterations reached)" if capped else ""),
            node_id=node.id,
        )
        self._node_processed(node)
        return list(node.next)
