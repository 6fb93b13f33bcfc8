"""Temporal activities for flow node execution.

Every task node that is not a delay runs as one ``execute_flow_node``
activity, using the same NodeHandlers as local runs. Activities are
class-based so the worker can share one API client (and its connection
pool) across concurrent executions.
"""

from typing import Any, Dict

from temporalio import activity
from temporalio.exceptions import ApplicationError

from flowrunner.constants import EXECUTE_NODE_ACTIVITY
from flowrunner.core.config import Settings
from flowrunner.core.logging import get_logger
from flowrunner.models.flow import FlowNode
from flowrunner.services.api_client import ApiClient
from flowrunner.services.execution.exceptions import NodeExecutionError
from flowrunner.services.execution.handlers import NodeHandlers

logger = get_logger(__name__)


class FlowNodeActivities:
    """Activity implementations bound to a shared API client."""

    def __init__(self, settings: Settings, api_client: ApiClient):
        self.settings = settings
        self.api_client = api_client
        self._sandbox_handlers = NodeHandlers(settings, api_client=None, sandbox=True)
        self._live_handlers = NodeHandlers(settings, api_client=api_client, sandbox=False)

    @activity.defn(name=EXECUTE_NODE_ACTIVITY)
    async def execute_flow_node(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Execute one flow node.

        Args:
            payload: Dict containing:
                - node: FlowNode in wire format
                - variables: current variable bag
                - sandbox: simulate side effects when true

        Returns:
            NodeResult as a dict (``data`` and ``variables``)

        Raises:
            ApplicationError: the node failed; Temporal applies the node's
                retry policy
        """
        node = FlowNode.model_validate(payload["node"])
        variables = payload.get("variables") or {}
        sandbox = payload.get("sandbox", True)

        info = activity.info()
        activity.heartbeat(node.id)
        logger.info(
            "Executing node activity",
            node_id=node.id,
            node_type=node.type,
            sandbox=sandbox,
            workflow_id=info.workflow_id,
            attempt=info.attempt,
        )

        handlers = self._sandbox_handlers if sandbox else self._live_handlers
        try:
            result = await handlers.execute(node, variables)
        except NodeExecutionError as e:
            logger.warning("Node activity failed", node_id=node.id, attempt=info.attempt, error=e.message)
            raise ApplicationError(e.message, type="NodeExecutionError") from e

        return result.to_dict()
