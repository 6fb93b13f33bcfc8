"""Temporal client wrapper for flowrunner.

Manages the Temporal client connection lifecycle and exposes the
durable-runtime adapter used by the flow runner and the durable control
routes. RPC failures surface as RuntimeConnectivityError.
"""

from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

from temporalio.client import Client, TLSConfig, WorkflowExecutionStatus, WorkflowFailureError, WorkflowHandle
from temporalio.common import SearchAttributeKey, SearchAttributePair, TypedSearchAttributes
from temporalio.exceptions import CancelledError, FailureError, TerminatedError, TimeoutError as TemporalTimeoutError
from temporalio.service import RPCError

from flowrunner.core.config import Settings
from flowrunner.core.logging import get_logger
from flowrunner.services.execution.exceptions import RuntimeConnectivityError

logger = get_logger(__name__)

STATUS_MAP = {
    WorkflowExecutionStatus.RUNNING: "running",
    WorkflowExecutionStatus.COMPLETED: "completed",
    WorkflowExecutionStatus.FAILED: "failed",
    WorkflowExecutionStatus.CANCELED: "cancelled",
    WorkflowExecutionStatus.TERMINATED: "terminated",
    WorkflowExecutionStatus.CONTINUED_AS_NEW: "continued_as_new",
    WorkflowExecutionStatus.TIMED_OUT: "timed_out",
}


def map_status(status: Optional[WorkflowExecutionStatus]) -> str:
    """Map a Temporal execution status to the engine's status names."""
    if status is None:
        return "unknown"
    return STATUS_MAP.get(status, "unknown")


def _failure_status(error: WorkflowFailureError) -> str:
    cause = error.cause
    if isinstance(cause, CancelledError):
        return "cancelled"
    if isinstance(cause, TerminatedError):
        return "terminated"
    if isinstance(cause, TemporalTimeoutError):
        return "timed_out"
    return "failed"


class TemporalClientWrapper:
    """Wrapper around Temporal client for lifecycle management."""

    def __init__(self, settings: Settings):
        """Initialize the client wrapper.

        Args:
            settings: Application settings (server address, namespace,
                identity, optional mTLS paths)
        """
        self.settings = settings
        self.server_address = settings.temporal_server_address
        self.namespace = settings.temporal_namespace
        self._client: Optional[Client] = None

    @property
    def client(self) -> Optional[Client]:
        """Get the underlying Temporal client."""
        return self._client

    @property
    def is_connected(self) -> bool:
        """Check if client is connected."""
        return self._client is not None

    def _tls_config(self) -> Optional[TLSConfig]:
        if not self.settings.temporal_tls_configured:
            return None
        ca_path = self.settings.temporal_server_root_ca_cert_path
        return TLSConfig(
            client_cert=Path(self.settings.temporal_client_cert_path).read_bytes(),
            client_private_key=Path(self.settings.temporal_client_key_path).read_bytes(),
            server_root_ca_cert=Path(ca_path).read_bytes() if ca_path else None,
        )

    async def connect(self) -> Client:
        """Connect to the Temporal server.

        Returns:
            The connected Temporal client

        Raises:
            RuntimeConnectivityError: the server is unreachable or the TLS
                material cannot be read
        """
        if self._client is not None:
            return self._client

        logger.info(
            "Connecting to Temporal server",
            server_address=self.server_address,
            namespace=self.namespace,
            tls=self.settings.temporal_tls_configured,
        )

        try:
            tls = self._tls_config()
            self._client = await Client.connect(
                self.server_address,
                namespace=self.namespace,
                identity=self.settings.temporal_identity,
                tls=tls if tls is not None else False,
            )
        except (RuntimeError, RPCError, OSError) as e:
            logger.warning("Temporal connection failed", server_address=self.server_address, error=str(e))
            raise RuntimeConnectivityError(f"Cannot connect to Temporal at {self.server_address}: {e}") from e

        logger.info("Connected to Temporal server")
        return self._client

    async def disconnect(self) -> None:
        """Disconnect from the Temporal server."""
        if self._client is not None:
            # Temporal client has no explicit close method; drop the reference
            self._client = None
            logger.info("Disconnected from Temporal server")

    def _require_client(self) -> Client:
        if self._client is None:
            raise RuntimeConnectivityError("Temporal client is not connected")
        return self._client

    def _handle(self, workflow_id: str, run_id: Optional[str] = None) -> WorkflowHandle:
        return self._require_client().get_workflow_handle(workflow_id, run_id=run_id)

    # =========================================================================
    # Workflow adapter
    # =========================================================================

    async def start_workflow(
        self,
        workflow_id: str,
        task_queue: str,
        workflow_type: str,
        args: List[Any],
        execution_timeout: Optional[timedelta] = None,
        search_attributes: Optional[Dict[str, str]] = None,
        memo: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Optional[str]]:
        """Start a workflow execution.

        Returns:
            Dict with ``workflowId`` and ``runId``
        """
        client = self._require_client()
        typed_attributes = None
        if search_attributes:
            typed_attributes = TypedSearchAttributes([
                SearchAttributePair(SearchAttributeKey.for_keyword(key), str(value))
                for key, value in search_attributes.items()
            ])

        try:
            handle = await client.start_workflow(
                workflow_type,
                args=args,
                id=workflow_id,
                task_queue=task_queue,
                execution_timeout=execution_timeout,
                search_attributes=typed_attributes,
                memo=memo,
            )
        except (RPCError, FailureError) as e:
            # FailureError covers WorkflowAlreadyStartedError on a reused workflow id
            logger.error("Failed to start workflow", workflow_id=workflow_id, error=str(e))
            raise RuntimeConnectivityError(f"Failed to start workflow {workflow_id}: {e}") from e

        run_id = handle.result_run_id or handle.first_execution_run_id
        logger.info("Workflow started", workflow_id=workflow_id, run_id=run_id, task_queue=task_queue)
        return {"workflowId": handle.id, "runId": run_id}

    async def describe_workflow(self, workflow_id: str, run_id: Optional[str] = None) -> Dict[str, Any]:
        try:
            description = await self._handle(workflow_id, run_id).describe()
        except RPCError as e:
            raise RuntimeConnectivityError(f"Failed to describe workflow {workflow_id}: {e}") from e

        return {
            "workflowId": description.id,
            "runId": description.run_id,
            "workflowType": description.workflow_type,
            "taskQueue": description.task_queue,
            "status": map_status(description.status),
            "startTime": description.start_time.isoformat() if description.start_time else None,
            "closeTime": description.close_time.isoformat() if description.close_time else None,
        }

    async def get_workflow_result(self, workflow_id: str, run_id: Optional[str] = None) -> Dict[str, Any]:
        """Wait for a workflow to close.

        Returns:
            Dict with ``status`` (engine status name), ``result`` and ``error``
        """
        handle = self._handle(workflow_id, run_id)
        try:
            result = await handle.result()
            return {"status": "completed", "result": result, "error": None}
        except WorkflowFailureError as e:
            status = _failure_status(e)
            message = str(e.cause) if e.cause is not None else str(e)
            logger.warning("Workflow did not complete", workflow_id=workflow_id, status=status, error=message)
            return {"status": status, "result": None, "error": message}
        except RPCError as e:
            raise RuntimeConnectivityError(f"Failed to get result of workflow {workflow_id}: {e}") from e

    async def cancel_workflow(self, workflow_id: str, run_id: Optional[str] = None) -> None:
        try:
            await self._handle(workflow_id, run_id).cancel()
        except RPCError as e:
            raise RuntimeConnectivityError(f"Failed to cancel workflow {workflow_id}: {e}") from e
        logger.info("Workflow cancel requested", workflow_id=workflow_id)

    async def terminate_workflow(self, workflow_id: str, reason: Optional[str] = None,
                                 run_id: Optional[str] = None) -> None:
        try:
            await self._handle(workflow_id, run_id).terminate(reason=reason)
        except RPCError as e:
            raise RuntimeConnectivityError(f"Failed to terminate workflow {workflow_id}: {e}") from e
        logger.info("Workflow terminated", workflow_id=workflow_id, reason=reason)

    async def signal_workflow(self, workflow_id: str, signal_name: str, args: Optional[List[Any]] = None) -> None:
        try:
            await self._handle(workflow_id).signal(signal_name, args=args or [])
        except RPCError as e:
            raise RuntimeConnectivityError(f"Failed to signal workflow {workflow_id}: {e}") from e
        logger.info("Workflow signalled", workflow_id=workflow_id, signal=signal_name)

    async def query_workflow(self, workflow_id: str, query_name: str, args: Optional[List[Any]] = None) -> Any:
        try:
            return await self._handle(workflow_id).query(query_name, args=args or [])
        except RPCError as e:
            raise RuntimeConnectivityError(f"Failed to query workflow {workflow_id}: {e}") from e

    async def list_workflows(self, query: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        client = self._require_client()
        executions: List[Dict[str, Any]] = []
        try:
            async for execution in client.list_workflows(query):
                executions.append({
                    "workflowId": execution.id,
                    "runId": execution.run_id,
                    "workflowType": execution.workflow_type,
                    "status": map_status(execution.status),
                    "startTime": execution.start_time.isoformat() if execution.start_time else None,
                    "closeTime": execution.close_time.isoformat() if execution.close_time else None,
                })
                if len(executions) >= limit:
                    break
        except RPCError as e:
            raise RuntimeConnectivityError(f"Failed to list workflows: {e}") from e
        return executions
