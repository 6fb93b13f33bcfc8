"""Shared fixtures and fakes for flowrunner tests.

Provides:
- Settings pinned for tests (no .env influence on the values under test)
- FakeApiClient: records calls, returns queued ApiCallResults
- FakeTemporalClient: in-memory durable runtime adapter
- FakeDatabase: captures execution records
- Recording no-op sleep
"""

from typing import Any, Dict, List, Optional

import pytest

from flowrunner.core.config import Settings
from flowrunner.models.flow import FlowDefinition
from flowrunner.services.api_client import ApiCallResult
from flowrunner.services.execution.exceptions import RuntimeConnectivityError


def make_flow(nodes: List[Dict[str, Any]], entry: str = "a", flow_id: str = "flow-1",
              **extra) -> FlowDefinition:
    """Build a flow from wire-format node dicts."""
    return FlowDefinition.model_validate({
        "id": flow_id,
        "name": extra.pop("name", "Test flow"),
        "entry": entry,
        "nodes": nodes,
        **extra,
    })


class RecordingSleep:
    """Async sleep replacement that returns immediately and records durations."""

    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class FakeApiClient:
    """Stands in for ApiClient; every call is recorded."""

    def __init__(self, results: Optional[List[ApiCallResult]] = None,
                 default: Optional[ApiCallResult] = None):
        self.calls: List[Dict[str, Any]] = []
        self._results = list(results or [])
        self._default = default or ApiCallResult(success=True, status=200, data={"ok": True})

    async def execute_api_call(self, method: str, url: str, **kwargs) -> ApiCallResult:
        self.calls.append({"method": method, "url": url, **kwargs})
        if self._results:
            return self._results.pop(0)
        return self._default


class FakeTemporalClient:
    """In-memory stand-in for TemporalClientWrapper."""

    def __init__(self, connected: bool = True, result: Optional[Dict[str, Any]] = None,
                 start_error: Optional[Exception] = None):
        self.is_connected = connected
        self.result = result or {"status": "completed", "result": {"status": "completed"}, "error": None}
        self.start_error = start_error
        self.started: List[Dict[str, Any]] = []
        self.result_requests: List[str] = []
        self.signals: List[Dict[str, Any]] = []
        self.queries: List[Dict[str, Any]] = []
        self.cancelled: List[str] = []
        self.terminated: List[Dict[str, Any]] = []

    def _check(self) -> None:
        if not self.is_connected:
            raise RuntimeConnectivityError("Temporal client is not connected")

    async def start_workflow(self, workflow_id: str, task_queue: str, workflow_type: str,
                             args: List[Any], **kwargs) -> Dict[str, Optional[str]]:
        self._check()
        if self.start_error is not None:
            raise self.start_error
        self.started.append({
            "workflow_id": workflow_id,
            "task_queue": task_queue,
            "workflow_type": workflow_type,
            "args": args,
            **kwargs,
        })
        return {"workflowId": workflow_id, "runId": "run-1"}

    async def get_workflow_result(self, workflow_id: str, run_id: Optional[str] = None) -> Dict[str, Any]:
        self._check()
        self.result_requests.append(workflow_id)
        return self.result

    async def describe_workflow(self, workflow_id: str, run_id: Optional[str] = None) -> Dict[str, Any]:
        self._check()
        return {"workflowId": workflow_id, "runId": "run-1", "status": "running"}

    async def signal_workflow(self, workflow_id: str, signal_name: str,
                              args: Optional[List[Any]] = None) -> None:
        self._check()
        self.signals.append({"workflow_id": workflow_id, "signal": signal_name, "args": args or []})

    async def query_workflow(self, workflow_id: str, query_name: str,
                             args: Optional[List[Any]] = None) -> Any:
        self._check()
        self.queries.append({"workflow_id": workflow_id, "query": query_name})
        return "running" if query_name == "getStatus" else {}

    async def cancel_workflow(self, workflow_id: str, run_id: Optional[str] = None) -> None:
        self._check()
        self.cancelled.append(workflow_id)

    async def terminate_workflow(self, workflow_id: str, reason: Optional[str] = None,
                                 run_id: Optional[str] = None) -> None:
        self._check()
        self.terminated.append({"workflow_id": workflow_id, "reason": reason})

    async def list_workflows(self, query: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        self._check()
        return [{"workflowId": "flow-1-1", "status": "running"}]


class FakeDatabase:
    """Captures execution records instead of writing them."""

    def __init__(self):
        self.records: Dict[str, Dict[str, Any]] = {}

    async def save_execution_record(self, record_id: str, **kwargs) -> bool:
        self.records[record_id] = {"id": record_id, **kwargs}
        return True

    async def get_execution_record(self, record_id: str):
        return None

    async def list_execution_records(self, flow_id: Optional[str] = None, limit: int = 100):
        return []


@pytest.fixture
def settings() -> Settings:
    return Settings(
        database_url="sqlite+aiosqlite:///:memory:",
        execution_records_enabled=False,
        temporal_enabled=False,
        temporal_worker_enabled=False,
        scheduler_enabled=False,
        reject_cycles=False,
        abort_on_node_failure=False,
        api_base_url="http://engine.test",
        api_max_retries=2,
        api_retry_delay=0.5,
        sandbox_max_delay_ms=1000,
        durable_fallback_mode="sandbox",
        durable_fallback_on_failure=True,
        log_format="console",
    )


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def api_client() -> FakeApiClient:
    return FakeApiClient()
