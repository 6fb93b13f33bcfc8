"""Flow execution routes."""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from flowrunner.core.container import container
from flowrunner.core.database import Database
from flowrunner.core.logging import get_logger
from flowrunner.models.flow import (
    ExecutionOptions,
    ExecutionResult,
    FlowDefinition,
    FlowRunRequest,
    ScheduleFlowRequest,
    ValidationReport,
)
from flowrunner.services.execution.exceptions import FlowValidationError
from flowrunner.services.flow_runner import FlowRunnerService
from flowrunner.services.scheduler import FlowScheduler

logger = get_logger(__name__)
router = APIRouter(prefix="/flows", tags=["flows"])


@router.post("/run", response_model=ExecutionResult)
async def run_flow(
    request: FlowRunRequest,
    runner: FlowRunnerService = Depends(lambda: container.flow_runner())
):
    """Run a flow in sandbox mode (no external side effects)."""
    return await runner.run_sandbox(request.flow, request.options)


@router.post("/run-live", response_model=ExecutionResult)
async def run_flow_live(
    request: FlowRunRequest,
    temporal: bool = Query(default=False, description="Execute durably through Temporal"),
    runner: FlowRunnerService = Depends(lambda: container.flow_runner())
):
    """Run a flow with real side effects, optionally as a durable workflow."""
    options = request.options or ExecutionOptions()
    if temporal:
        options = options.model_copy(update={"temporal_enabled": True})
    return await runner.run_live(request.flow, options)


@router.post("/run-temporal", response_model=ExecutionResult)
async def run_flow_temporal(
    request: FlowRunRequest,
    runner: FlowRunnerService = Depends(lambda: container.flow_runner())
):
    """Run a flow as a durable Temporal workflow with real side effects.

    Falls back to local execution when Temporal is unavailable.
    """
    options = (request.options or ExecutionOptions()).model_copy(update={"sandbox": False, "temporal_enabled": True})
    return await runner.run_durable(request.flow, options)


@router.post("/validate", response_model=ValidationReport)
async def validate_flow(
    flow: FlowDefinition,
    runner: FlowRunnerService = Depends(lambda: container.flow_runner())
):
    """Validate a flow definition without running it."""
    return runner.validate(flow)


# ============================================================================
# Schedules
# ============================================================================

@router.post("/schedules")
async def create_schedule(
    request: ScheduleFlowRequest,
    runner: FlowRunnerService = Depends(lambda: container.flow_runner()),
    scheduler: FlowScheduler = Depends(lambda: container.flow_scheduler())
):
    """Register a flow to be re-run on its cron/interval schedule."""
    report = runner.validate(request.flow)
    if not report.is_valid:
        raise FlowValidationError(report.errors, report.warnings)

    try:
        job = scheduler.schedule_flow(request.flow, request.options, cron=request.cron,
                                      interval_ms=request.interval_ms)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return {"success": True, "schedule": job}


@router.get("/schedules")
async def list_schedules(
    scheduler: FlowScheduler = Depends(lambda: container.flow_scheduler())
):
    return {"success": True, "schedules": scheduler.list_jobs()}


@router.delete("/schedules/{flow_id}")
async def delete_schedule(
    flow_id: str,
    scheduler: FlowScheduler = Depends(lambda: container.flow_scheduler())
):
    if not scheduler.unschedule_flow(flow_id):
        raise HTTPException(status_code=404, detail=f"No schedule registered for flow '{flow_id}'")
    return {"success": True, "flowId": flow_id}


# ============================================================================
# Execution records
# ============================================================================

@router.get("/executions")
async def list_executions(
    flow_id: Optional[str] = Query(default=None, alias="flowId"),
    limit: int = Query(default=100, ge=1, le=1000),
    database: Database = Depends(lambda: container.database())
) -> Dict[str, Any]:
    records = await database.list_execution_records(flow_id=flow_id, limit=limit)
    executions: List[Dict[str, Any]] = [record.to_dict() for record in records]
    return {"success": True, "executions": executions, "count": len(executions)}


@router.get("/executions/{execution_id}")
async def get_execution(
    execution_id: str,
    database: Database = Depends(lambda: container.database())
):
    record = await database.get_execution_record(execution_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Execution '{execution_id}' not found")
    return {"success": True, "execution": record.to_dict()}
