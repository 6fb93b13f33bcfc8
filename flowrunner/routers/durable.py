"""Durable workflow control routes (describe, signal, query, cancel, terminate)."""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from flowrunner.constants import DURABLE_QUERIES, DURABLE_SIGNALS, SIGNAL_UPDATE_VARIABLES
from flowrunner.core.container import container
from flowrunner.core.logging import get_logger
from flowrunner.services.temporal.client import TemporalClientWrapper

logger = get_logger(__name__)
router = APIRouter(prefix="/flows/durable", tags=["durable"])


class SignalRequest(BaseModel):
    variables: Optional[Dict[str, Any]] = None


class TerminateRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


def get_connected_client() -> TemporalClientWrapper:
    client = container.temporal_client()
    if not client.is_connected:
        raise HTTPException(status_code=503, detail="Temporal is not connected")
    return client


@router.get("")
async def list_workflows(
    query: Optional[str] = Query(default=None, description="Temporal visibility query"),
    limit: int = Query(default=100, ge=1, le=1000),
    client: TemporalClientWrapper = Depends(get_connected_client)
):
    workflows = await client.list_workflows(query, limit=limit)
    return {"success": True, "workflows": workflows}


@router.get("/{workflow_id}")
async def describe_workflow(
    workflow_id: str,
    client: TemporalClientWrapper = Depends(get_connected_client)
):
    return {"success": True, "workflow": await client.describe_workflow(workflow_id)}


@router.get("/{workflow_id}/result")
async def get_workflow_result(
    workflow_id: str,
    run_id: Optional[str] = Query(default=None, alias="runId"),
    client: TemporalClientWrapper = Depends(get_connected_client)
):
    """Wait for the workflow to close and return its status and payload."""
    return {"success": True, **(await client.get_workflow_result(workflow_id, run_id))}


@router.post("/{workflow_id}/signals/{signal_name}")
async def signal_workflow(
    workflow_id: str,
    signal_name: str,
    request: Optional[SignalRequest] = None,
    client: TemporalClientWrapper = Depends(get_connected_client)
):
    if signal_name not in DURABLE_SIGNALS:
        raise HTTPException(status_code=400, detail=f"Unknown signal '{signal_name}'")

    args = []
    if signal_name == SIGNAL_UPDATE_VARIABLES:
        if request is None or not request.variables:
            raise HTTPException(status_code=400, detail="updateVariables requires a non-empty 'variables' object")
        args = [request.variables]

    await client.signal_workflow(workflow_id, signal_name, args)
    return {"success": True, "workflowId": workflow_id, "signal": signal_name}


@router.get("/{workflow_id}/queries/{query_name}")
async def query_workflow(
    workflow_id: str,
    query_name: str,
    client: TemporalClientWrapper = Depends(get_connected_client)
):
    if query_name not in DURABLE_QUERIES:
        raise HTTPException(status_code=400, detail=f"Unknown query '{query_name}'")

    result = await client.query_workflow(workflow_id, query_name)
    return {"success": True, "workflowId": workflow_id, "query": query_name, "result": result}


@router.post("/{workflow_id}/cancel")
async def cancel_workflow(
    workflow_id: str,
    client: TemporalClientWrapper = Depends(get_connected_client)
):
    await client.cancel_workflow(workflow_id)
    return {"success": True, "workflowId": workflow_id}


@router.post("/{workflow_id}/terminate")
async def terminate_workflow(
    workflow_id: str,
    request: Optional[TerminateRequest] = None,
    client: TemporalClientWrapper = Depends(get_connected_client)
):
    reason = request.reason if request else None
    await client.terminate_workflow(workflow_id, reason=reason)
    logger.info("Workflow terminated via API", workflow_id=workflow_id, reason=reason)
    return {"success": True, "workflowId": workflow_id}
