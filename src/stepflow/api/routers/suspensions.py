"""
Suspension routes
"""
from fastapi import APIRouter, Depends
from typing import List
import logging

from ..models import SuspensionResponse, ResumeRequest, EventRequest, WorkflowResultResponse
from ..dependencies import get_workflow_engine, http_error
from ...core.engine import ExecutionOptions, WorkflowEngine
from ...exceptions import WorkflowEngineError


logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/", response_model=List[SuspensionResponse])
async def list_suspensions(
    engine: WorkflowEngine = Depends(get_workflow_engine)
) -> List[SuspensionResponse]:
    """Active suspensions across all runs"""
    return [SuspensionResponse(**summary) for summary in await engine.get_suspended_workflows()]


@router.get("/{suspension_id}", response_model=SuspensionResponse)
async def get_suspension(
    suspension_id: str,
    engine: WorkflowEngine = Depends(get_workflow_engine)
) -> SuspensionResponse:
    try:
        record = await engine.suspensions.get_active(suspension_id)
    except WorkflowEngineError as e:
        raise http_error(e)
    return SuspensionResponse(**record.summary())


@router.post("/{suspension_id}/resume", response_model=WorkflowResultResponse)
async def resume(
    suspension_id: str,
    request: ResumeRequest,
    engine: WorkflowEngine = Depends(get_workflow_engine)
) -> WorkflowResultResponse:
    """Resume a suspended run with data"""
    try:
        result = await engine.resume_workflow(
            suspension_id, request.data, ExecutionOptions(timeout=request.timeout)
        )
    except WorkflowEngineError as e:
        raise http_error(e)
    return WorkflowResultResponse(**result.to_dict())


@router.post("/{suspension_id}/events/{event_name}", response_model=WorkflowResultResponse)
async def deliver_event(
    suspension_id: str,
    event_name: str,
    request: EventRequest,
    engine: WorkflowEngine = Depends(get_workflow_engine)
) -> WorkflowResultResponse:
    """Deliver an event to a run waiting for it"""
    try:
        result = await engine.resume_workflow_with_event(
            suspension_id, event_name, request.payload, ExecutionOptions(timeout=request.timeout)
        )
    except WorkflowEngineError as e:
        raise http_error(e)
    return WorkflowResultResponse(**result.to_dict())
