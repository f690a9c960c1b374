"""
Workflow registration and execution routes
"""
from fastapi import APIRouter, HTTPException, Depends, Query, status
from typing import List, Optional
import logging

from ..models import (
    WorkflowCreateRequest, WorkflowResponse, WorkflowDetailResponse, StepSummary,
    WorkflowExecuteRequest, WorkflowResultResponse, RunResponse, RunDetailResponse,
    RunStatusEnum, SuccessResponse
)
from ..dependencies import get_workflow_engine, http_error
from ...core.engine import ExecutionOptions, WorkflowEngine
from ...exceptions import WorkflowEngineError
from ...models.execution import RunStatus
from ...models.workflow import Workflow


logger = logging.getLogger(__name__)
router = APIRouter()


def _to_response(workflow: Workflow) -> WorkflowResponse:
    return WorkflowResponse(
        id=workflow.id,
        name=workflow.name,
        version=workflow.version,
        description=workflow.description,
        step_count=len(workflow.steps),
        created_at=workflow.created_at,
        metadata=workflow.metadata
    )


def _to_detail(engine: WorkflowEngine, workflow: Workflow) -> WorkflowDetailResponse:
    graph = engine.registry.graph(workflow.id)
    return WorkflowDetailResponse(
        **_to_response(workflow).model_dump(),
        steps=[
            StepSummary(
                id=step.id,
                name=step.name,
                kind=step.kind.value,
                after=sorted(graph.predecessors(step.id))
            )
            for step in workflow.steps
        ],
        levels=graph.parallel_levels(),
        input_schema=workflow.input_schema
    )


@router.post("/", response_model=WorkflowDetailResponse, status_code=status.HTTP_201_CREATED)
async def create_workflow(
    request: WorkflowCreateRequest,
    engine: WorkflowEngine = Depends(get_workflow_engine)
) -> WorkflowDetailResponse:
    """Register a workflow from a definition document"""
    if request.definition is None and not request.content:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "error": "validation_error",
                "message": "Either 'definition' or 'content' is required"
            }
        )

    try:
        if request.definition is not None:
            workflow = engine.parser.parse_dict(request.definition)
        else:
            workflow = engine.parser.parse_string(request.content)
        engine.register_workflow(workflow)
    except WorkflowEngineError as e:
        raise http_error(e)

    logger.info(f"Registered workflow {workflow.id} via API")
    return _to_detail(engine, workflow)


@router.get("/", response_model=List[WorkflowResponse])
async def list_workflows(
    engine: WorkflowEngine = Depends(get_workflow_engine)
) -> List[WorkflowResponse]:
    """List registered workflows"""
    return [_to_response(workflow) for workflow in engine.list_workflows()]


@router.get("/{workflow_id}", response_model=WorkflowDetailResponse)
async def get_workflow(
    workflow_id: str,
    engine: WorkflowEngine = Depends(get_workflow_engine)
) -> WorkflowDetailResponse:
    """Workflow details"""
    try:
        return _to_detail(engine, engine.get_workflow(workflow_id))
    except WorkflowEngineError as e:
        raise http_error(e)


@router.delete("/{workflow_id}", response_model=SuccessResponse)
async def delete_workflow(
    workflow_id: str,
    engine: WorkflowEngine = Depends(get_workflow_engine)
) -> SuccessResponse:
    """Unregister a workflow"""
    if not engine.unregister_workflow(workflow_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={
                "error": "not_found",
                "message": f"Workflow not found: {workflow_id}"
            }
        )
    return SuccessResponse(message=f"Workflow {workflow_id} unregistered")


@router.post("/{workflow_id}/execute", response_model=WorkflowResultResponse)
async def execute_workflow(
    workflow_id: str,
    request: WorkflowExecuteRequest,
    engine: WorkflowEngine = Depends(get_workflow_engine)
) -> WorkflowResultResponse:
    """Run a workflow until it completes, fails or suspends"""
    try:
        result = await engine.execute_workflow(
            workflow_id,
            request.input,
            ExecutionOptions(timeout=request.timeout, run_id=request.run_id)
        )
    except WorkflowEngineError as e:
        raise http_error(e)
    return WorkflowResultResponse(**result.to_dict())


@router.get("/{workflow_id}/runs", response_model=List[RunResponse])
async def list_runs(
    workflow_id: str,
    status: Optional[RunStatusEnum] = Query(None, description="Run status"),
    offset: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=100),
    engine: WorkflowEngine = Depends(get_workflow_engine)
) -> List[RunResponse]:
    """Run history of a workflow"""
    try:
        runs = await engine.get_workflow_runs(
            workflow_id,
            status=RunStatus(status.value) if status else None,
            offset=offset,
            limit=limit
        )
    except WorkflowEngineError as e:
        raise http_error(e)
    return [RunResponse(**run.to_dict()) for run in runs]


@router.get("/{workflow_id}/runs/{run_id}", response_model=RunDetailResponse)
async def get_run(
    workflow_id: str,
    run_id: str,
    engine: WorkflowEngine = Depends(get_workflow_engine)
) -> RunDetailResponse:
    """State of one run"""
    try:
        run = await engine.get_workflow_state(workflow_id, run_id)
    except WorkflowEngineError as e:
        raise http_error(e)
    return RunDetailResponse(**run.to_dict())
