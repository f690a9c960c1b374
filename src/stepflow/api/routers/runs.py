"""
Run control routes
"""
from fastapi import APIRouter, Depends
import logging

from ..models import SuccessResponse
from ..dependencies import get_workflow_engine, http_error
from ...core.engine import WorkflowEngine
from ...exceptions import WorkflowEngineError


logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/{run_id}/cancel", response_model=SuccessResponse)
async def cancel_run(
    run_id: str,
    engine: WorkflowEngine = Depends(get_workflow_engine)
) -> SuccessResponse:
    """Cancel a running or suspended run"""
    try:
        cancelled = await engine.cancel_run(run_id)
    except WorkflowEngineError as e:
        raise http_error(e)

    if cancelled:
        return SuccessResponse(message=f"Run {run_id} cancelled", data={"cancelled": True})
    return SuccessResponse(
        success=False,
        message=f"Run {run_id} has already finished",
        data={"cancelled": False}
    )
