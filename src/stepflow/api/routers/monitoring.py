"""
Health check route
"""
from fastapi import APIRouter, Depends
from datetime import datetime
import logging

from ..models import HealthCheckResponse
from ..dependencies import get_workflow_engine
from ... import __version__
from ...core.engine import WorkflowEngine


logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/health", response_model=HealthCheckResponse)
async def health_check(
    engine: WorkflowEngine = Depends(get_workflow_engine)
) -> HealthCheckResponse:
    checks = {}

    try:
        await engine.suspensions.list_active()
        checks["suspension_store"] = True
    except Exception as e:
        logger.error(f"Suspension store health check failed: {e}")
        checks["suspension_store"] = False

    try:
        await engine.runs.list_by_workflow("__health__", limit=1)
        checks["run_repository"] = True
    except Exception as e:
        logger.error(f"Run repository health check failed: {e}")
        checks["run_repository"] = False

    if engine.agent_runtime is not None:
        try:
            await engine.agent_runtime.list_agents()
            checks["agent_runtime"] = True
        except Exception:
            checks["agent_runtime"] = False

    return HealthCheckResponse(
        status="healthy" if all(checks.values()) else "unhealthy",
        version=__version__,
        timestamp=datetime.utcnow(),
        checks=checks
    )
