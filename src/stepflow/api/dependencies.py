"""
FastAPI dependencies and error mapping
"""
from fastapi import HTTPException, status
from typing import Any, Dict
import logging

from ..core.engine import WorkflowEngine
from ..exceptions import (
    DuplicateResumeError, UnknownEventError, UnknownSuspensionError,
    WorkflowEngineError, WorkflowNotFoundError, WorkflowParseError, WorkflowValidationError
)


logger = logging.getLogger(__name__)

# Populated by the application lifespan
app_state: Dict[str, Any] = {}


def get_app_state() -> Dict[str, Any]:
    return app_state


def get_workflow_engine() -> WorkflowEngine:
    """Engine created by the application lifespan"""
    engine = get_app_state().get("engine")

    if not engine:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "error": "service_unavailable",
                "message": "Workflow engine not initialized"
            }
        )

    return engine


_STATUS_CODES = (
    (WorkflowNotFoundError, status.HTTP_404_NOT_FOUND, "not_found"),
    (UnknownSuspensionError, status.HTTP_404_NOT_FOUND, "unknown_suspension"),
    (DuplicateResumeError, status.HTTP_409_CONFLICT, "duplicate_resume"),
    (UnknownEventError, status.HTTP_400_BAD_REQUEST, "unknown_event"),
    (WorkflowParseError, status.HTTP_400_BAD_REQUEST, "parse_error"),
    (WorkflowValidationError, status.HTTP_400_BAD_REQUEST, "validation_error"),
)


def http_error(error: WorkflowEngineError) -> HTTPException:
    """Map an engine error to an HTTP error"""
    for error_type, status_code, code in _STATUS_CODES:
        if isinstance(error, error_type):
            return HTTPException(
                status_code=status_code,
                detail={"error": code, "message": str(error)}
            )

    logger.error(f"Engine error: {error}", exc_info=True)
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={"error": "engine_error", "message": str(error)}
    )
