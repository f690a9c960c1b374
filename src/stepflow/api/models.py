"""
API request and response models
"""
from pydantic import BaseModel, Field, ConfigDict
from typing import Optional, List, Dict, Any
from datetime import datetime
from enum import Enum


class RunStatusEnum(str, Enum):
    """Run status (API)"""
    PENDING = "pending"
    RUNNING = "running"
    SUSPENDED = "suspended"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


# Workflows

class WorkflowCreateRequest(BaseModel):
    """Register a workflow from a definition document"""
    definition: Optional[Dict[str, Any]] = Field(None, description="Definition as a JSON object")
    content: Optional[str] = Field(None, description="Definition as YAML or JSON text")


class StepSummary(BaseModel):
    """Declared step"""
    id: str
    name: str
    kind: str
    after: List[str] = Field(default_factory=list)


class WorkflowResponse(BaseModel):
    """Registered workflow"""
    id: str = Field(..., description="Workflow id")
    name: str = Field(..., description="Workflow name")
    version: str = Field(..., description="Version")
    description: Optional[str] = Field(None, description="Description")
    step_count: int = Field(..., description="Number of top-level steps")
    created_at: datetime = Field(..., description="Registration time")
    metadata: Dict[str, Any] = Field(default_factory=dict)


class WorkflowDetailResponse(WorkflowResponse):
    """Registered workflow with its steps and parallel levels"""
    steps: List[StepSummary] = Field(default_factory=list)
    levels: List[List[str]] = Field(default_factory=list, description="Steps that can run together")
    input_schema: Optional[Dict[str, Any]] = None


# Execution

class WorkflowExecuteRequest(BaseModel):
    """Execute a workflow"""
    input: Dict[str, Any] = Field(default_factory=dict, description="Run input")
    timeout: Optional[float] = Field(None, gt=0, description="Run timeout in seconds")
    run_id: Optional[str] = Field(None, description="Caller supplied run id")


class ResumeRequest(BaseModel):
    """Resume a suspended run"""
    data: Dict[str, Any] = Field(default_factory=dict, description="Resume data")
    timeout: Optional[float] = Field(None, gt=0)


class EventRequest(BaseModel):
    """Deliver an event to a waiting run"""
    payload: Dict[str, Any] = Field(default_factory=dict, description="Event payload")
    timeout: Optional[float] = Field(None, gt=0)


class StepResultInfo(BaseModel):
    """Step result"""
    step_id: str
    status: str
    output: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[Dict[str, Any]] = None
    suspension_metadata: Optional[Dict[str, Any]] = None
    branch: Optional[str] = None
    attempts: int = 0
    started_at: Optional[float] = None
    finished_at: Optional[float] = None


class WorkflowResultResponse(BaseModel):
    """Outcome of an execute or resume call"""
    workflow_id: str
    run_id: str
    success: bool
    status: RunStatusEnum
    output: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[Dict[str, Any]] = None
    steps: Dict[str, StepResultInfo] = Field(default_factory=dict)
    suspension_id: Optional[str] = None
    errors: List[Dict[str, Any]] = Field(default_factory=list)


class RunResponse(BaseModel):
    """Run history entry"""
    run_id: str
    workflow_id: str
    status: RunStatusEnum
    suspension_id: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    created_at: float
    updated_at: float

    model_config = ConfigDict(from_attributes=True)


class RunDetailResponse(RunResponse):
    """Run with its full context"""
    context: Dict[str, Any] = Field(default_factory=dict)


class SuspensionResponse(BaseModel):
    """Active suspension"""
    suspension_id: str
    workflow_id: str
    run_id: str
    step_id: str
    kind: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    events: List[str] = Field(default_factory=list)
    resume_after: Optional[float] = None
    created_at: float


# Common

class ErrorResponse(BaseModel):
    """Error body"""
    error: str = Field(..., description="Error code")
    message: str = Field(..., description="Error message")
    timestamp: datetime = Field(default_factory=datetime.utcnow)


class SuccessResponse(BaseModel):
    """Generic success body"""
    success: bool = Field(True)
    message: str = Field(...)
    data: Optional[Dict[str, Any]] = None


class HealthCheckResponse(BaseModel):
    """Health check"""
    status: str = Field(..., examples=["healthy", "unhealthy"])
    version: str
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    checks: Dict[str, bool] = Field(default_factory=dict)
