"""
Workflow execution models
"""
import copy
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from enum import Enum
from uuid import uuid4


class RunStatus(Enum):
    """Workflow run status"""
    PENDING = "pending"
    RUNNING = "running"
    SUSPENDED = "suspended"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED)


class StepStatus(Enum):
    """Step status"""
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"
    SUSPENDED = "suspended"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def is_final(self) -> bool:
        return self in (StepStatus.SUCCESS, StepStatus.ERROR, StepStatus.SKIPPED, StepStatus.CANCELLED)

    @property
    def satisfies_dependents(self) -> bool:
        """Dependents may run once a predecessor reaches one of these"""
        return self in (StepStatus.SUCCESS, StepStatus.SKIPPED, StepStatus.ERROR)


class SuspensionState(Enum):
    """Lifecycle of a suspension record"""
    ACTIVE = "active"
    RESUMED = "resumed"
    ABANDONED = "abandoned"


@dataclass
class StepResult:
    """Outcome of one step within a run"""
    step_id: str
    status: StepStatus = StepStatus.PENDING
    output: Dict[str, Any] = field(default_factory=dict)
    error: Optional[Dict[str, Any]] = None
    suspension_metadata: Optional[Dict[str, Any]] = None
    branch: Optional[str] = None
    # skipped because the branch leading to it was not selected
    branch_inactive: bool = False
    attempts: int = 0
    started_at: Optional[float] = None
    finished_at: Optional[float] = None

    @property
    def duration(self) -> Optional[float]:
        if self.started_at is None or self.finished_at is None:
            return None
        return self.finished_at - self.started_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step_id": self.step_id,
            "status": self.status.value,
            "output": self.output,
            "error": self.error,
            "suspension_metadata": self.suspension_metadata,
            "branch": self.branch,
            "branch_inactive": self.branch_inactive,
            "attempts": self.attempts,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StepResult":
        return cls(
            step_id=data["step_id"],
            status=StepStatus(data.get("status", "pending")),
            output=data.get("output") or {},
            error=data.get("error"),
            suspension_metadata=data.get("suspension_metadata"),
            branch=data.get("branch"),
            branch_inactive=data.get("branch_inactive", False),
            attempts=data.get("attempts", 0),
            started_at=data.get("started_at"),
            finished_at=data.get("finished_at"),
        )


@dataclass
class WorkflowContext:
    """
    Run-scoped state: input payload, step results and variables.

    Only the scheduler coroutine that owns the run records results, so step
    tasks can read finalised entries without locking.
    """
    workflow_id: str
    run_id: str = field(default_factory=lambda: uuid4().hex)
    input: Dict[str, Any] = field(default_factory=dict)
    steps: Dict[str, StepResult] = field(default_factory=dict)
    variables: Dict[str, Any] = field(default_factory=dict)
    start_time: float = field(default_factory=time.time)

    def get_result(self, step_id: str) -> Optional[StepResult]:
        return self.steps.get(step_id)

    def status_of(self, step_id: str) -> StepStatus:
        result = self.steps.get(step_id)
        return result.status if result else StepStatus.PENDING

    def output_of(self, step_id: str) -> Dict[str, Any]:
        result = self.steps.get(step_id)
        return result.output if result else {}

    def record(self, result: StepResult) -> None:
        self.steps[result.step_id] = result

    def as_data(self) -> Dict[str, Any]:
        """Plain data view navigated by the variable resolver"""
        return {
            "input": self.input,
            "steps": {step_id: result.to_dict() for step_id, result in self.steps.items()},
            "variables": self.variables,
            "run_id": self.run_id,
            "workflow_id": self.workflow_id,
        }

    def child(self, variables: Dict[str, Any]) -> "WorkflowContext":
        """Context for a nested sub-graph sharing this run's results"""
        return WorkflowContext(
            workflow_id=self.workflow_id,
            run_id=self.run_id,
            input=self.input,
            steps=dict(self.steps),
            variables={**self.variables, **variables},
            start_time=self.start_time,
        )

    def to_dict(self) -> Dict[str, Any]:
        return copy.deepcopy({
            "workflow_id": self.workflow_id,
            "run_id": self.run_id,
            "input": self.input,
            "steps": {step_id: result.to_dict() for step_id, result in self.steps.items()},
            "variables": self.variables,
            "start_time": self.start_time,
        })

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkflowContext":
        data = copy.deepcopy(data)
        return cls(
            workflow_id=data["workflow_id"],
            run_id=data["run_id"],
            input=data.get("input") or {},
            steps={
                step_id: StepResult.from_dict(result)
                for step_id, result in (data.get("steps") or {}).items()
            },
            variables=data.get("variables") or {},
            start_time=data.get("start_time") or time.time(),
        )


@dataclass
class WorkflowResult:
    """
    Terminal (or suspended) outcome of a run.

    ``success`` is true only for completed runs. Failed and cancelled
    results always carry ``error``; a suspended result is not a failure,
    so it has no error and carries ``suspension_id`` instead.
    """
    workflow_id: str
    run_id: str
    status: RunStatus
    output: Dict[str, Any] = field(default_factory=dict)
    error: Optional[Dict[str, Any]] = None
    steps: Dict[str, StepResult] = field(default_factory=dict)
    suspension_id: Optional[str] = None
    errors: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.status == RunStatus.COMPLETED

    @property
    def suspended(self) -> bool:
        return self.status == RunStatus.SUSPENDED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "workflow_id": self.workflow_id,
            "run_id": self.run_id,
            "success": self.success,
            "status": self.status.value,
            "output": self.output,
            "error": self.error,
            "steps": {step_id: result.to_dict() for step_id, result in self.steps.items()},
            "suspension_id": self.suspension_id,
            "errors": self.errors,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkflowResult":
        return cls(
            workflow_id=data["workflow_id"],
            run_id=data["run_id"],
            status=RunStatus(data["status"]),
            output=data.get("output") or {},
            error=data.get("error"),
            steps={
                step_id: StepResult.from_dict(result)
                for step_id, result in (data.get("steps") or {}).items()
            },
            suspension_id=data.get("suspension_id"),
            errors=data.get("errors") or [],
        )


@dataclass
class SuspensionRecord:
    """Durable snapshot of a suspended run"""
    workflow_id: str
    run_id: str
    step_id: str
    context: Dict[str, Any]
    suspension_id: str = field(default_factory=lambda: uuid4().hex)
    metadata: Dict[str, Any] = field(default_factory=dict)
    kind: str = "function"
    events: List[str] = field(default_factory=list)
    resume_after: Optional[float] = None  # epoch seconds, timeout deadline
    state: SuspensionState = SuspensionState.ACTIVE
    version: int = 1
    created_at: float = field(default_factory=time.time)

    @property
    def is_active(self) -> bool:
        return self.state == SuspensionState.ACTIVE

    def summary(self) -> Dict[str, Any]:
        return {
            "suspension_id": self.suspension_id,
            "workflow_id": self.workflow_id,
            "run_id": self.run_id,
            "step_id": self.step_id,
            "kind": self.kind,
            "metadata": self.metadata,
            "events": self.events,
            "resume_after": self.resume_after,
            "created_at": self.created_at,
        }

    def to_dict(self) -> Dict[str, Any]:
        return copy.deepcopy({
            **self.summary(),
            "context": self.context,
            "state": self.state.value,
            "version": self.version,
        })

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SuspensionRecord":
        data = copy.deepcopy(data)
        return cls(
            suspension_id=data["suspension_id"],
            workflow_id=data["workflow_id"],
            run_id=data["run_id"],
            step_id=data["step_id"],
            context=data["context"],
            metadata=data.get("metadata") or {},
            kind=data.get("kind", "function"),
            events=data.get("events") or [],
            resume_after=data.get("resume_after"),
            state=SuspensionState(data.get("state", "active")),
            version=data.get("version", 1),
            created_at=data.get("created_at") or time.time(),
        )


@dataclass
class WorkflowRun:
    """Run history entry"""
    run_id: str
    workflow_id: str
    status: RunStatus = RunStatus.PENDING
    context: Dict[str, Any] = field(default_factory=dict)
    result: Optional[Dict[str, Any]] = None
    suspension_id: Optional[str] = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "workflow_id": self.workflow_id,
            "status": self.status.value,
            "context": self.context,
            "result": self.result,
            "suspension_id": self.suspension_id,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


class WorkflowEventType(Enum):
    """Lifecycle event types"""
    STARTED = "started"
    RESUMED = "resumed"
    STEP_STARTED = "step_started"
    STEP_COMPLETED = "step_completed"
    STEP_FAILED = "step_failed"
    STEP_SKIPPED = "step_skipped"
    STEP_RETRYING = "step_retrying"
    SUSPENDED = "suspended"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (
            WorkflowEventType.SUSPENDED,
            WorkflowEventType.COMPLETED,
            WorkflowEventType.FAILED,
            WorkflowEventType.CANCELLED,
        )


@dataclass
class WorkflowEvent:
    """Lifecycle event emitted while a run progresses"""
    type: WorkflowEventType
    workflow_id: str
    run_id: str
    step_id: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "workflow_id": self.workflow_id,
            "run_id": self.run_id,
            "step_id": self.step_id,
            "data": self.data,
            "timestamp": self.timestamp,
        }
