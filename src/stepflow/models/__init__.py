"""Workflow and execution models"""

from .workflow import (
    Workflow, Step, StepKind, VariableRef, RetryPolicy,
    BackoffStrategy, ErrorHandlingMode, MISSING, ref
)
from .execution import (
    WorkflowContext, StepResult, StepStatus, WorkflowResult, RunStatus,
    SuspensionRecord, SuspensionState, WorkflowRun, WorkflowEvent, WorkflowEventType
)

__all__ = [
    "Workflow",
    "Step",
    "StepKind",
    "VariableRef",
    "RetryPolicy",
    "BackoffStrategy",
    "ErrorHandlingMode",
    "MISSING",
    "ref",
    "WorkflowContext",
    "StepResult",
    "StepStatus",
    "WorkflowResult",
    "RunStatus",
    "SuspensionRecord",
    "SuspensionState",
    "WorkflowRun",
    "WorkflowEvent",
    "WorkflowEventType"
]
