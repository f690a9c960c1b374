"""
Stepflow - workflow execution engine for multi-step agent pipelines
"""

__version__ = "0.1.0"

from .core.engine import WorkflowEngine, ExecutionOptions
from .core.parser import WorkflowParser
from .core.steps import (
    AgentStep, FunctionStep, ConditionalStep, LoopStep, SubWorkflowStep,
    HumanStep, WaitForEventStep, StepContext, StepOutcome, ResumeSignal
)
from .models.workflow import Workflow, RetryPolicy, ErrorHandlingMode, BackoffStrategy, ref
from .models.execution import WorkflowContext, WorkflowResult, RunStatus, StepStatus

__all__ = [
    "WorkflowEngine",
    "ExecutionOptions",
    "open_engine",
    "WorkflowParser",
    "AgentStep",
    "FunctionStep",
    "ConditionalStep",
    "LoopStep",
    "SubWorkflowStep",
    "HumanStep",
    "WaitForEventStep",
    "StepContext",
    "StepOutcome",
    "ResumeSignal",
    "Workflow",
    "RetryPolicy",
    "ErrorHandlingMode",
    "BackoffStrategy",
    "ref",
    "WorkflowContext",
    "WorkflowResult",
    "RunStatus",
    "StepStatus"
]
