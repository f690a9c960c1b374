"""Core workflow engine components"""

from .engine import WorkflowEngine, ExecutionOptions, open_engine
from .scheduler import Scheduler, ScheduleOutcome
from .parser import WorkflowParser
from .graph import DependencyGraph
from .registry import WorkflowRegistry
from .resolver import VariableResolver
from .suspension import SuspensionManager
from .error_handler import ErrorHandler
from .conditions import compile_condition
from .steps import (
    AgentStep, FunctionStep, ConditionalStep, LoopStep, SubWorkflowStep,
    HumanStep, WaitForEventStep, StepContext, StepOutcome, ResumeSignal
)

__all__ = [
    "WorkflowEngine",
    "ExecutionOptions",
    "open_engine",
    "Scheduler",
    "ScheduleOutcome",
    "WorkflowParser",
    "DependencyGraph",
    "WorkflowRegistry",
    "VariableResolver",
    "SuspensionManager",
    "ErrorHandler",
    "compile_condition",
    "AgentStep",
    "FunctionStep",
    "ConditionalStep",
    "LoopStep",
    "SubWorkflowStep",
    "HumanStep",
    "WaitForEventStep",
    "StepContext",
    "StepOutcome",
    "ResumeSignal"
]
