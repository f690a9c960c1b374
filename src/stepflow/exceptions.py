"""
Workflow engine exceptions
"""
from typing import Any, Dict, List, Optional


class WorkflowEngineError(Exception):
    """Base class for engine errors"""
    pass


class WorkflowParseError(WorkflowEngineError):
    """Definition document could not be parsed"""
    pass


class WorkflowValidationError(WorkflowEngineError):
    """Definition or input failed validation"""
    pass


class CyclicDependencyError(WorkflowValidationError):
    """Step `after` edges contain a cycle"""
    def __init__(self, cycle: List[str]):
        self.cycle = cycle
        super().__init__(f"Cyclic dependency detected: {' -> '.join(cycle)}")


class WorkflowNotFoundError(WorkflowEngineError):
    """Workflow or run is not known to the engine"""
    pass


class MissingVariableError(WorkflowEngineError):
    """Variable path did not resolve and no default was given"""
    def __init__(self, path: str, message: str = None):
        self.path = path
        msg = f"Missing variable '{path}'"
        if message:
            msg += f": {message}"
        super().__init__(msg)


class StepExecutionError(WorkflowEngineError):
    """Step execution failed"""
    def __init__(self, step_id: str, message: str, cause: Exception = None):
        self.step_id = step_id
        self.cause = cause
        super().__init__(f"Step '{step_id}' execution failed: {message}")


class StepTimeoutError(StepExecutionError):
    """A single step attempt exceeded its timeout"""
    def __init__(self, step_id: str, timeout: float):
        self.timeout = timeout
        super().__init__(step_id, f"timed out after {timeout}s")


class SuspensionTimeoutError(StepExecutionError):
    """Human or wait-for-event step was not resumed in time"""
    def __init__(self, step_id: str, timeout_ms: int):
        self.timeout_ms = timeout_ms
        super().__init__(step_id, f"no resume received within {timeout_ms}ms")


class UnknownSuspensionError(WorkflowEngineError):
    """Suspension id does not exist or was abandoned"""
    def __init__(self, suspension_id: str):
        self.suspension_id = suspension_id
        super().__init__(f"Unknown suspension: {suspension_id}")


class DuplicateResumeError(WorkflowEngineError):
    """Suspension was already resumed"""
    def __init__(self, suspension_id: str):
        self.suspension_id = suspension_id
        super().__init__(f"Suspension {suspension_id} has already been resumed")


class UnknownEventError(WorkflowEngineError):
    """Event name is not awaited by the suspended step"""
    def __init__(self, suspension_id: str, event_name: str, expected: Optional[List[str]] = None):
        self.suspension_id = suspension_id
        self.event_name = event_name
        self.expected = expected or []
        msg = f"Suspension {suspension_id} does not wait for event '{event_name}'"
        if self.expected:
            msg += f" (expected one of: {', '.join(self.expected)})"
        super().__init__(msg)


class WorkflowTimeoutError(WorkflowEngineError):
    """Run exceeded its overall timeout"""
    pass


class WorkflowCancelledError(WorkflowEngineError):
    """Run was cancelled"""
    pass


class StorageError(WorkflowEngineError):
    """Persistence backend failure"""
    pass


class AgentNotFoundError(WorkflowEngineError):
    """Agent id is not registered with the runtime"""
    def __init__(self, agent_id: str):
        self.agent_id = agent_id
        super().__init__(f"Agent not found: {agent_id}")


class AgentExecutionError(WorkflowEngineError):
    """Agent invocation failed"""
    def __init__(self, agent_id: str, message: str, cause: Exception = None):
        self.agent_id = agent_id
        self.cause = cause
        super().__init__(f"Agent '{agent_id}' failed: {message}")


def error_to_dict(error: BaseException) -> Dict[str, Any]:
    """Serialisable error summary stored on step results"""
    info: Dict[str, Any] = {
        "type": type(error).__name__,
        "message": str(error),
    }
    step_id = getattr(error, "step_id", None)
    if step_id:
        info["step_id"] = step_id
    path = getattr(error, "path", None)
    if path:
        info["path"] = path
    return info
