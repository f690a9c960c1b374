"""
Workflow definition models
"""
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set, Tuple, Type, TYPE_CHECKING
from enum import Enum
from datetime import datetime

if TYPE_CHECKING:
    from .execution import WorkflowContext


class _Missing:
    """Sentinel for "no default supplied" """

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING = _Missing()


class StepKind(Enum):
    """Step kinds understood by the scheduler"""
    AGENT = "agent"
    FUNCTION = "function"
    CONDITIONAL = "conditional"
    LOOP = "loop"
    SUBWORKFLOW = "subworkflow"
    HUMAN = "human"
    WAIT_FOR_EVENT = "wait_for_event"

    @property
    def suspends(self) -> bool:
        """Kinds that always suspend before completing"""
        return self in (StepKind.HUMAN, StepKind.WAIT_FOR_EVENT)


class ErrorHandlingMode(Enum):
    """What happens once a step has failed for good"""
    FAIL_WORKFLOW = "fail_workflow"
    CONTINUE_ON_ERROR = "continue_on_error"
    IGNORE_ERROR = "ignore_error"


class BackoffStrategy(Enum):
    """Retry backoff strategy"""
    CONSTANT = "constant"
    LINEAR = "linear"
    EXPONENTIAL = "exponential"


@dataclass
class VariableRef:
    """Path expression with an optional default and transform"""
    path: str
    default: Any = MISSING
    transform: Optional[Callable[[Any], Any]] = None

    @property
    def has_default(self) -> bool:
        return self.default is not MISSING


def ref(path: str, default: Any = MISSING, transform: Callable[[Any], Any] = None) -> VariableRef:
    """Shorthand for building a VariableRef"""
    return VariableRef(path=path, default=default, transform=transform)


@dataclass
class RetryPolicy:
    """Per-step retry policy"""
    max_attempts: int = 1
    backoff: BackoffStrategy = BackoffStrategy.CONSTANT
    delay: float = 0.0       # seconds
    max_delay: float = 60.0  # seconds
    factor: float = 2.0
    jitter: bool = False
    retry_on: Tuple[Type[BaseException], ...] = (Exception,)
    retryable: Optional[Callable[[BaseException], bool]] = None

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if isinstance(self.backoff, str):
            self.backoff = BackoffStrategy(self.backoff)
        if isinstance(self.retry_on, list):
            self.retry_on = tuple(self.retry_on)

    @classmethod
    def constant(cls, max_attempts: int, delay: float, **kwargs) -> "RetryPolicy":
        return cls(max_attempts=max_attempts, backoff=BackoffStrategy.CONSTANT, delay=delay, **kwargs)

    @classmethod
    def linear(cls, max_attempts: int, delay: float, **kwargs) -> "RetryPolicy":
        return cls(max_attempts=max_attempts, backoff=BackoffStrategy.LINEAR, delay=delay, **kwargs)

    @classmethod
    def exponential(cls, max_attempts: int, delay: float, factor: float = 2.0, **kwargs) -> "RetryPolicy":
        return cls(max_attempts=max_attempts, backoff=BackoffStrategy.EXPONENTIAL, delay=delay,
                   factor=factor, **kwargs)


def _always(context: "WorkflowContext") -> bool:
    return True


@dataclass
class Step:
    """
    Declared unit of work.

    Concrete kinds live in ``stepflow.core.steps``; this base carries the
    attributes every kind shares.
    """
    id: str = ""
    name: str = ""
    description: Optional[str] = None
    after: Set[str] = field(default_factory=set)
    variables: Dict[str, VariableRef] = field(default_factory=dict)
    condition: Callable[["WorkflowContext"], bool] = _always
    retry_policy: Optional[RetryPolicy] = None
    error_handling: ErrorHandlingMode = ErrorHandlingMode.FAIL_WORKFLOW
    timeout: Optional[float] = None  # seconds per attempt
    output_schema: Optional[Dict[str, Any]] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    kind: StepKind = field(init=False, default=StepKind.FUNCTION)

    def __post_init__(self):
        if not self.id:
            raise ValueError("Step id is required")
        if not self.name:
            self.name = self.id
        self.after = set(self.after)
        if isinstance(self.error_handling, str):
            self.error_handling = ErrorHandlingMode(self.error_handling)
        self.variables = {
            key: value if isinstance(value, VariableRef) else VariableRef(path=value)
            for key, value in self.variables.items()
        }

    def branches(self) -> Dict[str, List[str]]:
        """Branch name -> steps activated by that branch"""
        return {}

    def inactive_steps(self, branch: str, successors: Set[str]) -> Set[str]:
        """Steps to skip once ``branch`` has been selected"""
        inactive: Set[str] = set()
        for name, targets in self.branches().items():
            if name != branch:
                inactive.update(targets)
        selected = set(self.branches().get(branch, []))
        return inactive - selected

    def implicit_after(self) -> Dict[str, Set[str]]:
        """Extra edges this step imposes on other steps (target -> sources)"""
        return {
            target: {self.id}
            for targets in self.branches().values()
            for target in targets
        }

    def nested_steps(self) -> List["Step"]:
        """Steps declared inside this step (loop bodies)"""
        return []


@dataclass
class Workflow:
    """Workflow definition"""
    id: str
    name: str = ""
    version: str = "1.0.0"
    description: Optional[str] = None
    steps: List[Step] = field(default_factory=list)
    output: Dict[str, VariableRef] = field(default_factory=dict)
    variables: Dict[str, Any] = field(default_factory=dict)
    input_schema: Optional[Dict[str, Any]] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.utcnow)

    def __post_init__(self):
        if not self.name:
            self.name = self.id
        self.output = {
            key: value if isinstance(value, VariableRef) else VariableRef(path=value)
            for key, value in self.output.items()
        }

    def get_step(self, step_id: str) -> Optional[Step]:
        """Get a top-level step by id"""
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def add_step(self, step: Step) -> "Workflow":
        self.steps.append(step)
        return self

    def all_step_ids(self) -> List[str]:
        """Ids of every step, nested bodies included"""
        ids: List[str] = []
        pending = list(self.steps)
        while pending:
            step = pending.pop(0)
            ids.append(step.id)
            pending.extend(step.nested_steps())
        return ids
