"""
Step kinds

Every kind implements the same two-phase contract:

* ``prepare(step_ctx)`` runs when the step is dispatched and returns a
  StepOutcome. Returning ``step_ctx.suspend(...)`` pauses the run.
* ``continue_after_resume(step_ctx, signal)`` runs when a suspended step is
  resumed, possibly in another process, and returns a StepOutcome.
"""
import inspect
import logging
import time
from dataclasses import dataclass, field
from typing import (
    Any, Callable, Dict, List, Optional, Set, Union, TYPE_CHECKING
)

from ..exceptions import (
    StepExecutionError, SuspensionTimeoutError, WorkflowValidationError
)
from ..models.workflow import Step, StepKind, VariableRef
from ..models.execution import WorkflowContext
from .conditions import compile_condition
from .resolver import VariableResolver

if TYPE_CHECKING:
    from .engine import WorkflowEngine


logger = logging.getLogger(__name__)

Predicate = Callable[[WorkflowContext], bool]


@dataclass
class SuspendRequest:
    """Request to pause the run at the current step"""
    metadata: Dict[str, Any] = field(default_factory=dict)
    partial_output: Dict[str, Any] = field(default_factory=dict)
    events: List[str] = field(default_factory=list)
    timeout_ms: Optional[int] = None

    def to_metadata(self) -> Dict[str, Any]:
        """Metadata stored on the suspended StepResult"""
        metadata = dict(self.metadata)
        if self.events:
            metadata["events"] = list(self.events)
        if self.timeout_ms is not None:
            metadata["timeout_ms"] = self.timeout_ms
            metadata["resume_after"] = time.time() + self.timeout_ms / 1000.0
        return metadata


@dataclass
class StepOutcome:
    """Result of one phase of a step"""
    output: Dict[str, Any] = field(default_factory=dict)
    branch: Optional[str] = None
    suspend: Optional[SuspendRequest] = None

    @property
    def suspended(self) -> bool:
        return self.suspend is not None


@dataclass
class ResumeSignal:
    """What a suspended step receives when it is resumed"""
    data: Dict[str, Any] = field(default_factory=dict)
    event: Optional[str] = None
    timed_out: bool = False
    partial_output: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class StepContext:
    """Per-attempt view handed to a step"""
    step: Step
    context: WorkflowContext
    inputs: Dict[str, Any]
    attempt: int = 1
    engine: Optional["WorkflowEngine"] = None

    def suspend(
        self,
        metadata: Dict[str, Any] = None,
        partial_output: Dict[str, Any] = None,
        events: List[str] = None,
        timeout_ms: Optional[int] = None
    ) -> StepOutcome:
        """Pause the run at this step"""
        return StepOutcome(
            output=dict(partial_output or {}),
            suspend=SuspendRequest(
                metadata=dict(metadata or {}),
                partial_output=dict(partial_output or {}),
                events=list(events or []),
                timeout_ms=timeout_ms,
            ),
        )

    def require_engine(self) -> "WorkflowEngine":
        if self.engine is None:
            raise StepExecutionError(self.step.id, f"{self.step.kind.value} step needs an engine")
        return self.engine


def _as_predicate(value: Union[str, Predicate, None]) -> Optional[Predicate]:
    if value is None or callable(value):
        return value
    if isinstance(value, str):
        return compile_condition(value)
    raise WorkflowValidationError(f"Invalid predicate: {value!r}")


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


def _to_outcome(step_id: str, value: Any) -> StepOutcome:
    """Normalise whatever a user callable returned"""
    if isinstance(value, StepOutcome):
        return value
    if isinstance(value, SuspendRequest):
        return StepOutcome(output=dict(value.partial_output), suspend=value)
    if value is None:
        return StepOutcome()
    if isinstance(value, dict):
        return StepOutcome(output=value)
    return StepOutcome(output={"result": value})


class StepBehavior:
    """Two-phase behaviour shared by every kind"""

    async def prepare(self, step_ctx: StepContext) -> StepOutcome:
        raise NotImplementedError

    async def continue_after_resume(self, step_ctx: StepContext, signal: ResumeSignal) -> StepOutcome:
        return StepOutcome(output={**signal.partial_output, **signal.data})


@dataclass
class AgentStep(StepBehavior, Step):
    """Invokes an agent through the engine's AgentRuntime"""
    agent_id: str = ""
    config: Dict[str, Any] = field(default_factory=dict)

    kind: StepKind = field(init=False, default=StepKind.AGENT)

    def __post_init__(self):
        super().__post_init__()
        if not self.agent_id:
            raise WorkflowValidationError(f"Agent step '{self.id}' requires an agent id")

    async def prepare(self, step_ctx: StepContext) -> StepOutcome:
        runtime = step_ctx.require_engine().agent_runtime
        if runtime is None:
            raise StepExecutionError(self.id, "no agent runtime configured")
        output = await runtime.invoke_agent(
            self.agent_id,
            step_ctx.inputs,
            context={
                "workflow_id": step_ctx.context.workflow_id,
                "run_id": step_ctx.context.run_id,
                "step_id": self.id,
                **self.config,
            },
        )
        return _to_outcome(self.id, output)


StepFunction = Callable[[StepContext], Any]
ResumeFunction = Callable[[StepContext, ResumeSignal], Any]


@dataclass
class FunctionStep(StepBehavior, Step):
    """
    Runs a plain callable.

    ``fn(step_ctx)`` may be sync or async and may return a dict, a
    StepOutcome, or ``step_ctx.suspend(...)``. Any other value is wrapped as
    ``{"result": value}``. ``resume_fn(step_ctx, signal)`` handles the
    post-resume phase; without it the output is the partial output merged
    with the resume data.
    """
    fn: Optional[StepFunction] = None
    resume_fn: Optional[ResumeFunction] = None

    kind: StepKind = field(init=False, default=StepKind.FUNCTION)

    def __post_init__(self):
        super().__post_init__()
        if self.fn is None:
            raise WorkflowValidationError(f"Function step '{self.id}' requires a callable")

    async def prepare(self, step_ctx: StepContext) -> StepOutcome:
        return _to_outcome(self.id, await _maybe_await(self.fn(step_ctx)))

    async def continue_after_resume(self, step_ctx: StepContext, signal: ResumeSignal) -> StepOutcome:
        if self.resume_fn is None:
            return await super().continue_after_resume(step_ctx, signal)
        return _to_outcome(self.id, await _maybe_await(self.resume_fn(step_ctx, signal)))


@dataclass
class ConditionalStep(StepBehavior, Step):
    """Selects the ``true`` or ``false`` branch"""
    predicate: Union[str, Predicate, None] = None
    on_true: List[str] = field(default_factory=list)
    on_false: List[str] = field(default_factory=list)

    kind: StepKind = field(init=False, default=StepKind.CONDITIONAL)

    def __post_init__(self):
        super().__post_init__()
        if self.predicate is None:
            raise WorkflowValidationError(f"Conditional step '{self.id}' requires a predicate")
        self.predicate = _as_predicate(self.predicate)
        overlap = set(self.on_true) & set(self.on_false)
        if overlap:
            raise WorkflowValidationError(
                f"Conditional step '{self.id}' lists {sorted(overlap)} in both branches"
            )

    def branches(self) -> Dict[str, List[str]]:
        return {"true": list(self.on_true), "false": list(self.on_false)}

    async def prepare(self, step_ctx: StepContext) -> StepOutcome:
        result = bool(await _maybe_await(self.predicate(step_ctx.context)))
        branch = "true" if result else "false"
        logger.debug(f"Conditional {self.id} selected branch {branch}")
        return StepOutcome(output={"result": result, "branch": branch}, branch=branch)


@dataclass
class LoopStep(StepBehavior, Step):
    """
    Re-runs ``body`` while ``predicate`` holds, at most ``max_iterations``
    times.

    Each iteration sees ``$.variables.iteration`` plus the current loop
    variables. ``carry`` maps loop variable names to references resolved
    against the finished iteration; the results become the next iteration's
    values.
    """
    body: List[Step] = field(default_factory=list)
    predicate: Union[str, Predicate, None] = None
    max_iterations: int = 100
    loop_variables: Dict[str, Any] = field(default_factory=dict)
    carry: Dict[str, VariableRef] = field(default_factory=dict)

    kind: StepKind = field(init=False, default=StepKind.LOOP)

    def __post_init__(self):
        super().__post_init__()
        if not self.body:
            raise WorkflowValidationError(f"Loop step '{self.id}' has an empty body")
        if self.max_iterations < 1:
            raise WorkflowValidationError(f"Loop step '{self.id}' needs max_iterations >= 1")
        self.predicate = _as_predicate(self.predicate)
        self.carry = {
            key: value if isinstance(value, VariableRef) else VariableRef(path=value)
            for key, value in self.carry.items()
        }
        for step in self._walk_body():
            if step.kind.suspends:
                raise WorkflowValidationError(
                    f"Loop step '{self.id}' cannot contain {step.kind.value} step '{step.id}'"
                )

    def _walk_body(self) -> List[Step]:
        found: List[Step] = []
        pending = list(self.body)
        while pending:
            step = pending.pop(0)
            found.append(step)
            pending.extend(step.nested_steps())
        return found

    def nested_steps(self) -> List[Step]:
        return list(self.body)

    async def prepare(self, step_ctx: StepContext) -> StepOutcome:
        engine = step_ctx.require_engine()
        resolver = VariableResolver()
        values = dict(self.loop_variables)
        last: Dict[str, Any] = {}
        iteration = 0

        while iteration < self.max_iterations:
            iteration_ctx = step_ctx.context.child({**values, "iteration": iteration})
            if self.predicate is not None and not await _maybe_await(self.predicate(iteration_ctx)):
                break

            outcome = await engine.run_subgraph(self.body, iteration_ctx)
            if outcome.suspended:
                raise StepExecutionError(self.id, "loop body steps cannot suspend")
            if outcome.error is not None:
                raise StepExecutionError(
                    self.id, f"iteration {iteration} failed: {outcome.error}", outcome.error
                )

            last = {
                step.id: iteration_ctx.output_of(step.id)
                for step in self.body
                if step.id in iteration_ctx.steps
            }
            for name, variable in self.carry.items():
                values[name] = resolver.resolve(variable, iteration_ctx)
            iteration += 1

        if iteration >= self.max_iterations:
            logger.info(f"Loop {self.id} stopped at max_iterations={self.max_iterations}")
        return StepOutcome(output={
            "iterations": iteration,
            "variables": values,
            "last": last,
        })


@dataclass
class SubWorkflowStep(StepBehavior, Step):
    """Runs another registered workflow with this step's inputs"""
    workflow_id: str = ""

    kind: StepKind = field(init=False, default=StepKind.SUBWORKFLOW)

    def __post_init__(self):
        super().__post_init__()
        if not self.workflow_id:
            raise WorkflowValidationError(f"Subworkflow step '{self.id}' requires a workflow id")

    async def prepare(self, step_ctx: StepContext) -> StepOutcome:
        engine = step_ctx.require_engine()
        result = await engine.execute_workflow(self.workflow_id, step_ctx.inputs)
        return await self._from_child(step_ctx, result)

    async def continue_after_resume(self, step_ctx: StepContext, signal: ResumeSignal) -> StepOutcome:
        engine = step_ctx.require_engine()
        child_id = signal.metadata.get("child_suspension_id")
        if not child_id:
            raise StepExecutionError(self.id, "missing child suspension id")
        if signal.timed_out:
            result = await engine.expire_suspension(child_id)
        elif signal.event is not None:
            result = await engine.resume_workflow_with_event(child_id, signal.event, signal.data)
        else:
            result = await engine.resume_workflow(child_id, signal.data)
        return await self._from_child(step_ctx, result)

    async def _from_child(self, step_ctx: StepContext, result) -> StepOutcome:
        if result.suspended:
            record = await step_ctx.require_engine().suspensions.get(result.suspension_id)
            return step_ctx.suspend(
                metadata={
                    "child_suspension_id": result.suspension_id,
                    "child_run_id": result.run_id,
                    "child_workflow_id": self.workflow_id,
                },
                events=record.events if record else [],
            )
        if not result.success:
            message = (result.error or {}).get("message", "child workflow failed")
            raise StepExecutionError(self.id, f"subworkflow '{self.workflow_id}': {message}")
        return StepOutcome(output=dict(result.output))


class _TimeoutFallback:
    """Shared timeout handling for human and wait-for-event steps"""

    def _timeout_outcome(self, signal: ResumeSignal) -> StepOutcome:
        if not self.on_timeout:
            raise SuspensionTimeoutError(self.id, self.timeout_ms)
        return StepOutcome(
            output={**signal.partial_output, "timed_out": True},
            branch="timeout",
        )

    def inactive_steps(self, branch: str, successors: Set[str]) -> Set[str]:
        fallback = set(self.on_timeout)
        if branch == "timeout":
            return set(successors) - fallback
        return Step.inactive_steps(self, branch, successors) | fallback


@dataclass
class HumanStep(_TimeoutFallback, StepBehavior, Step):
    """Suspends with a prompt until a person responds or the timeout fires"""
    prompt: str = ""
    timeout_ms: Optional[int] = None
    on_timeout: List[str] = field(default_factory=list)
    assignee: Optional[str] = None
    response_schema: Optional[Dict[str, Any]] = None

    kind: StepKind = field(init=False, default=StepKind.HUMAN)

    def __post_init__(self):
        super().__post_init__()
        if self.on_timeout and self.timeout_ms is None:
            raise WorkflowValidationError(f"Human step '{self.id}' has on_timeout but no timeout_ms")

    def branches(self) -> Dict[str, List[str]]:
        return {"timeout": list(self.on_timeout)}

    async def prepare(self, step_ctx: StepContext) -> StepOutcome:
        metadata: Dict[str, Any] = {"prompt": self.prompt}
        if self.assignee:
            metadata["assignee"] = self.assignee
        if self.response_schema:
            metadata["response_schema"] = self.response_schema
        return step_ctx.suspend(metadata=metadata, timeout_ms=self.timeout_ms)

    async def continue_after_resume(self, step_ctx: StepContext, signal: ResumeSignal) -> StepOutcome:
        if signal.timed_out:
            return self._timeout_outcome(signal)
        outcome = await super().continue_after_resume(step_ctx, signal)
        outcome.branch = "response"
        return outcome


@dataclass
class WaitForEventStep(_TimeoutFallback, StepBehavior, Step):
    """Suspends until one of the named events arrives; the first one wins"""
    events: Dict[str, List[str]] = field(default_factory=dict)
    timeout_ms: Optional[int] = None
    on_timeout: List[str] = field(default_factory=list)

    kind: StepKind = field(init=False, default=StepKind.WAIT_FOR_EVENT)

    def __post_init__(self):
        super().__post_init__()
        if not self.events:
            raise WorkflowValidationError(f"Wait-for-event step '{self.id}' declares no events")
        if "timeout" in self.events:
            raise WorkflowValidationError(f"Wait-for-event step '{self.id}': 'timeout' is a reserved name")
        if self.on_timeout and self.timeout_ms is None:
            raise WorkflowValidationError(
                f"Wait-for-event step '{self.id}' has on_timeout but no timeout_ms"
            )
        self.events = {name: list(targets or []) for name, targets in self.events.items()}

    def branches(self) -> Dict[str, List[str]]:
        branches = dict(self.events)
        branches["timeout"] = list(self.on_timeout)
        return branches

    async def prepare(self, step_ctx: StepContext) -> StepOutcome:
        names = list(self.events)
        return step_ctx.suspend(
            metadata={"awaiting": names},
            events=names,
            timeout_ms=self.timeout_ms,
        )

    async def continue_after_resume(self, step_ctx: StepContext, signal: ResumeSignal) -> StepOutcome:
        if signal.timed_out:
            return self._timeout_outcome(signal)
        if signal.event not in self.events:
            raise StepExecutionError(self.id, f"unexpected event '{signal.event}'")
        return StepOutcome(
            output={**signal.partial_output, "event": signal.event, "payload": dict(signal.data)},
            branch=signal.event,
        )


STEP_TYPES = {
    StepKind.AGENT: AgentStep,
    StepKind.FUNCTION: FunctionStep,
    StepKind.CONDITIONAL: ConditionalStep,
    StepKind.LOOP: LoopStep,
    StepKind.SUBWORKFLOW: SubWorkflowStep,
    StepKind.HUMAN: HumanStep,
    StepKind.WAIT_FOR_EVENT: WaitForEventStep,
}
