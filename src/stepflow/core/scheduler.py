"""
Dependency graph scheduler
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple, TYPE_CHECKING

from ..exceptions import (
    StepExecutionError, StepTimeoutError, WorkflowCancelledError,
    WorkflowTimeoutError, error_to_dict
)
from ..models.workflow import Step
from ..models.execution import (
    RunStatus, StepResult, StepStatus, WorkflowContext, WorkflowEvent, WorkflowEventType
)
from ..integrations.validators import SchemaValidator
from .error_handler import ErrorHandler
from .graph import DependencyGraph
from .resolver import VariableResolver
from .steps import ResumeSignal, StepContext, StepOutcome

if TYPE_CHECKING:
    from .engine import WorkflowEngine


logger = logging.getLogger(__name__)

Emitter = Callable[[WorkflowEvent], Awaitable[None]]


@dataclass
class ScheduleOutcome:
    """How a scheduler pass ended"""
    status: RunStatus
    error: Optional[BaseException] = None
    suspended_steps: List[str] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def suspended(self) -> bool:
        return self.status == RunStatus.SUSPENDED


@dataclass
class _Attempt:
    """What a step task hands back to the coordinator"""
    result: StepResult
    error: Optional[BaseException] = None


async def _no_emit(event: WorkflowEvent) -> None:
    return None


class Scheduler:
    """
    Walks a DependencyGraph for one run.

    Each ready step runs in its own task; the coordinator wakes on the
    first completion, merges the result into the context and recomputes
    the ready set. Only the coordinator writes to the context.
    """

    def __init__(
        self,
        engine: Optional["WorkflowEngine"] = None,
        resolver: VariableResolver = None,
        error_handler: ErrorHandler = None,
        validator: SchemaValidator = None,
        emit: Emitter = None,
        max_concurrency: Optional[int] = None,
        default_step_timeout: Optional[float] = None
    ):
        self.engine = engine
        self.resolver = resolver or VariableResolver()
        self.error_handler = error_handler or ErrorHandler()
        self.validator = validator or SchemaValidator()
        self.emit = emit or _no_emit
        self.max_concurrency = max_concurrency
        self.default_step_timeout = default_step_timeout

    async def run(
        self,
        graph: DependencyGraph,
        context: WorkflowContext,
        resume: Optional[Tuple[str, ResumeSignal]] = None,
        cancel_event: Optional[asyncio.Event] = None,
        timeout: Optional[float] = None
    ) -> ScheduleOutcome:
        """Run until every step is final, a step suspends, or the run fails"""
        in_flight: Dict[asyncio.Task, str] = {}
        pending: Set[str] = set()
        suspended: List[str] = []
        errors: List[Dict[str, Any]] = []
        fatal: Optional[BaseException] = None
        new_suspension = False
        cancelled = False
        deadline = time.monotonic() + timeout if timeout else None

        for step_id in graph.steps:
            status = context.status_of(step_id)
            if status in (StepStatus.PENDING, StepStatus.RUNNING):
                pending.add(step_id)
            elif status == StepStatus.SUSPENDED:
                suspended.append(step_id)

        if resume is not None:
            step_id, signal = resume
            if step_id in suspended:
                suspended.remove(step_id)
            pending.discard(step_id)
            self._start(graph.steps[step_id], context, in_flight, signal)

        cancel_waiter = asyncio.ensure_future(cancel_event.wait()) if cancel_event else None

        try:
            while True:
                if cancel_event is not None and cancel_event.is_set():
                    cancelled = True
                    await self._cancel_all(in_flight, context)
                    break

                if fatal is None and not new_suspension:
                    await self._dispatch_ready(graph, context, pending, in_flight)

                if not in_flight:
                    break

                wait_for: Set[asyncio.Future] = set(in_flight)
                if cancel_waiter is not None:
                    wait_for.add(cancel_waiter)
                remaining = None
                if deadline is not None:
                    remaining = max(0.0, deadline - time.monotonic())

                done, _ = await asyncio.wait(
                    wait_for, timeout=remaining, return_when=asyncio.FIRST_COMPLETED
                )

                if not done:
                    fatal = WorkflowTimeoutError(f"Run {context.run_id} exceeded timeout of {timeout}s")
                    logger.error(str(fatal))
                    await self._cancel_all(in_flight, context)
                    break

                for task in done:
                    if task is cancel_waiter or task not in in_flight:
                        continue
                    step_id = in_flight.pop(task)
                    attempt: _Attempt = task.result()
                    step = graph.steps[step_id]
                    context.record(attempt.result)
                    status = attempt.result.status

                    if status == StepStatus.SUSPENDED:
                        suspended.append(step_id)
                        new_suspension = True
                        await self._emit(WorkflowEventType.STEP_COMPLETED, context, step_id, {
                            "status": status.value,
                            "suspension_metadata": attempt.result.suspension_metadata,
                        })
                        continue

                    if status == StepStatus.ERROR:
                        summary = self.error_handler.handle_failure(step, attempt.error, attempt.result.attempts)
                        await self._emit(WorkflowEventType.STEP_FAILED, context, step_id, {
                            "error": attempt.result.error,
                        })
                        await self._skip_branches(graph, step, None, context, pending)
                        if self.error_handler.is_fatal(step):
                            if fatal is None:
                                fatal = attempt.error
                                await self._cancel_all(in_flight, context)
                            continue
                        if self.error_handler.is_reported(step):
                            errors.append(summary)
                        continue

                    await self._emit(WorkflowEventType.STEP_COMPLETED, context, step_id, {
                        "output": attempt.result.output,
                        "branch": attempt.result.branch,
                    })
                    if attempt.result.branch is not None:
                        await self._skip_branches(graph, step, attempt.result.branch, context, pending)

        except asyncio.CancelledError:
            await self._cancel_all(in_flight, context)
            raise
        finally:
            if cancel_waiter is not None:
                cancel_waiter.cancel()

        if cancelled:
            return ScheduleOutcome(
                status=RunStatus.CANCELLED,
                error=WorkflowCancelledError(f"Run {context.run_id} was cancelled"),
                errors=errors,
            )
        if fatal is not None:
            return ScheduleOutcome(status=RunStatus.FAILED, error=fatal, errors=errors)
        if suspended:
            return ScheduleOutcome(status=RunStatus.SUSPENDED, suspended_steps=suspended, errors=errors)
        return ScheduleOutcome(status=RunStatus.COMPLETED, errors=errors)

    async def _dispatch_ready(
        self,
        graph: DependencyGraph,
        context: WorkflowContext,
        pending: Set[str],
        in_flight: Dict[asyncio.Task, str]
    ) -> None:
        """Start every ready step; skipped steps may make more ready"""
        progressed = True
        while progressed:
            progressed = False
            for step_id in sorted(pending):
                if self.max_concurrency and len(in_flight) >= self.max_concurrency:
                    return
                predecessors = graph.predecessors(step_id)
                if not all(context.status_of(p).satisfies_dependents for p in predecessors):
                    continue

                pending.discard(step_id)
                step = graph.steps[step_id]
                if predecessors and all(self._branch_inactive(context, p) for p in predecessors):
                    await self._mark_skipped(step_id, context, "unreachable branch", branch_inactive=True)
                    await self._skip_branches(graph, step, None, context, pending)
                    progressed = True
                    continue

                try:
                    run_step = step.condition(context)
                except Exception as e:
                    context.record(StepResult(step_id=step_id, status=StepStatus.RUNNING, started_at=time.time()))
                    task = asyncio.create_task(self._condition_failed(step, e))
                    in_flight[task] = step_id
                    continue

                if not run_step:
                    await self._mark_skipped(step_id, context, "condition")
                    await self._skip_branches(graph, step, None, context, pending)
                    progressed = True
                    continue

                self._start(step, context, in_flight)

    def _start(
        self,
        step: Step,
        context: WorkflowContext,
        in_flight: Dict[asyncio.Task, str],
        signal: Optional[ResumeSignal] = None
    ) -> None:
        previous = context.get_result(step.id)
        result = StepResult(
            step_id=step.id,
            status=StepStatus.RUNNING,
            started_at=previous.started_at if previous and signal else time.time(),
            attempts=previous.attempts if previous and signal else 0,
        )
        context.record(result)
        task = asyncio.create_task(self._execute(step, context, signal))
        in_flight[task] = step.id
        logger.debug(f"Dispatched step {step.id}")

    async def _execute(
        self,
        step: Step,
        context: WorkflowContext,
        signal: Optional[ResumeSignal] = None
    ) -> _Attempt:
        """Run one step with retries inside its own task"""
        previous = context.get_result(step.id)
        started_at = previous.started_at if previous and previous.started_at else time.time()
        base_attempts = previous.attempts if previous else 0
        attempt = 0
        await self._emit(WorkflowEventType.STEP_STARTED, context, step.id, {"resumed": signal is not None})

        while True:
            attempt += 1
            try:
                outcome = await self._attempt(step, context, attempt, signal)
                return _Attempt(result=self._to_result(step, outcome, started_at, base_attempts + attempt))
            except asyncio.CancelledError:
                raise
            except Exception as e:
                delay = self.error_handler.next_delay(step, e, attempt)
                if delay is None:
                    return _Attempt(
                        result=StepResult(
                            step_id=step.id,
                            status=StepStatus.ERROR,
                            error=error_to_dict(e),
                            attempts=base_attempts + attempt,
                            started_at=started_at,
                            finished_at=time.time(),
                        ),
                        error=e,
                    )
                await self._emit(WorkflowEventType.STEP_RETRYING, context, step.id, {
                    "attempt": attempt,
                    "delay": delay,
                    "error": error_to_dict(e),
                })
                if delay > 0:
                    await asyncio.sleep(delay)

    async def _attempt(
        self,
        step: Step,
        context: WorkflowContext,
        attempt: int,
        signal: Optional[ResumeSignal]
    ) -> StepOutcome:
        inputs = self.resolver.resolve_all(step.variables, context)
        step_ctx = StepContext(
            step=step,
            context=context,
            inputs=inputs,
            attempt=attempt,
            engine=self.engine,
        )
        if signal is not None:
            phase = step.continue_after_resume(step_ctx, signal)
        else:
            phase = step.prepare(step_ctx)

        timeout = step.timeout or self.default_step_timeout
        if timeout:
            try:
                outcome = await asyncio.wait_for(phase, timeout=timeout)
            except asyncio.TimeoutError:
                raise StepTimeoutError(step.id, timeout)
        else:
            outcome = await phase

        if not isinstance(outcome, StepOutcome):
            raise StepExecutionError(step.id, f"expected StepOutcome, got {type(outcome).__name__}")

        if step.output_schema and not outcome.suspended:
            problems = self.validator.validate(outcome.output, step.output_schema)
            if problems:
                raise StepExecutionError(step.id, f"output failed validation: {problems}")
        return outcome

    async def _condition_failed(self, step: Step, error: Exception) -> _Attempt:
        wrapped = StepExecutionError(step.id, f"condition raised: {error}", error)
        now = time.time()
        return _Attempt(
            result=StepResult(
                step_id=step.id,
                status=StepStatus.ERROR,
                error=error_to_dict(wrapped),
                started_at=now,
                finished_at=now,
            ),
            error=wrapped,
        )

    def _to_result(self, step: Step, outcome: StepOutcome, started_at: float, attempts: int) -> StepResult:
        if outcome.suspended:
            return StepResult(
                step_id=step.id,
                status=StepStatus.SUSPENDED,
                output=dict(outcome.suspend.partial_output),
                suspension_metadata=outcome.suspend.to_metadata(),
                attempts=attempts,
                started_at=started_at,
            )
        return StepResult(
            step_id=step.id,
            status=StepStatus.SUCCESS,
            output=dict(outcome.output or {}),
            branch=outcome.branch,
            attempts=attempts,
            started_at=started_at,
            finished_at=time.time(),
        )

    async def _skip_branches(
        self,
        graph: DependencyGraph,
        step: Step,
        branch: Optional[str],
        context: WorkflowContext,
        pending: Set[str]
    ) -> None:
        """Skip steps a finished step did not select"""
        if branch is None:
            # a branching step that did not succeed selects nothing
            inactive = {target for targets in step.branches().values() for target in targets}
        else:
            inactive = step.inactive_steps(branch, graph.successors(step.id))

        for step_id in sorted(inactive):
            if step_id in pending:
                pending.discard(step_id)
                await self._mark_skipped(step_id, context, f"branch of {step.id}", branch_inactive=True)
                await self._skip_branches(graph, graph.steps[step_id], None, context, pending)

    @staticmethod
    def _branch_inactive(context: WorkflowContext, step_id: str) -> bool:
        result = context.get_result(step_id)
        return result is not None and result.status == StepStatus.SKIPPED and result.branch_inactive

    async def _mark_skipped(
        self,
        step_id: str,
        context: WorkflowContext,
        reason: str,
        branch_inactive: bool = False
    ) -> None:
        now = time.time()
        context.record(StepResult(
            step_id=step_id,
            status=StepStatus.SKIPPED,
            branch_inactive=branch_inactive,
            started_at=now,
            finished_at=now,
        ))
        logger.info(f"Skipped step {step_id} ({reason})")
        await self._emit(WorkflowEventType.STEP_SKIPPED, context, step_id, {"reason": reason})

    async def _cancel_all(self, in_flight: Dict[asyncio.Task, str], context: WorkflowContext) -> None:
        """Cancel in-flight steps and mark them cancelled"""
        if not in_flight:
            return
        tasks = list(in_flight)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        now = time.time()
        for task in tasks:
            step_id = in_flight.pop(task)
            if not task.cancelled() and task.exception() is None:
                # finished before the cancel landed
                context.record(task.result().result)
                continue
            previous = context.get_result(step_id)
            context.record(StepResult(
                step_id=step_id,
                status=StepStatus.CANCELLED,
                attempts=previous.attempts if previous else 0,
                started_at=previous.started_at if previous else now,
                finished_at=now,
            ))
            logger.info(f"Cancelled in-flight step {step_id}")

    async def _emit(
        self,
        event_type: WorkflowEventType,
        context: WorkflowContext,
        step_id: Optional[str] = None,
        data: Dict[str, Any] = None
    ) -> None:
        try:
            await self.emit(WorkflowEvent(
                type=event_type,
                workflow_id=context.workflow_id,
                run_id=context.run_id,
                step_id=step_id,
                data=data or {},
            ))
        except Exception as e:
            logger.error(f"Failed to emit {event_type.value} event: {e}", exc_info=True)
