"""
Workflow engine
"""
import asyncio
import copy
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Set, Tuple, Union

from ..config import EngineSettings
from ..exceptions import (
    MissingVariableError, UnknownEventError, WorkflowCancelledError,
    WorkflowNotFoundError, WorkflowValidationError, error_to_dict
)
from ..models.workflow import Step, Workflow
from ..models.execution import (
    RunStatus, StepStatus, SuspensionRecord, WorkflowContext, WorkflowEvent,
    WorkflowEventType, WorkflowResult, WorkflowRun
)
from ..integrations.agent_runtime import AgentRuntime
from ..integrations.event_bus import EventBus, topic_for
from ..integrations.validators import SchemaValidator
from ..storage.repository import (
    InMemoryRunRepository, InMemorySuspensionStore, RunRepository, SuspensionStore
)
from ..storage.sqlalchemy_repository import (
    DatabaseManager, SQLAlchemyRunRepository, SQLAlchemySuspensionStore
)
from .error_handler import ErrorHandler
from .graph import DependencyGraph
from .parser import WorkflowParser
from .registry import WorkflowRegistry
from .resolver import VariableResolver
from .scheduler import ScheduleOutcome, Scheduler
from .steps import ResumeSignal
from .suspension import SuspensionManager


logger = logging.getLogger(__name__)

Emitter = Callable[[WorkflowEvent], Awaitable[None]]


@dataclass
class ExecutionOptions:
    """Per-call execution options"""
    timeout: Optional[float] = None  # seconds for this execute/resume call
    run_id: Optional[str] = None


class WorkflowEngine:
    """
    Public entry point: registers workflows, runs them, and resumes
    suspended runs.

    Every engine owns its registry, stores and event bus, so several
    engines can live side by side in one process.
    """

    def __init__(
        self,
        suspension_store: SuspensionStore = None,
        run_repository: RunRepository = None,
        agent_runtime: AgentRuntime = None,
        event_bus: EventBus = None,
        settings: EngineSettings = None,
        functions: Dict[str, Callable] = None
    ):
        self.settings = settings or EngineSettings()
        self.registry = WorkflowRegistry()
        self.suspensions = SuspensionManager(suspension_store or InMemorySuspensionStore())
        self.suspensions.set_timeout_callback(self._on_suspension_timeout)
        self.runs = run_repository or InMemoryRunRepository()
        self.agent_runtime = agent_runtime
        self.event_bus = event_bus or EventBus()
        self.resolver = VariableResolver()
        self.error_handler = ErrorHandler()
        self.validator = SchemaValidator()
        self.parser = WorkflowParser(functions)

        self._cancel_events: Dict[str, asyncio.Event] = {}
        self._background: Set[asyncio.Task] = set()

    # Registration

    def register_workflow(self, definition: Union[Workflow, Dict[str, Any], str, Path]) -> Workflow:
        """Register a Workflow or a YAML/JSON definition"""
        if isinstance(definition, Workflow):
            workflow = definition
        else:
            workflow = self.parser.parse(definition)
        self.registry.register(workflow)
        return workflow

    def unregister_workflow(self, workflow_id: str) -> bool:
        return self.registry.unregister(workflow_id)

    def get_workflow(self, workflow_id: str) -> Workflow:
        return self.registry.get(workflow_id)

    def list_workflows(self) -> List[Workflow]:
        return self.registry.list()

    # Execution

    async def execute_workflow(
        self,
        workflow_id: str,
        input: Dict[str, Any] = None,
        options: ExecutionOptions = None
    ) -> WorkflowResult:
        """Run a registered workflow until it completes, fails or suspends"""
        return await self._start_run(workflow_id, input, options, self._emitter())

    async def stream_workflow(
        self,
        workflow_id: str,
        input: Dict[str, Any] = None,
        options: ExecutionOptions = None
    ) -> AsyncIterator[WorkflowEvent]:
        """Run a workflow and yield its lifecycle events in order"""
        async for event in self._stream(
            lambda emit: self._start_run(workflow_id, input, options, emit)
        ):
            yield event

    async def resume_workflow(
        self,
        suspension_id: str,
        resume_data: Dict[str, Any] = None,
        options: ExecutionOptions = None
    ) -> WorkflowResult:
        """Resume a suspended run with ``resume_data``"""
        return await self._resume(suspension_id, resume_data, options, self._emitter())

    async def resume_workflow_with_event(
        self,
        suspension_id: str,
        event_name: str,
        payload: Dict[str, Any] = None,
        options: ExecutionOptions = None
    ) -> WorkflowResult:
        """Deliver an event to a run waiting for it"""
        return await self._resume_with_event(
            suspension_id, event_name, payload, options, self._emitter()
        )

    async def stream_resume(
        self,
        suspension_id: str,
        resume_data: Dict[str, Any] = None,
        event_name: Optional[str] = None,
        options: ExecutionOptions = None
    ) -> AsyncIterator[WorkflowEvent]:
        """Resume a run (with data or an event) and yield its lifecycle events"""
        if event_name is None:
            runner = lambda emit: self._resume(suspension_id, resume_data, options, emit)
        else:
            runner = lambda emit: self._resume_with_event(
                suspension_id, event_name, resume_data, options, emit
            )
        async for event in self._stream(runner):
            yield event

    async def expire_suspension(self, suspension_id: str) -> WorkflowResult:
        """Resume a suspension as though its timeout fired"""
        record = await self.suspensions.claim(suspension_id)
        return await self._continue(
            record, ResumeSignal(timed_out=True), ExecutionOptions(), self._emitter()
        )

    async def cancel_run(self, run_id: str) -> bool:
        """
        Cancel a running or suspended run.

        Returns False when the run has already finished.
        """
        cancel_event = self._cancel_events.get(run_id)
        if cancel_event is not None:
            logger.info(f"Cancelling run {run_id}")
            cancel_event.set()
            return True

        run = await self.runs.get(run_id)
        if run is None:
            raise WorkflowNotFoundError(f"Run not found: {run_id}")
        if run.status != RunStatus.SUSPENDED:
            return False

        record = await self.suspensions.active_for_run(run_id)
        if record is not None:
            await self._abandon(record)

        error = error_to_dict(WorkflowCancelledError(f"Run {run_id} was cancelled"))
        run.status = RunStatus.CANCELLED
        run.suspension_id = None
        run.result = {**(run.result or {}), "status": RunStatus.CANCELLED.value,
                      "success": False, "error": error, "suspension_id": None}
        run.updated_at = time.time()
        await self.runs.save(run)

        emit = self._emitter()
        await emit(WorkflowEvent(
            type=WorkflowEventType.CANCELLED,
            workflow_id=run.workflow_id,
            run_id=run_id,
            data={"error": error},
        ))
        logger.info(f"Cancelled suspended run {run_id}")
        return True

    # Queries

    async def get_suspended_workflows(self) -> List[Dict[str, Any]]:
        return [record.summary() for record in await self.suspensions.list_active()]

    async def get_workflow_runs(
        self,
        workflow_id: str,
        status: Optional[RunStatus] = None,
        offset: int = 0,
        limit: int = 100
    ) -> List[WorkflowRun]:
        return await self.runs.list_by_workflow(workflow_id, status=status, offset=offset, limit=limit)

    async def get_workflow_state(self, workflow_id: str, run_id: str) -> WorkflowRun:
        run = await self.runs.get(run_id)
        if run is None or run.workflow_id != workflow_id:
            raise WorkflowNotFoundError(f"Run {run_id} not found for workflow {workflow_id}")
        return run

    # Lifecycle

    async def recover_timeouts(self) -> int:
        """Re-arm suspension timers after a restart"""
        return await self.suspensions.recover_timeouts()

    async def wait_for_background(self) -> None:
        """Wait for timer-driven continuations that are currently running"""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def shutdown(self) -> None:
        for cancel_event in self._cancel_events.values():
            cancel_event.set()
        await self.suspensions.shutdown()
        tasks = list(self._background)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Workflow engine shut down")

    async def run_subgraph(self, steps: List[Step], context: WorkflowContext) -> ScheduleOutcome:
        """Run a nested step list (a loop body) against ``context``"""
        graph = DependencyGraph(steps)
        return await self._scheduler().run(graph, context)

    # Internals

    def _scheduler(self, emit: Emitter = None) -> Scheduler:
        return Scheduler(
            engine=self,
            resolver=self.resolver,
            error_handler=self.error_handler,
            validator=self.validator,
            emit=emit,
            max_concurrency=self.settings.max_concurrency,
            default_step_timeout=self.settings.default_step_timeout,
        )

    def _emitter(self, queue: Optional[asyncio.Queue] = None) -> Emitter:
        async def emit(event: WorkflowEvent) -> None:
            if queue is not None:
                queue.put_nowait(event)
            await self.event_bus.publish(topic_for(event.type.value), event.to_dict())
        return emit

    async def _stream(
        self,
        runner: Callable[[Emitter], Awaitable[WorkflowResult]]
    ) -> AsyncIterator[WorkflowEvent]:
        queue: asyncio.Queue = asyncio.Queue()

        async def produce():
            try:
                return await runner(self._emitter(queue))
            finally:
                queue.put_nowait(None)

        task = asyncio.create_task(produce())
        try:
            while True:
                event = await queue.get()
                if event is None:
                    break
                yield event
            # surfaces errors raised before the run started
            await task
        finally:
            if not task.done():
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)

    async def _start_run(
        self,
        workflow_id: str,
        input: Optional[Dict[str, Any]],
        options: Optional[ExecutionOptions],
        emit: Emitter
    ) -> WorkflowResult:
        options = options or ExecutionOptions()
        workflow = self.registry.get(workflow_id)
        graph = self.registry.graph(workflow_id)

        payload = dict(input or {})
        if workflow.input_schema:
            problems = self.validator.validate(payload, workflow.input_schema)
            if problems:
                raise WorkflowValidationError(
                    f"Input for workflow {workflow_id} is invalid: "
                    f"{SchemaValidator.format_validation_errors(problems)}"
                )

        context = WorkflowContext(
            workflow_id=workflow_id,
            input=payload,
            variables=copy.deepcopy(workflow.variables),
        )
        if options.run_id:
            context.run_id = options.run_id

        run = WorkflowRun(
            run_id=context.run_id,
            workflow_id=workflow_id,
            status=RunStatus.RUNNING,
            context=context.to_dict(),
        )
        await self.runs.save(run)

        logger.info(f"Starting run {context.run_id} of workflow {workflow_id}")
        await emit(WorkflowEvent(
            type=WorkflowEventType.STARTED,
            workflow_id=workflow_id,
            run_id=context.run_id,
            data={"input": payload},
        ))
        return await self._drive(workflow, graph, context, run, options, emit)

    async def _resume(
        self,
        suspension_id: str,
        resume_data: Optional[Dict[str, Any]],
        options: Optional[ExecutionOptions],
        emit: Emitter
    ) -> WorkflowResult:
        data = dict(resume_data or {})
        record = await self.suspensions.get_active(suspension_id)
        self._check_response(await self._innermost(record), data)
        claimed = await self.suspensions.claim(suspension_id, record.version)
        return await self._continue(claimed, ResumeSignal(data=data), options, emit)

    async def _resume_with_event(
        self,
        suspension_id: str,
        event_name: str,
        payload: Optional[Dict[str, Any]],
        options: Optional[ExecutionOptions],
        emit: Emitter
    ) -> WorkflowResult:
        record = await self.suspensions.get_active(suspension_id)
        innermost = await self._innermost(record)
        if event_name not in record.events or event_name not in innermost.events:
            raise UnknownEventError(suspension_id, event_name, record.events)
        claimed = await self.suspensions.claim(suspension_id, record.version)
        signal = ResumeSignal(data=dict(payload or {}), event=event_name)
        return await self._continue(claimed, signal, options, emit)

    def _check_response(self, record: SuspensionRecord, data: Dict[str, Any]) -> None:
        """Reject a human response that does not match the declared schema"""
        schema = record.metadata.get("response_schema")
        if not schema:
            return
        problems = self.validator.validate(data, schema)
        if problems:
            raise WorkflowValidationError(
                f"Response for suspension {record.suspension_id} is invalid: "
                f"{SchemaValidator.format_validation_errors(problems)}"
            )

    async def _continue(
        self,
        record: SuspensionRecord,
        signal: ResumeSignal,
        options: Optional[ExecutionOptions],
        emit: Emitter
    ) -> WorkflowResult:
        """Rehydrate a claimed record and hand it back to the scheduler"""
        options = options or ExecutionOptions()
        try:
            workflow = self.registry.get(record.workflow_id)
            graph = self.registry.graph(record.workflow_id)
            if record.step_id not in graph:
                raise WorkflowValidationError(
                    f"Step {record.step_id} no longer exists in workflow {record.workflow_id}"
                )
            context = WorkflowContext.from_dict(record.context)
        except Exception:
            await self.suspensions.release(record)
            raise

        suspended = context.get_result(record.step_id)
        if suspended is not None:
            signal.partial_output = dict(suspended.output)
            signal.metadata = dict(suspended.suspension_metadata or record.metadata)
        else:
            signal.metadata = dict(record.metadata)

        run = await self.runs.get(record.run_id)
        if run is None:
            run = WorkflowRun(run_id=record.run_id, workflow_id=record.workflow_id)
        run.status = RunStatus.RUNNING
        run.suspension_id = None
        run.updated_at = time.time()
        await self.runs.save(run)

        logger.info(
            f"Resuming run {record.run_id} at step {record.step_id} "
            f"(suspension {record.suspension_id})"
        )
        await emit(WorkflowEvent(
            type=WorkflowEventType.RESUMED,
            workflow_id=record.workflow_id,
            run_id=record.run_id,
            step_id=record.step_id,
            data={
                "suspension_id": record.suspension_id,
                "event": signal.event,
                "timed_out": signal.timed_out,
            },
        ))
        return await self._drive(
            workflow, graph, context, run, options, emit,
            resume=(record.step_id, signal)
        )

    async def _drive(
        self,
        workflow: Workflow,
        graph: DependencyGraph,
        context: WorkflowContext,
        run: WorkflowRun,
        options: ExecutionOptions,
        emit: Emitter,
        resume: Optional[Tuple[str, ResumeSignal]] = None
    ) -> WorkflowResult:
        cancel_event = asyncio.Event()
        self._cancel_events[context.run_id] = cancel_event
        try:
            outcome = await self._scheduler(emit).run(
                graph, context,
                resume=resume,
                cancel_event=cancel_event,
                timeout=options.timeout,
            )
        except asyncio.CancelledError:
            logger.warning(f"Run {context.run_id} was interrupted")
            run.status = RunStatus.CANCELLED
            run.context = context.to_dict()
            run.updated_at = time.time()
            await self.runs.save(run)
            raise
        finally:
            self._cancel_events.pop(context.run_id, None)

        return await self._finish(workflow, graph, context, run, outcome, emit)

    async def _finish(
        self,
        workflow: Workflow,
        graph: DependencyGraph,
        context: WorkflowContext,
        run: WorkflowRun,
        outcome: ScheduleOutcome,
        emit: Emitter
    ) -> WorkflowResult:
        result = WorkflowResult(
            workflow_id=workflow.id,
            run_id=context.run_id,
            status=outcome.status,
            steps=dict(context.steps),
            errors=list(outcome.errors),
        )
        record: Optional[SuspensionRecord] = None

        if outcome.status == RunStatus.SUSPENDED:
            step_id = outcome.suspended_steps[0]
            record = await self.suspensions.suspend(workflow, context, step_id, arm=False)
            result.suspension_id = record.suspension_id
            event = WorkflowEvent(
                type=WorkflowEventType.SUSPENDED,
                workflow_id=workflow.id,
                run_id=context.run_id,
                step_id=step_id,
                data={"suspension_id": record.suspension_id, "metadata": record.metadata},
            )
        elif outcome.status == RunStatus.COMPLETED:
            result.output = self._map_output(workflow, graph, context)
            logger.info(f"Run {context.run_id} of workflow {workflow.id} completed")
            event = WorkflowEvent(
                type=WorkflowEventType.COMPLETED,
                workflow_id=workflow.id,
                run_id=context.run_id,
                data={"output": result.output},
            )
        else:
            result.error = error_to_dict(outcome.error)
            if outcome.status == RunStatus.CANCELLED:
                logger.info(f"Run {context.run_id} of workflow {workflow.id} cancelled")
                event_type = WorkflowEventType.CANCELLED
            else:
                logger.error(f"Run {context.run_id} of workflow {workflow.id} failed: {outcome.error}")
                event_type = WorkflowEventType.FAILED
            event = WorkflowEvent(
                type=event_type,
                workflow_id=workflow.id,
                run_id=context.run_id,
                data={"error": result.error},
            )

        run.status = result.status
        run.context = context.to_dict()
        run.result = result.to_dict()
        run.suspension_id = result.suspension_id
        run.updated_at = time.time()
        await self.runs.save(run)

        if record is not None:
            # armed only once the run row says suspended
            self.suspensions.arm(record)

        await emit(event)
        return result

    def _map_output(
        self,
        workflow: Workflow,
        graph: DependencyGraph,
        context: WorkflowContext
    ) -> Dict[str, Any]:
        if not workflow.output:
            return {
                step_id: context.output_of(step_id)
                for step_id in graph.sinks()
                if context.status_of(step_id) == StepStatus.SUCCESS
            }

        data = context.as_data()
        output: Dict[str, Any] = {}
        for name, variable in workflow.output.items():
            try:
                output[name] = self.resolver.resolve_in(variable, data)
            except MissingVariableError as e:
                logger.warning(f"Output '{name}' of run {context.run_id} omitted: {e}")
        return output

    async def _abandon(self, record: SuspensionRecord) -> None:
        """Abandon a record and any child run suspended beneath it"""
        await self.suspensions.abandon(record.suspension_id)
        child_id = record.metadata.get("child_suspension_id")
        if not child_id:
            return
        child = await self.suspensions.get(child_id)
        if child is not None and child.is_active:
            await self.cancel_run(child.run_id)

    async def _innermost(self, record: SuspensionRecord) -> SuspensionRecord:
        """Follow child subworkflow suspensions down to the step that asked for input"""
        current = record
        while True:
            child_id = current.metadata.get("child_suspension_id")
            child = await self.suspensions.get(child_id) if child_id else None
            if child is None or not child.is_active:
                return current
            current = child

    async def _outermost(self, suspension_id: str) -> str:
        """Follow parent subworkflow suspensions up to the top-level run"""
        current = suspension_id
        while True:
            parent = None
            for record in await self.suspensions.list_active():
                if record.metadata.get("child_suspension_id") == current:
                    parent = record
                    break
            if parent is None:
                return current
            current = parent.suspension_id

    async def _on_suspension_timeout(self, suspension_id: str) -> None:
        task = asyncio.current_task()
        self._background.add(task)
        try:
            target = await self._outermost(suspension_id)
            if target != suspension_id:
                logger.info(f"Suspension {suspension_id} timed out; expiring parent {target}")
            await self.expire_suspension(target)
        finally:
            self._background.discard(task)


async def open_engine(
    settings: EngineSettings = None,
    agent_runtime: AgentRuntime = None,
    functions: Dict[str, Callable] = None
) -> Tuple[WorkflowEngine, Optional[DatabaseManager]]:
    """
    Build an engine from settings.

    Uses SQLAlchemy stores when a database URL is configured, registers
    every definition in ``settings.workflows_dir`` and re-arms pending
    suspension timers. The caller owns the returned DatabaseManager.
    """
    settings = settings or EngineSettings.from_env()
    db_manager = None
    suspension_store = None
    run_repository = None

    if settings.database_url:
        db_manager = DatabaseManager(settings.database_url)
        await db_manager.initialize()
        suspension_store = SQLAlchemySuspensionStore(db_manager)
        run_repository = SQLAlchemyRunRepository(db_manager)

    engine = WorkflowEngine(
        suspension_store=suspension_store,
        run_repository=run_repository,
        agent_runtime=agent_runtime,
        settings=settings,
        functions=functions,
    )

    if settings.workflows_dir:
        directory = Path(settings.workflows_dir)
        for path in sorted(directory.iterdir()):
            if path.suffix.lower() in (".yaml", ".yml", ".json"):
                workflow = engine.register_workflow(path)
                logger.info(f"Loaded workflow {workflow.id} from {path}")

    await engine.recover_timeouts()
    return engine, db_manager
