"""
Stepflow CLI
"""
import asyncio
import json
from typing import Any, Dict, List, Optional, Tuple

import click

from .config import EngineSettings, configure_logging
from .core.engine import ExecutionOptions, WorkflowEngine, open_engine
from .core.parser import WorkflowParser
from .core.registry import validate_workflow
from .core.steps import AgentStep
from .exceptions import WorkflowEngineError
from .integrations import MockAgentRuntime
from .models.execution import WorkflowResult
from .models.workflow import Workflow


def _parse_json(value: Optional[str], name: str) -> Dict[str, Any]:
    if not value:
        return {}
    try:
        data = json.loads(value)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"not valid JSON: {e}", param_hint=name)
    if not isinstance(data, dict):
        raise click.BadParameter("must be a JSON object", param_hint=name)
    return data


def _agent_ids(workflow: Workflow) -> List[str]:
    found = []
    pending = list(workflow.steps)
    while pending:
        step = pending.pop(0)
        if isinstance(step, AgentStep):
            found.append(step.agent_id)
        pending.extend(step.nested_steps())
    return found


def _register(engine: WorkflowEngine, runtime: MockAgentRuntime, files: Tuple[str, ...]) -> List[Workflow]:
    """Register definition files; every agent they use gets a mock"""
    workflows = []
    for path in files:
        workflow = engine.register_workflow(path)
        for agent_id in _agent_ids(workflow):
            if agent_id not in runtime.configs:
                runtime.add_mock_agent(agent_id)
        workflows.append(workflow)
    return workflows


def _echo_result(result: WorkflowResult) -> None:
    click.echo(json.dumps(result.to_dict(), indent=2, default=str))
    if result.suspended:
        click.echo(f"Run {result.run_id} suspended: {result.suspension_id}", err=True)


async def _with_engine(settings: EngineSettings, files: Tuple[str, ...], action):
    runtime = MockAgentRuntime()
    engine, db_manager = await open_engine(settings, agent_runtime=runtime)
    try:
        workflows = _register(engine, runtime, files)
        return await action(engine, workflows)
    finally:
        await engine.shutdown()
        if db_manager is not None:
            await db_manager.close()


def _run_async(coro):
    try:
        return asyncio.run(coro)
    except WorkflowEngineError as e:
        raise click.ClickException(str(e))


@click.group()
@click.option('--log-level', default=None, help='Logging level (default: STEPFLOW_LOG_LEVEL or INFO)')
@click.pass_context
def cli(ctx, log_level):
    """Stepflow workflow engine"""
    settings = EngineSettings.from_env()
    if log_level:
        settings.log_level = log_level.upper()
    configure_logging(settings.log_level)
    ctx.obj = settings


@cli.command()
@click.option('--host', default=None, help='Host to bind to')
@click.option('--port', default=None, type=int, help='Port to bind to')
@click.option('--reload', is_flag=True, help='Enable auto-reload')
@click.pass_obj
def serve(settings: EngineSettings, host, port, reload):
    """Start the API server"""
    import uvicorn

    host = host or settings.api_host
    port = port or settings.api_port
    click.echo(f"Starting API server on {host}:{port}")
    uvicorn.run(
        "stepflow.api:create_app",
        factory=True,
        host=host,
        port=port,
        reload=reload or settings.api_reload,
        log_level=settings.log_level.lower()
    )


@cli.command()
@click.argument('workflow_file', type=click.Path(exists=True, dir_okay=False))
def validate(workflow_file):
    """Validate a workflow definition and show its parallel levels"""
    try:
        workflow = WorkflowParser().parse_file(workflow_file)
        graph = validate_workflow(workflow)
    except WorkflowEngineError as e:
        raise click.ClickException(str(e))

    click.echo(f"Workflow {workflow.id} is valid ({len(workflow.steps)} steps)")
    for index, level in enumerate(graph.parallel_levels()):
        click.echo(f"  level {index}: {', '.join(level)}")


@cli.command()
@click.argument('workflow_file', type=click.Path(exists=True, dir_okay=False))
@click.option('--input', 'input_json', default=None, help='Run input as a JSON object')
@click.option('--timeout', type=float, default=None, help='Run timeout in seconds')
@click.option('--stream', is_flag=True, help='Print lifecycle events as they happen')
@click.pass_obj
def run(settings: EngineSettings, workflow_file, input_json, timeout, stream):
    """Run a workflow from a definition file"""
    payload = _parse_json(input_json, '--input')
    options = ExecutionOptions(timeout=timeout)

    async def action(engine: WorkflowEngine, workflows: List[Workflow]):
        workflow_id = workflows[0].id
        if not stream:
            _echo_result(await engine.execute_workflow(workflow_id, payload, options))
            return
        async for event in engine.stream_workflow(workflow_id, payload, options):
            click.echo(json.dumps(event.to_dict(), default=str))

    _run_async(_with_engine(settings, (workflow_file,), action))


@cli.command()
@click.pass_obj
def suspended(settings: EngineSettings):
    """List active suspensions"""
    async def action(engine: WorkflowEngine, workflows: List[Workflow]):
        records = await engine.get_suspended_workflows()
        if not records:
            click.echo("No suspended runs")
            return
        for record in records:
            events = f" events={','.join(record['events'])}" if record['events'] else ""
            click.echo(
                f"{record['suspension_id']}  workflow={record['workflow_id']} "
                f"run={record['run_id']} step={record['step_id']} kind={record['kind']}{events}"
            )

    _run_async(_with_engine(settings, (), action))


@cli.command()
@click.argument('suspension_id')
@click.option('--data', 'data_json', default=None, help='Resume data (or event payload) as a JSON object')
@click.option('--event', 'event_name', default=None, help='Deliver this event instead of plain resume data')
@click.option('--workflow', 'workflow_files', multiple=True, type=click.Path(exists=True, dir_okay=False),
              help='Definition file to register before resuming (repeatable)')
@click.pass_obj
def resume(settings: EngineSettings, suspension_id, data_json, event_name, workflow_files):
    """Resume a suspended run"""
    data = _parse_json(data_json, '--data')

    async def action(engine: WorkflowEngine, workflows: List[Workflow]):
        if event_name:
            result = await engine.resume_workflow_with_event(suspension_id, event_name, data)
        else:
            result = await engine.resume_workflow(suspension_id, data)
        _echo_result(result)

    _run_async(_with_engine(settings, workflow_files, action))


def main():
    """Main entry point"""
    cli()


if __name__ == '__main__':
    main()
