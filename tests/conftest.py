"""
Shared pytest fixtures
"""
import asyncio
import time

import pytest
import pytest_asyncio

from stepflow.config import EngineSettings
from stepflow.core.engine import WorkflowEngine
from stepflow.integrations import MockAgentRuntime
from stepflow.models.execution import RunStatus, WorkflowRun


@pytest.fixture
def agent_runtime() -> MockAgentRuntime:
    runtime = MockAgentRuntime()
    runtime.add_mock_agent("classifier", {"label": "spam", "confidence": 0.93})
    runtime.add_mock_agent("writer", lambda data: {"text": f"draft about {data.get('topic')}"})
    return runtime


@pytest_asyncio.fixture
async def engine(agent_runtime):
    """Engine with in-memory stores"""
    engine = WorkflowEngine(agent_runtime=agent_runtime, settings=EngineSettings())
    yield engine
    await engine.shutdown()


async def _wait_for_status(
    engine: WorkflowEngine,
    workflow_id: str,
    run_id: str,
    status: RunStatus,
    timeout: float = 5.0
) -> WorkflowRun:
    """Poll run history until the run reaches ``status``"""
    deadline = time.monotonic() + timeout
    while True:
        run = await engine.get_workflow_state(workflow_id, run_id)
        if run.status == status:
            await engine.wait_for_background()
            return run
        if time.monotonic() > deadline:
            raise AssertionError(f"run {run_id} is {run.status.value}, expected {status.value}")
        await asyncio.sleep(0.02)


@pytest.fixture
def wait_for_status():
    return _wait_for_status
