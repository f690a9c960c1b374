"""
Agent runtime integration

The engine only needs ``invoke_agent(agent_id, input_data, context)``;
everything about models and prompts stays behind this interface.
"""
import asyncio
import inspect
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Union

from ..exceptions import AgentExecutionError, AgentNotFoundError, WorkflowValidationError
from .validators import SchemaValidator


logger = logging.getLogger(__name__)


@dataclass
class AgentConfig:
    """Agent registration"""
    agent_id: str
    name: str = ""
    description: str = ""
    timeout_seconds: float = 300
    input_schema: Optional[Dict[str, Any]] = None
    output_schema: Optional[Dict[str, Any]] = None
    enabled: bool = True
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.name:
            self.name = self.agent_id


class AgentRuntime(ABC):
    """Agent runtime interface"""

    def __init__(self):
        self.configs: Dict[str, AgentConfig] = {}
        self.validator = SchemaValidator()

    async def register_agent(self, config: AgentConfig) -> str:
        """Register an agent"""
        for schema in (config.input_schema, config.output_schema):
            if schema:
                problems = self.validator.check_schema(schema)
                if problems:
                    raise WorkflowValidationError(f"Agent {config.agent_id}: {problems[0]}")
        self.configs[config.agent_id] = config
        logger.info(f"Registered agent: {config.agent_id}")
        return config.agent_id

    async def list_agents(self) -> List[AgentConfig]:
        return list(self.configs.values())

    @abstractmethod
    async def _execute(
        self,
        config: AgentConfig,
        input_data: Dict[str, Any],
        context: Dict[str, Any]
    ) -> Dict[str, Any]:
        """Run the agent and return its output"""
        pass

    async def invoke_agent(
        self,
        agent_id: str,
        input_data: Dict[str, Any],
        context: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None
    ) -> Dict[str, Any]:
        """Invoke an agent"""
        config = self.configs.get(agent_id)
        if not config:
            raise AgentNotFoundError(agent_id)
        if not config.enabled:
            raise AgentExecutionError(agent_id, "agent is disabled")

        if config.input_schema:
            errors = self.validator.validate(input_data, config.input_schema)
            if errors:
                raise AgentExecutionError(agent_id, f"input validation failed: {errors}")

        timeout_seconds = timeout or config.timeout_seconds
        try:
            output = await asyncio.wait_for(
                self._execute(config, input_data, context or {}),
                timeout=timeout_seconds
            )
        except asyncio.TimeoutError:
            raise AgentExecutionError(agent_id, f"timed out after {timeout_seconds}s")
        except AgentExecutionError:
            raise
        except Exception as e:
            logger.error(f"Agent {agent_id} execution failed: {e}", exc_info=True)
            raise AgentExecutionError(agent_id, str(e), e)

        if config.output_schema:
            errors = self.validator.validate(output, config.output_schema)
            if errors:
                raise AgentExecutionError(agent_id, f"output validation failed: {errors}")

        return output


MockResponse = Union[Dict[str, Any], Callable[[Dict[str, Any]], Any]]


class MockAgentRuntime(AgentRuntime):
    """Scripted runtime for tests and the CLI"""

    def __init__(self):
        super().__init__()
        self.mock_responses: Dict[str, MockResponse] = {}
        self.mock_delays: Dict[str, float] = {}
        self.mock_errors: Dict[str, List[str]] = defaultdict(list)
        self.calls: Dict[str, List[Dict[str, Any]]] = defaultdict(list)

    def add_mock_agent(self, agent_id: str, response: MockResponse = None, **kwargs) -> AgentConfig:
        """Register an agent synchronously with a canned response"""
        config = AgentConfig(agent_id=agent_id, **kwargs)
        self.configs[agent_id] = config
        if response is not None:
            self.set_mock_response(agent_id, response)
        return config

    def set_mock_response(self, agent_id: str, response: MockResponse):
        """A dict, or a callable receiving the input"""
        self.mock_responses[agent_id] = response

    def set_mock_delay(self, agent_id: str, delay_seconds: float):
        self.mock_delays[agent_id] = delay_seconds

    def simulate_error(self, agent_id: str, error_message: str, times: int = 1):
        """Fail the next ``times`` invocations"""
        self.mock_errors[agent_id].extend([error_message] * times)

    async def _execute(
        self,
        config: AgentConfig,
        input_data: Dict[str, Any],
        context: Dict[str, Any]
    ) -> Dict[str, Any]:
        self.calls[config.agent_id].append(dict(input_data))

        delay = self.mock_delays.get(config.agent_id, 0)
        if delay:
            await asyncio.sleep(delay)

        if self.mock_errors[config.agent_id]:
            raise AgentExecutionError(config.agent_id, self.mock_errors[config.agent_id].pop(0))

        response = self.mock_responses.get(config.agent_id)
        if callable(response):
            response = response(input_data)
            if inspect.isawaitable(response):
                response = await response
        if response is None:
            return {
                "response": f"Mock response from {config.name}",
                "input_received": input_data,
            }
        return dict(response)
