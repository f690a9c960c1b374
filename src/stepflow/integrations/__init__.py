"""
External collaborators: agent runtime, event bus, schema validation
"""
from .agent_runtime import AgentConfig, AgentRuntime, MockAgentRuntime
from .event_bus import ALL_EVENTS, Event, EventBus, topic_for
from .validators import SchemaValidator

__all__ = [
    "AgentConfig",
    "AgentRuntime",
    "MockAgentRuntime",
    "ALL_EVENTS",
    "Event",
    "EventBus",
    "topic_for",
    "SchemaValidator",
]
