"""Agent collaborator: the streaming contract and its HTTP client."""

from chorus.agent.http import HttpAgent
from chorus.agent.protocol import (
    Agent,
    AgentContext,
    AgentStreamError,
    AgentStreamEvent,
    AgentTimeoutError,
)

__all__ = [
    "Agent",
    "AgentContext",
    "AgentStreamError",
    "AgentStreamEvent",
    "AgentTimeoutError",
    "HttpAgent",
]
