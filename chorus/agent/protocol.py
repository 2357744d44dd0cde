"""Agent collaborator contract.

The session processor only needs one thing from an agent: given the
context of an event, stream back tokens and finish with a final message
(plus any follow-up effects it wants), or report an error.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import asdict, dataclass, field
from typing import Any, Literal, Protocol
from uuid import UUID

from chorus.session.schemas import AutonomyMetadata


class AgentTimeoutError(RuntimeError):
    """The agent did not finish within the configured time budget."""


class AgentStreamError(RuntimeError):
    """The agent stream reported an error."""

    def __init__(self, message: str, retryable: bool = False) -> None:
        super().__init__(message)
        self.retryable = retryable


@dataclass
class AgentContext:
    """Everything the agent gets to see about one event."""

    session_key: str
    user_id: str
    agent_id: str
    thread_id: str
    event_id: UUID
    event_type: str
    message: str | None
    payload: dict[str, Any]
    autonomy: AutonomyMetadata
    is_user_message: bool

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["event_id"] = str(self.event_id)
        data["autonomy"] = self.autonomy.model_dump(mode="json")
        return data


@dataclass
class AgentStreamEvent:
    """A single chunk from an agent stream."""

    type: Literal["token", "final", "error"]
    value: str = ""  # token text
    message: str = ""  # final text, or error description
    latency_ms: int | None = None
    token_usage: dict[str, Any] | None = None
    effects: list[dict[str, Any]] = field(default_factory=list)  # follow-up requests
    retryable: bool = False


class Agent(Protocol):
    def stream(self, context: AgentContext) -> AsyncIterator[AgentStreamEvent]: ...
