"""Wire frames exchanged with chat clients.

Client -> server:
  {"type": "message", "requestId", "threadId", "content"}
  {"type": "cancel", "requestId"}

Server -> client:
  {"type": "token", "requestId", "value"}  (zero or more)
  {"type": "final", "requestId", "message", "latencyMs", "tokenUsage"?}
  {"type": "error", "requestId", "message", "retryable"}
"""

from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class MessageFrame(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["message"]
    request_id: str = Field(alias="requestId", min_length=1)
    thread_id: str = Field(alias="threadId", min_length=1)
    content: str = Field(min_length=1)


class CancelFrame(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["cancel"]
    request_id: str = Field(alias="requestId", min_length=1)


ClientFrame = Annotated[MessageFrame | CancelFrame, Field(discriminator="type")]

_client_frame = TypeAdapter(ClientFrame)


def parse_client_frame(data: Any) -> MessageFrame | CancelFrame:
    """Validate an inbound frame. Raises pydantic.ValidationError."""
    return _client_frame.validate_python(data)


def token_frame(request_id: str, value: str) -> dict[str, Any]:
    return {"type": "token", "requestId": request_id, "value": value}


def final_frame(
    request_id: str,
    message: str,
    latency_ms: int,
    token_usage: dict[str, Any] | None = None,
) -> dict[str, Any]:
    frame: dict[str, Any] = {
        "type": "final",
        "requestId": request_id,
        "message": message,
        "latencyMs": latency_ms,
    }
    if token_usage is not None:
        frame["tokenUsage"] = token_usage
    return frame


def error_frame(request_id: str | None, message: str, retryable: bool) -> dict[str, Any]:
    return {
        "type": "error",
        "requestId": request_id,
        "message": message,
        "retryable": retryable,
    }
