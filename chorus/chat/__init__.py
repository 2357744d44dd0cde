"""Client connections and the chat wire protocol."""

from chorus.chat.connections import AbortHandle, ConnectionManager, ConnectionState
from chorus.chat.protocol import (
    CancelFrame,
    MessageFrame,
    error_frame,
    final_frame,
    parse_client_frame,
    token_frame,
)

__all__ = [
    "AbortHandle",
    "CancelFrame",
    "ConnectionManager",
    "ConnectionState",
    "MessageFrame",
    "error_frame",
    "final_frame",
    "parse_client_frame",
    "token_frame",
]
