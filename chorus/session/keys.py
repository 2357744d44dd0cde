"""Session key utilities.

A session key is the canonical ``userId:agentId:threadId`` triple. It is the
unit of ordering isolation: every per-session map, queue and row filter is
keyed by a validated key, and malformed values never route anywhere.
"""

from __future__ import annotations

import re
from typing import NamedTuple

_SEGMENT = r"[A-Za-z0-9_-]+"
_SEGMENT_RE = re.compile(rf"^{_SEGMENT}$")
_KEY_RE = re.compile(rf"^{_SEGMENT}:{_SEGMENT}:{_SEGMENT}$")


class InvalidSessionKeyError(ValueError):
    """Raised when a value is not a well-formed session key."""


class ParsedSessionKey(NamedTuple):
    user_id: str
    agent_id: str
    thread_id: str


def is_valid_session_key(value: object) -> bool:
    """Structural check only: three non-empty, restricted-alphabet segments."""
    return isinstance(value, str) and _KEY_RE.match(value) is not None


def validate_session_key(value: object) -> str:
    """Return ``value`` unchanged if it is a valid key, else raise."""
    if not is_valid_session_key(value):
        raise InvalidSessionKeyError(
            f"Invalid session key: {value!r}. Expected userId:agentId:threadId"
        )
    return value  # type: ignore[return-value]


def build_session_key(user_id: str, agent_id: str, thread_id: str) -> str:
    """Join the three segments, rejecting any that would not round-trip."""
    for name, segment in (("user_id", user_id), ("agent_id", agent_id), ("thread_id", thread_id)):
        if not isinstance(segment, str) or not _SEGMENT_RE.match(segment):
            raise InvalidSessionKeyError(
                f"Invalid {name} segment {segment!r}: must be non-empty [A-Za-z0-9_-]"
            )
    return f"{user_id}:{agent_id}:{thread_id}"


def parse_session_key(value: str) -> ParsedSessionKey:
    """Split a key into its segments. Exact inverse of build_session_key()."""
    validate_session_key(value)
    user_id, agent_id, thread_id = value.split(":")
    return ParsedSessionKey(user_id, agent_id, thread_id)
