"""Session module -- keys, autonomy policy and per-session state.

The processor lives in chorus.session.processor and is imported from there.
"""

from chorus.session.keys import (
    InvalidSessionKeyError,
    ParsedSessionKey,
    build_session_key,
    is_valid_session_key,
    parse_session_key,
    validate_session_key,
)
from chorus.session.policy import PolicyGates
from chorus.session.schemas import (
    AutonomyMetadata,
    BlockedBy,
    PolicyCheckResult,
    PolicyConfig,
    SessionStateDetail,
)
from chorus.session.state import SessionStateStore

__all__ = [
    "AutonomyMetadata",
    "BlockedBy",
    "InvalidSessionKeyError",
    "ParsedSessionKey",
    "PolicyCheckResult",
    "PolicyConfig",
    "PolicyGates",
    "SessionStateDetail",
    "SessionStateStore",
    "build_session_key",
    "is_valid_session_key",
    "parse_session_key",
    "validate_session_key",
]
