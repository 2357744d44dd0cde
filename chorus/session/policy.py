"""Policy gates for autonomous messaging.

Prevents message storms by enforcing:
- a hard cap on consecutive autonomous messages without user input
- a minimum cooldown between autonomous sends

Stateless: callers pass in the session's AutonomyMetadata and persist
whatever comes back.
"""

from __future__ import annotations

import math
from datetime import datetime

from chorus.session.schemas import AutonomyMetadata, PolicyCheckResult, PolicyConfig
from chorus.utils import ensure_utc, utc_now


class PolicyGates:
    """Evaluates hard-cap and cooldown rules before an autonomous send."""

    def __init__(self, config: PolicyConfig) -> None:
        self._config = config

    @property
    def config(self) -> PolicyConfig:
        return self._config

    def check_can_send_autonomous(
        self,
        metadata: AutonomyMetadata,
        now: datetime | None = None,
    ) -> PolicyCheckResult:
        """Check the hard cap first, then the cooldown."""
        if metadata.consecutive_autonomous_messages >= self._config.max_consecutive:
            return PolicyCheckResult(
                allowed=False,
                reason=(
                    f"Hard cap reached: {metadata.consecutive_autonomous_messages}"
                    f"/{self._config.max_consecutive}"
                ),
                blocked_by="hard_cap",
            )

        last = ensure_utc(metadata.last_autonomous_at)
        if last is not None:
            now = now or utc_now()
            elapsed_ms = (now - last).total_seconds() * 1000
            if elapsed_ms < self._config.cooldown_ms:
                remaining = math.ceil((self._config.cooldown_ms - elapsed_ms) / 1000)
                return PolicyCheckResult(
                    allowed=False,
                    reason=f"Cooldown active: {remaining}s remaining",
                    blocked_by="cooldown",
                )

        return PolicyCheckResult(allowed=True)

    def update_counters_after_send(
        self,
        metadata: AutonomyMetadata,
        now: datetime | None = None,
    ) -> AutonomyMetadata:
        return AutonomyMetadata(
            consecutive_autonomous_messages=metadata.consecutive_autonomous_messages + 1,
            last_autonomous_at=now or utc_now(),
        )

    def reset_on_user_message(self) -> AutonomyMetadata:
        return AutonomyMetadata(consecutive_autonomous_messages=0, last_autonomous_at=None)
