"""Effects -- the transactional outbox and its delivery runner."""

from chorus.effects.delivery import TimerScheduling, WebSocketDelivery
from chorus.effects.outbox import OutboxStore
from chorus.effects.runner import EffectHandler, EffectRunner
from chorus.effects.schemas import (
    DeliveryOutcome,
    EffectDetail,
    EffectInput,
    EffectStatus,
    EffectType,
    ScheduleTimerRequest,
    generate_dedupe_key,
    schedule_timer_effect,
    send_message_effect,
)

__all__ = [
    "DeliveryOutcome",
    "EffectDetail",
    "EffectHandler",
    "EffectInput",
    "EffectRunner",
    "EffectStatus",
    "EffectType",
    "OutboxStore",
    "ScheduleTimerRequest",
    "TimerScheduling",
    "WebSocketDelivery",
    "generate_dedupe_key",
    "schedule_timer_effect",
    "send_message_effect",
]
