"""Events -- the append-only log and the per-session processing queue.

Public API: EventStore, EventQueue, RetryScheduler and the event schemas.
"""

from chorus.events.queue import EventProcessingError, EventProcessor, EventQueue
from chorus.events.retry import RetryScheduler, ScheduledRetry
from chorus.events.schemas import (
    EVENT_TYPES,
    EventDetail,
    EventInput,
    EventType,
    TimerPayload,
    ToolResultPayload,
    UserMessagePayload,
)
from chorus.events.store import EventStore

__all__ = [
    "EVENT_TYPES",
    "EventDetail",
    "EventInput",
    "EventProcessingError",
    "EventProcessor",
    "EventQueue",
    "EventStore",
    "EventType",
    "RetryScheduler",
    "ScheduledRetry",
    "TimerPayload",
    "ToolResultPayload",
    "UserMessagePayload",
]
