"""Timers -- scheduled future events and the worker that fires them."""

from chorus.timers.schemas import TimerDetail, TimerStatus
from chorus.timers.store import TimerStore
from chorus.timers.worker import TimerWorker

__all__ = ["TimerDetail", "TimerStatus", "TimerStore", "TimerWorker"]
