"""Tests for the delayed-task RetryScheduler."""

from __future__ import annotations

import asyncio

import pytest

from chorus.events.retry import RetryScheduler


class TestRetryScheduler:
    @pytest.mark.asyncio
    async def test_runs_in_deadline_order(self):
        scheduler = RetryScheduler()
        fired: list[str] = []
        scheduler.schedule(0.05, lambda: fired.append("late"))
        scheduler.schedule(0.01, lambda: fired.append("early"))
        scheduler.schedule(0.01, lambda: fired.append("early-2"))
        await asyncio.sleep(0.15)
        assert fired == ["early", "early-2", "late"]
        assert scheduler.pending == 0
        scheduler.cancel_all()

    @pytest.mark.asyncio
    async def test_cancel_single(self):
        scheduler = RetryScheduler()
        fired: list[int] = []
        handle = scheduler.schedule(0.02, lambda: fired.append(1))
        scheduler.schedule(0.02, lambda: fired.append(2))
        scheduler.cancel(handle)
        assert scheduler.pending == 1
        await asyncio.sleep(0.08)
        assert fired == [2]
        scheduler.cancel_all()

    @pytest.mark.asyncio
    async def test_cancel_all(self):
        scheduler = RetryScheduler()
        fired: list[int] = []
        for i in range(3):
            scheduler.schedule(0.02, lambda i=i: fired.append(i))
        assert scheduler.cancel_all() == 3
        await asyncio.sleep(0.05)
        assert fired == []
        assert scheduler.pending == 0

    @pytest.mark.asyncio
    async def test_callback_error_does_not_stop_drain(self):
        scheduler = RetryScheduler()
        fired: list[str] = []

        def boom() -> None:
            raise RuntimeError("boom")

        scheduler.schedule(0.0, boom)
        scheduler.schedule(0.01, lambda: fired.append("after"))
        await asyncio.sleep(0.06)
        assert fired == ["after"]
        scheduler.cancel_all()

    @pytest.mark.asyncio
    async def test_earlier_entry_preempts_wait(self):
        scheduler = RetryScheduler()
        fired: list[str] = []
        scheduler.schedule(1.0, lambda: fired.append("slow"))
        await asyncio.sleep(0.01)
        scheduler.schedule(0.01, lambda: fired.append("fast"))
        await asyncio.sleep(0.06)
        assert fired == ["fast"]
        assert scheduler.pending == 1
        scheduler.cancel_all()
