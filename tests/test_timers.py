"""Tests for the loop-backed and manual schedulers."""

from __future__ import annotations

import asyncio

import pytest

from autocare.realtime.timers import LoopScheduler, ManualScheduler


class TestManualScheduler:
    def setup_method(self) -> None:
        self.scheduler = ManualScheduler()
        self.fired: list[str] = []

    @pytest.mark.asyncio
    async def test_fires_in_due_order(self) -> None:
        self.scheduler.call_later(2, lambda: self.fired.append("b"))
        self.scheduler.call_later(1, lambda: self.fired.append("a"))
        self.scheduler.call_later(5, lambda: self.fired.append("c"))
        await self.scheduler.advance(2)
        assert self.fired == ["a", "b"]
        assert self.scheduler.now() == 2
        await self.scheduler.advance(3)
        assert self.fired == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_cancelled_timer_does_not_fire(self) -> None:
        handle = self.scheduler.call_later(1, lambda: self.fired.append("x"))
        handle.cancel()
        await self.scheduler.advance(10)
        assert self.fired == []
        assert self.scheduler.pending == 0

    @pytest.mark.asyncio
    async def test_coroutine_callbacks_complete_within_advance(self) -> None:
        async def work() -> None:
            await asyncio.sleep(0)
            self.fired.append("done")

        self.scheduler.call_later(1, work)
        await self.scheduler.advance(1)
        assert self.fired == ["done"]

    @pytest.mark.asyncio
    async def test_timer_scheduled_by_callback_fires_if_due(self) -> None:
        def first() -> None:
            self.fired.append("first")
            self.scheduler.call_later(1, lambda: self.fired.append("second"))

        self.scheduler.call_later(1, first)
        await self.scheduler.advance(3)
        assert self.fired == ["first", "second"]

    @pytest.mark.asyncio
    async def test_sleep_wakes_on_advance(self) -> None:
        async def sleeper() -> None:
            await self.scheduler.sleep(5)
            self.fired.append("woke")

        task = asyncio.create_task(sleeper())
        await asyncio.sleep(0)
        await self.scheduler.advance(4.9)
        assert self.fired == []
        await self.scheduler.advance(0.1)
        await task
        assert self.fired == ["woke"]

    @pytest.mark.asyncio
    async def test_close_cancels_timers_and_tasks(self) -> None:
        self.scheduler.call_later(1, lambda: self.fired.append("x"))
        task = self.scheduler.spawn(self.scheduler.sleep(100))
        await self.scheduler.close()
        assert task.cancelled()
        await self.scheduler.advance(200)
        assert self.fired == []


class TestLoopScheduler:
    @pytest.mark.asyncio
    async def test_call_later_runs_sync_and_async_callbacks(self) -> None:
        scheduler = LoopScheduler()
        fired: list[str] = []
        done = asyncio.Event()

        async def later() -> None:
            fired.append("async")
            done.set()

        scheduler.call_later(0, lambda: fired.append("sync"))
        scheduler.call_later(0.01, later)
        await asyncio.wait_for(done.wait(), timeout=1)
        assert fired == ["sync", "async"]
        await scheduler.close()

    @pytest.mark.asyncio
    async def test_close_cancels_pending_timers(self) -> None:
        scheduler = LoopScheduler()
        fired: list[str] = []
        scheduler.call_later(0.01, lambda: fired.append("x"))
        await scheduler.close()
        await asyncio.sleep(0.03)
        assert fired == []

    @pytest.mark.asyncio
    async def test_now_tracks_loop_time(self) -> None:
        scheduler = LoopScheduler()
        assert scheduler.now() == pytest.approx(asyncio.get_running_loop().time(), abs=0.05)
