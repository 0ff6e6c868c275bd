"""
Tests for PeriodicTask
"""
import asyncio

import pytest

from govconnect.core.polling import PeriodicTask


class TestPeriodicTask:

    @pytest.mark.unit
    def test_interval_must_be_positive(self):
        async def noop():
            pass

        with pytest.raises(ValueError):
            PeriodicTask("bad", 0, noop)

    @pytest.mark.unit
    async def test_ticks_until_stopped(self):
        ticks = 0

        async def tick():
            nonlocal ticks
            ticks += 1

        task = PeriodicTask("ticker", 0.01, tick)
        task.start()
        await asyncio.sleep(0.055)
        await task.stop()
        seen = ticks
        await asyncio.sleep(0.03)

        assert seen >= 3
        assert ticks == seen
        assert not task.running

    @pytest.mark.unit
    async def test_run_immediately(self):
        ticks = 0

        async def tick():
            nonlocal ticks
            ticks += 1

        task = PeriodicTask("eager", 10, tick, run_immediately=True)
        task.start()
        await asyncio.sleep(0.01)
        await task.stop()

        assert ticks == 1

    @pytest.mark.unit
    async def test_failing_tick_does_not_stop_loop(self):
        calls = 0

        async def flaky():
            nonlocal calls
            calls += 1
            if calls == 1:
                raise RuntimeError("backend down")

        async with PeriodicTask("flaky", 0.01, flaky) as task:
            await asyncio.sleep(0.045)

        assert calls >= 2
        assert task.error_count == 1

    @pytest.mark.unit
    async def test_stop_from_inside_tick(self):
        ticks = 0
        task: PeriodicTask

        async def tick():
            nonlocal ticks
            ticks += 1
            await task.stop()

        task = PeriodicTask("self-stopping", 0.01, tick)
        task.start()
        await asyncio.sleep(0.05)

        assert ticks == 1
        assert not task.running

    @pytest.mark.unit
    async def test_trigger_runs_one_tick_out_of_band(self):
        ticks = 0

        async def tick():
            nonlocal ticks
            ticks += 1

        task = PeriodicTask("manual", 10, tick)
        await task.trigger()

        assert ticks == 1
        assert not task.running

    @pytest.mark.unit
    async def test_start_is_idempotent(self):
        async def noop():
            pass

        task = PeriodicTask("twice", 10, noop)
        task.start()
        first = task._task
        task.start()

        assert task._task is first
        await task.stop()
