"""
Unit tests for the drift-correcting ticker

Uses a fake clock and a sleep that advances it, so an hour of ticking runs
in a fraction of a second.
"""
import asyncio
import random

import pytest

from lib.timer import DriftCorrectingTicker, TimerEngine


class TestNextDelay:
    """Tests for delay computation"""

    def test_on_schedule(self, clock):
        ticker = DriftCorrectingTicker(lambda: None, clock=clock)
        ticker.started_at = clock()
        assert ticker.next_delay(clock()) == 1.0

    def test_late_wakeup_shortens_next_sleep(self, clock):
        ticker = DriftCorrectingTicker(lambda: None, clock=clock)
        ticker.started_at = clock()
        ticker.tick_count = 5
        assert ticker.next_delay(clock() + 5.25) == pytest.approx(0.75)

    def test_early_wakeup_lengthens_next_sleep(self, clock):
        ticker = DriftCorrectingTicker(lambda: None, clock=clock)
        ticker.started_at = clock()
        ticker.tick_count = 5
        assert ticker.next_delay(clock() + 4.75) == pytest.approx(1.25)

    def test_stall_reanchors(self, clock):
        """A long stall re-anchors instead of bursting catch-up ticks"""
        ticker = DriftCorrectingTicker(lambda: None, clock=clock)
        ticker.started_at = clock()
        ticker.tick_count = 5

        delay = ticker.next_delay(clock() + 30.5)
        assert ticker.tick_count == 30
        assert delay == pytest.approx(0.5)


class TestTickLoop:
    """Tests for the running loop"""

    @pytest.mark.asyncio
    async def test_ticks_and_stops(self, clock, instant_sleep):
        ticks = []
        ticker = DriftCorrectingTicker(
            lambda: ticks.append(clock()), clock=clock, sleep=instant_sleep
        )
        ticker.start()
        for _ in range(5):
            await asyncio.sleep(0)
        ticker.stop()
        await ticker.wait_stopped()

        count = len(ticks)
        assert count >= 1
        assert ticks == [1000.0 + i for i in range(1, count + 1)]

        for _ in range(5):
            await asyncio.sleep(0)
        assert len(ticks) == count

    @pytest.mark.asyncio
    async def test_callback_errors_do_not_stop_ticking(self, clock, instant_sleep):
        calls = []

        def flaky():
            calls.append(1)
            if len(calls) == 1:
                raise ValueError("boom")

        ticker = DriftCorrectingTicker(flaky, clock=clock, sleep=instant_sleep)
        ticker.start()
        for _ in range(6):
            await asyncio.sleep(0)
        ticker.stop()
        await ticker.wait_stopped()

        assert len(calls) >= 2

    @pytest.mark.asyncio
    async def test_stop_from_callback(self, clock, instant_sleep):
        """Stopping inside on_tick prevents any further callback"""
        calls = []

        def once():
            calls.append(1)
            ticker.stop()

        ticker = DriftCorrectingTicker(once, clock=clock, sleep=instant_sleep)
        ticker.start()
        for _ in range(6):
            await asyncio.sleep(0)

        assert calls == [1]
        assert ticker.is_running is False

    @pytest.mark.asyncio
    async def test_start_twice_is_ignored(self, clock, instant_sleep):
        ticker = DriftCorrectingTicker(lambda: None, clock=clock, sleep=instant_sleep)
        ticker.start()
        task = ticker._task
        ticker.start()
        assert ticker._task is task
        ticker.stop()
        await ticker.wait_stopped()


class TestDriftBound:
    """Long-run accuracy of an engine on a jittery scheduler"""

    @pytest.mark.asyncio
    async def test_one_hour_with_jitter(self, clock, wall_clock):
        """
        Every reported value stays within one second of the true remaining
        time over an hour of ticks woken up to 200ms early or late, and the
        countdown ends exactly once.
        """
        rng = random.Random(1234)
        started_at = clock()
        ended = asyncio.Event()
        updates = []
        endings = []

        async def jittery_sleep(delay):
            clock.advance(max(0.0, delay + rng.uniform(-0.2, 0.2)))
            await asyncio.sleep(0)

        def observe(message):
            elapsed = clock() - started_at
            true_remaining = max(0.0, 3600 - elapsed)
            if message["type"] == "timer_update":
                updates.append((message["timeRemaining"], true_remaining))
            elif message["type"] == "timer_ended":
                endings.append(elapsed)
                ended.set()

        engine = TimerEngine(
            broadcast=observe, clock=clock, wall_clock=wall_clock, sleep=jittery_sleep
        )
        engine.start()

        await asyncio.wait_for(ended.wait(), timeout=30)
        for _ in range(5):
            await asyncio.sleep(0)

        assert len(updates) > 3500
        for reported, true_remaining in updates:
            assert abs(reported - true_remaining) <= 1.0

        assert len(endings) == 1
        assert endings[0] >= 3600
        assert endings[0] < 3601.5
        assert engine.is_active is False
        await engine.close()
