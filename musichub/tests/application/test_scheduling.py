import asyncio

import pytest

from musichub.application.scheduling import CancellableTimer, Cooldown, bounded


def test_timer_fires_once():
    fired = []

    async def scenario():
        timer = CancellableTimer(0.01, lambda: fired.append(True)).start()
        armed = timer.active
        await asyncio.sleep(0.05)
        return timer, armed

    timer, armed = asyncio.run(scenario())

    assert armed
    assert fired == [True]
    assert timer.fired
    assert not timer.active


def test_cancelled_timer_never_fires():
    fired = []

    async def scenario():
        timer = CancellableTimer(0.01, lambda: fired.append(True)).start()
        timer.cancel()
        await asyncio.sleep(0.05)
        return timer

    timer = asyncio.run(scenario())

    assert fired == []
    assert not timer.fired


def test_timer_needs_running_loop():
    with pytest.raises(RuntimeError):
        CancellableTimer(0.01, lambda: None).start()


class TestCooldown:
    def setup_method(self):
        self.now = 100.0
        self.cooldown = Cooldown(30, clock=lambda: self.now)

    def test_inactive_until_started(self):
        assert not self.cooldown.active
        assert self.cooldown.remaining_seconds() == 0

    def test_countdown_follows_clock(self):
        ticks = []
        self.cooldown.subscribe(ticks.append)

        self.cooldown.start()
        assert ticks == [30]
        assert self.cooldown.active

        self.now += 12.2
        assert self.cooldown.remaining_seconds() == 18

        self.now += 18
        assert not self.cooldown.active
        assert self.cooldown.remaining() == 0.0

    def test_reset_clears_window(self):
        self.cooldown.start()
        self.cooldown.reset()
        assert self.cooldown.remaining_seconds() == 0

    def test_zero_duration_never_blocks(self):
        cooldown = Cooldown(0, clock=lambda: self.now)
        cooldown.start()
        assert not cooldown.active


def test_bounded_times_out():
    async def slow():
        await asyncio.sleep(1)

    with pytest.raises(asyncio.TimeoutError):
        asyncio.run(bounded(slow(), 0.01))


def test_bounded_without_limit():
    async def quick():
        return "done"

    assert asyncio.run(bounded(quick(), None)) == "done"
