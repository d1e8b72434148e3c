import asyncio

import pytest

from livequiz.client.options import ClientOptions
from livequiz.client.timer import TimerCorrector


class FakeClock:
    def __init__(self):
        self.now = 500.0

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def timer(clock):
    return TimerCorrector(ClientOptions(), clock=clock)


def test_countdown_follows_local_clock(timer, clock):
    timer.start(30, run_ticks=False)
    clock.advance(10)
    assert timer.remaining() == pytest.approx(20)
    clock.advance(25)
    assert timer.remaining() == 0.0


def test_small_drift_is_tolerated(timer, clock):
    timer.start(30, run_ticks=False)
    clock.advance(10)

    assert timer.sync(18.5) is False
    assert timer.remaining() == pytest.approx(20)
    assert timer.corrections == 0


def test_large_drift_is_corrected(timer, clock):
    timer.start(30, run_ticks=False)
    clock.advance(10)

    assert timer.sync(15) is True
    assert timer.remaining() == pytest.approx(15)
    assert timer.corrections == 1


def test_pause_freezes_and_resume_reseeds(timer, clock):
    timer.start(30, run_ticks=False)
    clock.advance(10)
    timer.pause()
    clock.advance(60)
    assert timer.remaining() == pytest.approx(20)
    assert timer.sync(5) is False

    timer.resume(19)
    clock.advance(4)
    assert timer.remaining() == pytest.approx(15)


def test_pause_prefers_server_value(timer, clock):
    timer.start(30, run_ticks=False)
    clock.advance(10)
    timer.pause(17)
    assert timer.remaining() == pytest.approx(17)


def test_apply_snapshot(timer, clock):
    timer.apply_snapshot({"status": "active", "remaining_seconds": 30}, new_question=True)
    clock.advance(5)
    assert timer.remaining() == pytest.approx(25)

    # Same question, within threshold: local projection stands.
    timer.apply_snapshot({"status": "active", "remaining_seconds": 24})
    assert timer.remaining() == pytest.approx(25)

    timer.apply_snapshot({"status": "active", "remaining_seconds": 30}, new_question=True)
    assert timer.remaining() == pytest.approx(30)

    timer.apply_snapshot({"status": "paused", "remaining_seconds": 12})
    assert timer.paused
    assert timer.remaining() == pytest.approx(12)

    timer.apply_snapshot({"status": "active", "remaining_seconds": 12})
    assert not timer.paused
    clock.advance(2)
    assert timer.remaining() == pytest.approx(10)

    timer.apply_snapshot({"status": "completed", "remaining_seconds": None})
    assert not timer.running
    assert timer.remaining() == 0.0


def test_needs_sync_after_interval(timer, clock):
    assert timer.needs_sync()
    timer.start(30, run_ticks=False)
    assert not timer.needs_sync()
    clock.advance(30)
    assert timer.needs_sync()


async def test_ticks_until_expired(clock):
    async def sleep(delay):
        clock.advance(delay)
        await asyncio.sleep(0)

    timer = TimerCorrector(ClientOptions(timer_tick=0.25), clock=clock, sleep=sleep)
    ticks = []
    expired = asyncio.Event()
    timer.events.on("tick", lambda data: ticks.append(data["remaining"]))
    timer.events.on("expired", lambda data: expired.set())

    timer.start(1.0)
    await asyncio.wait_for(expired.wait(), timeout=2)

    assert ticks == pytest.approx([1.0, 0.75, 0.5, 0.25, 0.0])
    assert not timer.running
