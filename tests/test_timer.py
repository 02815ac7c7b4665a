import asyncio

import pytest

from synonym_client.timer import CountdownTimer, format_countdown, normalize_epoch_ms

from conftest import FakeClock, T0


def test_normalize_accepts_seconds_and_milliseconds():
    assert normalize_epoch_ms(1_700_000_000) == 1_700_000_000_000
    assert normalize_epoch_ms(1_700_000_000.5) == 1_700_000_000_500
    assert normalize_epoch_ms(1_700_000_000_123) == 1_700_000_000_123


@pytest.mark.parametrize("offsets", [
    [0, 1000, 2000, 3000, 4000, 5000, 6000],
    [10, 2500, 2600, 4999, 12000, 20000],
    [4000, 4000, 9000],
    [6000],
])
def test_irregular_sampling_converges_to_zero_and_expires_once(offsets):
    clock = FakeClock()
    expiries = []
    timer = CountdownTimer(clock=clock, autorun=False)
    timer.start(T0 + 5000, on_expire=lambda: expiries.append(clock.now))

    samples = []
    for offset in offsets:
        clock.now = T0 + offset
        samples.append(timer.sample())

    assert samples == sorted(samples, reverse=True)
    assert samples[-1] == 0
    assert timer.remaining == 0
    assert len(expiries) == 1


def test_remaining_is_recomputed_not_decremented():
    clock = FakeClock()
    timer = CountdownTimer(clock=clock, autorun=False)
    timer.start(T0 + 5000)
    clock.advance(3700)
    assert timer.sample() == 1300


def test_new_anchor_restarts_cleanly():
    clock = FakeClock()
    fired = []
    timer = CountdownTimer(clock=clock, autorun=False)
    timer.start(T0 + 1000, on_expire=lambda: fired.append("first"))
    timer.start(T0 + 3000, on_expire=lambda: fired.append("second"))

    clock.advance(1500)
    assert timer.sample() == 1500
    clock.advance(2000)
    assert timer.sample() == 0
    assert fired == ["second"]


def test_cancelled_timer_never_fires():
    clock = FakeClock()
    fired = []
    timer = CountdownTimer(clock=clock, autorun=False)
    timer.start(T0 + 1000, on_expire=lambda: fired.append(1))
    timer.cancel()
    clock.advance(2000)
    timer.sample()
    assert fired == []


def test_anchor_in_the_past_expires_on_start():
    clock = FakeClock()
    fired = []
    timer = CountdownTimer(clock=clock, autorun=False)
    assert timer.start(T0 - 10, on_expire=lambda: fired.append(1)) == 0
    assert fired == [1]


def test_format_countdown():
    assert format_countdown(0) == "Game Starting..."
    assert format_countdown(4001) == "Starting in 5s"
    assert format_countdown(1000) == "Starting in 1s"


async def test_background_ticks_reach_expiry():
    fired = []
    ticks = []
    timer = CountdownTimer(tick_interval=0.01)
    anchor = timer._clock() + 50
    timer.start(anchor, on_tick=ticks.append, on_expire=lambda: fired.append(1))
    await asyncio.sleep(0.2)
    assert fired == [1]
    assert ticks[-1] == 0
    assert not timer.running
