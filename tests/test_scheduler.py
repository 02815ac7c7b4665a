import asyncio

import pytest

from synonym_client.scheduler import PollingScheduler, ScopedLoop


@pytest.fixture()
async def scheduler():
    s = PollingScheduler()
    yield s
    s.cancel_all()


async def test_first_poll_fires_immediately(scheduler):
    applied = []

    async def fetch():
        return "snapshot"

    handle = scheduler.start_loop(60, fetch, applied.append)
    await asyncio.sleep(0.01)
    assert applied == ["snapshot"]
    assert handle.invocations == 1


async def test_ticks_during_an_in_flight_poll_are_dropped(scheduler):
    gate = asyncio.Event()
    in_flight = 0
    peak = 0
    applied = []

    async def fetch():
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        await gate.wait()
        in_flight -= 1
        return "done"

    handle = scheduler.start_loop(0.01, fetch, applied.append)
    await asyncio.sleep(0.06)
    assert handle.invocations == 1
    assert handle.skipped_ticks >= 2
    assert peak == 1

    gate.set()
    await asyncio.sleep(0.005)
    assert applied[0] == "done"
    assert peak == 1


async def test_cancel_discards_in_flight_result(scheduler):
    pending = asyncio.get_running_loop().create_future()
    applied = []

    async def fetch():
        # Shielded so the underlying request outlives the cancellation, like a real network call.
        return await asyncio.shield(pending)

    handle = scheduler.start_loop(60, fetch, applied.append)
    await asyncio.sleep(0.01)
    assert handle.busy

    scheduler.cancel(handle)
    pending.set_result("late snapshot")
    await asyncio.sleep(0.01)

    assert applied == []
    assert not handle.active


async def test_cancel_is_idempotent_and_final(scheduler):
    calls = []

    async def fetch():
        calls.append(1)
        return None

    handle = scheduler.start_loop(0.01, fetch, lambda _r: None)
    await asyncio.sleep(0.03)
    scheduler.cancel(handle)
    scheduler.cancel(handle)
    seen = len(calls)
    await asyncio.sleep(0.05)
    assert len(calls) == seen
    assert scheduler.loops == []


async def test_fetch_errors_go_to_on_error_and_polling_continues(scheduler):
    errors = []
    attempts = []

    async def fetch():
        attempts.append(1)
        raise RuntimeError("network down")

    scheduler.start_loop(0.01, fetch, lambda _r: None, on_error=errors.append)
    await asyncio.sleep(0.05)
    assert len(errors) >= 2
    assert all(isinstance(e, RuntimeError) for e in errors)


async def test_scoped_loop_recreates_on_scope_change(scheduler):
    started = []

    def factory(key):
        started.append(key)

        async def fetch():
            return key

        return fetch, lambda _r: None, None

    scoped = ScopedLoop(scheduler, 60, factory, "lobby")
    scoped.set_scope("a")
    first = scoped.handle
    scoped.set_scope("a")
    assert scoped.handle is first

    scoped.set_scope("b")
    assert not first.active
    assert scoped.handle.active
    assert started == ["a", "b"]

    scoped.stop()
    assert scoped.handle is None
    assert scheduler.loops == []
