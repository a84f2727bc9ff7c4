import asyncio
import time

import pytest

from vibecurve.scheduler import JobKind, Scheduler

from conftest import eventually


@pytest.mark.asyncio
async def test_once_fires_and_unregisters(scheduler):
    fired = []

    async def cb():
        fired.append(time.monotonic())

    scheduler.schedule_once("s1", JobKind.DCA_INTERVAL, 0.01, cb)
    assert len(scheduler.jobs("s1")) == 1
    await eventually(lambda: not scheduler.jobs("s1"))
    assert len(fired) == 1


@pytest.mark.asyncio
async def test_recurring_stops_when_callback_returns_true(scheduler):
    ticks = []

    async def cb():
        ticks.append(1)
        return len(ticks) == 3

    scheduler.schedule_every("s1", JobKind.GRID_LEVEL, 0.001, cb, immediate=True)
    await eventually(lambda: not scheduler.jobs("s1"))
    assert len(ticks) == 3


@pytest.mark.asyncio
async def test_failing_tick_does_not_kill_the_job(scheduler):
    ticks = []

    async def cb():
        ticks.append(1)
        if len(ticks) == 1:
            raise RuntimeError("venue hiccup")

    scheduler.schedule_every("s1", JobKind.PRICE_MONITOR, 0.001, cb)
    await eventually(lambda: len(ticks) >= 3)
    assert scheduler.jobs("s1")
    await scheduler.shutdown()


@pytest.mark.asyncio
async def test_cancel_owner_scopes_by_owner_and_kind(scheduler):
    async def cb():
        return None

    scheduler.schedule_every("a", JobKind.PRICE_MONITOR, 10, cb)
    scheduler.schedule_once("a", JobKind.DCA_INTERVAL, 10, cb)
    scheduler.schedule_once("a", JobKind.DCA_INTERVAL, 20, cb)
    scheduler.schedule_every("b", JobKind.PRICE_MONITOR, 10, cb)

    assert scheduler.cancel_owner("a", JobKind.DCA_INTERVAL) == 2
    assert [j.kind for j in scheduler.jobs("a")] == [JobKind.PRICE_MONITOR]
    assert scheduler.cancel_owner("a") == 1
    assert scheduler.cancel_owner("a") == 0
    assert len(scheduler.jobs("b")) == 1
    await scheduler.shutdown()
    assert scheduler.jobs() == []


@pytest.mark.asyncio
async def test_next_fire_time(scheduler):
    async def cb():
        return None

    now = time.time()
    scheduler.schedule_once("a", JobKind.DCA_INTERVAL, 30, cb)
    scheduler.schedule_once("a", JobKind.DCA_INTERVAL, 5, cb)
    scheduler.schedule_every("a", JobKind.PRICE_MONITOR, 1, cb)

    assert scheduler.next_fire_time("a", JobKind.DCA_INTERVAL) == pytest.approx(now + 5, abs=0.5)
    assert scheduler.next_fire_time("a") == pytest.approx(now + 1, abs=0.5)
    assert scheduler.next_fire_time("nobody") is None
    await scheduler.shutdown()


@pytest.mark.asyncio
async def test_job_cancelling_its_own_owner_finishes_tick(logger):
    scheduler = Scheduler(logger)
    finished = []

    async def cb():
        scheduler.cancel_owner("s1")
        await asyncio.sleep(0)
        finished.append(True)

    scheduler.schedule_every("s1", JobKind.PRICE_MONITOR, 0.001, cb, immediate=True)
    await eventually(lambda: finished)
    await asyncio.sleep(0.01)
    assert finished == [True]
    assert scheduler.jobs() == []
