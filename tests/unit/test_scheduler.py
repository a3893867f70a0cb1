import asyncio

import pytest
from prometheus_client import REGISTRY

from ops_worker.main import PERIODIC_TASKS, build_scheduler
from ops_worker.scheduler import Scheduler

pytestmark = [pytest.mark.unit, pytest.mark.asyncio]


def _sample(name: str, task: str) -> float:
    return REGISTRY.get_sample_value(name, {"task": task}) or 0.0


class FlakyTick:
    def __init__(self, failures: int):
        self.failures = failures
        self.calls = 0

    async def __call__(self, pool):
        self.calls += 1
        if self.calls <= self.failures:
            raise ConnectionError("database went away")
        return "ok"


async def test_tick_succeeds_after_retries():
    scheduler = Scheduler(pool=object())
    tick = FlakyTick(failures=2)
    task = scheduler.add("flaky_then_ok", tick, interval=60, max_attempts=3, retry_delay=0)
    retries_before = _sample("stationwatch_sweep_retries_total", "flaky_then_ok")

    assert await scheduler.run_once(task) is True

    assert tick.calls == 3
    assert _sample("stationwatch_sweep_retries_total", "flaky_then_ok") - retries_before == 2
    assert _sample("stationwatch_sweep_failures_total", "flaky_then_ok") == 0


async def test_tick_is_skipped_after_exhausting_attempts():
    scheduler = Scheduler(pool=object())
    tick = FlakyTick(failures=10)
    task = scheduler.add("always_broken", tick, interval=60, max_attempts=3, retry_delay=0)
    failures_before = _sample("stationwatch_sweep_failures_total", "always_broken")

    assert await scheduler.run_once(task) is False

    assert tick.calls == 3
    assert _sample("stationwatch_sweep_failures_total", "always_broken") - failures_before == 1


async def test_no_retry_once_stopping():
    scheduler = Scheduler(pool=object())
    tick = FlakyTick(failures=10)
    task = scheduler.add("stopping_task", tick, interval=60, max_attempts=5, retry_delay=0)
    scheduler.stop()

    assert await scheduler.run_once(task) is False
    assert tick.calls == 1


async def test_tick_receives_pool():
    pool = object()
    seen = []

    async def tick(p):
        seen.append(p)

    scheduler = Scheduler(pool=pool)
    await scheduler.run_once(scheduler.add("pool_check", tick, interval=60))
    assert seen == [pool]


async def test_duplicate_task_names_are_rejected():
    scheduler = Scheduler(pool=object())

    async def tick(pool):
        return None

    scheduler.add("dup", tick, interval=10)
    with pytest.raises(ValueError):
        scheduler.add("dup", tick, interval=10)


async def test_stop_finishes_in_flight_tick_and_schedules_no_more():
    scheduler = Scheduler(pool=object())
    calls = []

    async def tick(pool):
        calls.append("start")
        scheduler.stop()
        await asyncio.sleep(0)
        calls.append("done")

    scheduler.add("stop_mid_tick", tick, interval=3600)
    await asyncio.wait_for(scheduler.run(), timeout=5)

    assert calls == ["start", "done"]
    assert scheduler.stopping


async def test_stop_interrupts_sleep_between_ticks():
    scheduler = Scheduler(pool=object())
    calls = []

    async def tick(pool):
        calls.append(1)

    scheduler.add("long_interval", tick, interval=3600)
    runner = asyncio.create_task(scheduler.run())
    await asyncio.sleep(0.05)
    scheduler.stop()
    await asyncio.wait_for(runner, timeout=5)

    assert calls == [1]


async def test_ops_worker_registers_every_periodic_task():
    scheduler = build_scheduler(pool=object())
    assert set(scheduler.tasks) == {
        "clear_back_to_normal",
        "archive_recent",
        "purge_deleted",
        "expire_stale_active",
        "check_device_liveness",
        "check_sensor_liveness",
    }
    assert scheduler.tasks["check_device_liveness"].interval == PERIODIC_TASKS["check_device_liveness"][1]
