"""
Named periodic tasks sharing one retry policy and one shutdown switch.

Each task runs in its own loop: tick, then sleep ``interval`` seconds. A tick
that raises is retried up to ``max_attempts`` times with a fixed delay, then
logged and skipped until the next run. Stopping the scheduler lets in-flight
ticks finish and schedules no new ones.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from shared.config import SWEEP_MAX_ATTEMPTS, SWEEP_RETRY_DELAY_SECONDS
from shared.logging import new_trace
from shared.metrics import (
    db_pool_free,
    db_pool_size,
    processing_duration_seconds,
    sweep_failures_total,
    sweep_retries_total,
)

logger = logging.getLogger(__name__)

TickFn = Callable[..., Awaitable[object]]


@dataclass
class PeriodicTask:
    name: str
    fn: TickFn
    interval: float
    max_attempts: int = SWEEP_MAX_ATTEMPTS
    retry_delay: float = SWEEP_RETRY_DELAY_SECONDS


class Scheduler:
    def __init__(self, pool, service: str = "ops_worker"):
        self.pool = pool
        self.service = service
        self.tasks: dict[str, PeriodicTask] = {}
        self._stop = asyncio.Event()
        self._loops: list[asyncio.Task] = []

    def add(
        self,
        name: str,
        fn: TickFn,
        interval: float,
        max_attempts: Optional[int] = None,
        retry_delay: Optional[float] = None,
    ) -> PeriodicTask:
        if name in self.tasks:
            raise ValueError(f"periodic task {name!r} already registered")
        task = PeriodicTask(
            name=name,
            fn=fn,
            interval=interval,
            max_attempts=max_attempts if max_attempts is not None else SWEEP_MAX_ATTEMPTS,
            retry_delay=retry_delay if retry_delay is not None else SWEEP_RETRY_DELAY_SECONDS,
        )
        self.tasks[name] = task
        return task

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def stop(self) -> None:
        self._stop.set()

    async def _sleep(self, seconds: float) -> None:
        """Sleep that returns early when the scheduler is stopped."""
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def run_once(self, task: PeriodicTask) -> bool:
        """One tick with bounded retries. Returns False when every attempt failed."""
        with new_trace():
            logger.info("tick_start", extra={"tick": task.name})
            tick_start = time.monotonic()
            for attempt in range(1, task.max_attempts + 1):
                try:
                    await task.fn(self.pool)
                except asyncio.CancelledError:
                    raise
                except Exception:
                    if attempt >= task.max_attempts or self.stopping:
                        sweep_failures_total.labels(task=task.name).inc()
                        logger.exception(
                            "tick failed, skipping until next run",
                            extra={"tick": task.name, "attempts": attempt},
                        )
                        return False
                    sweep_retries_total.labels(task=task.name).inc()
                    logger.warning(
                        "tick failed, retrying",
                        extra={"tick": task.name, "attempt": attempt, "retry_in": task.retry_delay},
                        exc_info=True,
                    )
                    await self._sleep(task.retry_delay)
                    continue

                processing_duration_seconds.labels(
                    service=self.service,
                    operation=task.name,
                ).observe(time.monotonic() - tick_start)
                logger.info("tick_done", extra={"tick": task.name, "attempts": attempt})
                return True
            return False

    def _report_pool(self) -> None:
        get_size = getattr(self.pool, "get_size", None)
        if get_size is None:
            return
        db_pool_size.labels(service=self.service).set(get_size())
        db_pool_free.labels(service=self.service).set(self.pool.get_idle_size())

    async def _loop(self, task: PeriodicTask) -> None:
        while not self.stopping:
            await self.run_once(task)
            self._report_pool()
            await self._sleep(task.interval)
        logger.info("periodic task stopped", extra={"tick": task.name})

    async def run(self) -> None:
        """Run every registered task until stop() is called."""
        self._loops = [
            asyncio.create_task(self._loop(task), name=task.name)
            for task in self.tasks.values()
        ]
        logger.info("scheduler started", extra={"tasks": list(self.tasks)})
        try:
            await asyncio.gather(*self._loops)
        finally:
            for loop_task in self._loops:
                loop_task.cancel()
            self._loops = []
