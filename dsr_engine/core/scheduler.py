"""
Periodic task scheduling.

Services never schedule themselves; they expose plain coroutines and the
registry registers them with a ``Scheduler``:

    scheduler.register(timedelta(hours=24), lifecycle.run_scheduled_assessments,
                       name="retention_assessment")

Two implementations:
- AsyncioScheduler: one long-running coroutine per task, stopped through a
  shared shutdown event. Used by the API process.
- ManualScheduler: records registrations and runs them on demand, so tests
  can trigger the periodic work deterministically.

A failing task run is logged and the loop carries on with the next tick.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol

import structlog

log = structlog.get_logger(__name__)

PeriodicTask = Callable[[], Awaitable[Any]]


@dataclass
class ScheduledTask:
    """A registered periodic task and its run history."""
    name: str
    interval: timedelta
    task: PeriodicTask
    run_count: int = 0
    failure_count: int = 0
    last_run_at: datetime | None = None
    last_error: str | None = None

    async def run_once(self) -> Any:
        self.last_run_at = datetime.now(UTC)
        self.run_count += 1
        try:
            result = await self.task()
        except Exception as exc:
            self.failure_count += 1
            self.last_error = str(exc)
            log.error(
                "scheduler.task_failed",
                task=self.name,
                error=str(exc),
                failure_count=self.failure_count,
            )
            return None
        self.last_error = None
        log.debug("scheduler.task_completed", task=self.name, run_count=self.run_count)
        return result


class Scheduler(Protocol):
    def register(self, interval: timedelta, task: PeriodicTask, *, name: str | None = None) -> ScheduledTask: ...


class _Registry:
    def __init__(self) -> None:
        self._tasks: dict[str, ScheduledTask] = {}

    def register(self, interval: timedelta, task: PeriodicTask, *, name: str | None = None) -> ScheduledTask:
        if interval.total_seconds() <= 0:
            raise ValueError("Scheduling interval must be positive")
        task_name = name or getattr(task, "__qualname__", repr(task))
        if task_name in self._tasks:
            raise ValueError(f"Task already registered: {task_name}")
        scheduled = ScheduledTask(name=task_name, interval=interval, task=task)
        self._tasks[task_name] = scheduled
        log.info("scheduler.task_registered", task=task_name, interval_seconds=interval.total_seconds())
        return scheduled

    @property
    def tasks(self) -> list[ScheduledTask]:
        return list(self._tasks.values())

    def get(self, name: str) -> ScheduledTask | None:
        return self._tasks.get(name)


class ManualScheduler(_Registry):
    """Runs registered tasks only when asked to."""

    async def run(self, name: str) -> Any:
        scheduled = self.get(name)
        if scheduled is None:
            raise KeyError(name)
        return await scheduled.run_once()

    async def run_all(self) -> dict[str, Any]:
        """Run every task once, in registration order."""
        return {scheduled.name: await scheduled.run_once() for scheduled in self.tasks}


class AsyncioScheduler(_Registry):
    """
    Runs each registered task on its own interval inside the event loop.

    The first run of every task happens one interval after start().
    """

    def __init__(self) -> None:
        super().__init__()
        self._loops: list[asyncio.Task[None]] = []
        self._shutdown_event = asyncio.Event()
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            log.warning("scheduler.already_running")
            return

        self._running = True
        self._shutdown_event.clear()
        for scheduled in self.tasks:
            self._loops.append(asyncio.create_task(self._task_loop(scheduled), name=f"scheduler:{scheduled.name}"))
        log.info("scheduler.started", task_count=len(self._loops))

    async def stop(self) -> None:
        """Signal every loop to stop, letting an in-flight run finish."""
        if not self._running:
            return

        log.info("scheduler.shutdown_initiated")
        self._running = False
        self._shutdown_event.set()
        await asyncio.gather(*self._loops, return_exceptions=True)
        self._loops.clear()
        log.info(
            "scheduler.shutdown_complete",
            runs={t.name: t.run_count for t in self.tasks},
        )

    async def _task_loop(self, scheduled: ScheduledTask) -> None:
        interval = scheduled.interval.total_seconds()
        while not self._shutdown_event.is_set():
            try:
                # Sleep for one interval unless shutdown is signalled first
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=interval)
                break
            except TimeoutError:
                pass
            await scheduled.run_once()
