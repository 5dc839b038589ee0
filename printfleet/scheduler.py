"""
Periodic task scheduling for the monitoring service.

Ticks run on an APScheduler ``AsyncIOScheduler``. Each tick receives one
immutable ``ServiceSettings`` snapshot taken when the tick starts, so a
concurrent settings update never shows up halfway through a tick.
"""
from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from printfleet.models import ServiceSettings

LOGGER = logging.getLogger(__name__)

TickFunc = Callable[[ServiceSettings], Awaitable[Any]]


class SettingsStore:
    """Holds the current settings; readers always get a whole snapshot."""

    def __init__(self, settings: ServiceSettings | None = None) -> None:
        self._settings = settings or ServiceSettings()
        self._lock = threading.Lock()

    def snapshot(self) -> ServiceSettings:
        with self._lock:
            return self._settings

    def replace(self, settings: ServiceSettings) -> ServiceSettings:
        with self._lock:
            self._settings = settings
        LOGGER.info("Service settings replaced")
        return settings

    def update(self, **sections: Any) -> ServiceSettings:
        with self._lock:
            self._settings = dataclasses.replace(self._settings, **sections)
            updated = self._settings
        LOGGER.info("Service settings updated: %s", ", ".join(sorted(sections)))
        return updated


class TaskHandle:
    """Cancellation handle for one scheduled task."""

    def __init__(self, scheduler: "Scheduler", name: str) -> None:
        self._scheduler = scheduler
        self.name = name

    @property
    def running(self) -> bool:
        return self.name in self._scheduler._running

    def cancel(self) -> None:
        self._scheduler.cancel(self.name)


class Scheduler:
    def __init__(self, settings: SettingsStore, scheduler: AsyncIOScheduler | None = None) -> None:
        self.settings = settings
        self.scheduler = scheduler or AsyncIOScheduler(timezone=timezone.utc)
        self._tasks: dict[str, TickFunc] = {}
        self._running: dict[str, asyncio.Task] = {}

    def add(self, name: str, interval: timedelta, func: TickFunc, run_immediately: bool = False) -> TaskHandle:
        self._tasks[name] = func
        options: dict[str, Any] = {}
        if run_immediately:
            # None would add the job paused, so only pass a start time when wanted
            options["next_run_time"] = datetime.now(timezone.utc)
        # jobs added before start() sit in a pending list that ignores replace_existing
        with contextlib.suppress(JobLookupError):
            self.scheduler.remove_job(name)
        self.scheduler.add_job(
            self._run,
            trigger=IntervalTrigger(seconds=interval.total_seconds()),
            args=[name],
            id=name,
            name=name,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            **options,
        )
        LOGGER.info("Scheduled %s every %s", name, interval)
        return TaskHandle(self, name)

    def job_ids(self) -> list[str]:
        return sorted(job.id for job in self.scheduler.get_jobs())

    async def run_now(self, name: str) -> Any:
        return await self._run(name)

    async def _run(self, name: str) -> Any:
        func = self._tasks.get(name)
        if func is None:
            return None
        snapshot = self.settings.snapshot()
        task = asyncio.current_task()
        if task is not None:
            self._running[name] = task
        try:
            return await func(snapshot)
        except asyncio.CancelledError:
            LOGGER.info("Task %s cancelled", name)
            raise
        except Exception:  # noqa: BLE001
            LOGGER.exception("Scheduled task %s failed", name)
            return None
        finally:
            if self._running.get(name) is task:
                del self._running[name]

    def cancel(self, name: str) -> None:
        self._tasks.pop(name, None)
        try:
            self.scheduler.remove_job(name)
        except JobLookupError:
            pass
        task = self._running.pop(name, None)
        if task is not None and not task.done():
            task.cancel()
        LOGGER.info("Cancelled task %s", name)

    def start(self) -> None:
        if not self.scheduler.running:
            self.scheduler.start()

    def shutdown(self) -> None:
        for name in list(self._tasks):
            self.cancel(name)
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
