"""Named background tasks (periodic or one-shot).

At most one running instance per name: starting a running task is a no-op,
stopping cancels it. Work is an async callable; a failing run is logged and
the periodic schedule carries on.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

log = logging.getLogger(__name__)

Work = Callable[[], Awaitable[Any]]


@dataclass(slots=True)
class BackgroundTask:
    name: str
    work: Work
    interval_s: float = 0.0  # 0 -> one-shot
    handle: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self.handle is not None and not self.handle.done()


class TaskRegistry:
    """Owns a set of named background tasks."""

    def __init__(self) -> None:
        self._tasks: dict[str, BackgroundTask] = {}

    def register(self, name: str, work: Work, interval_s: float = 0.0) -> None:
        existing = self._tasks.get(name)
        if existing is not None and existing.running:
            existing.handle.cancel()  # type: ignore[union-attr]
        self._tasks[name] = BackgroundTask(name=name, work=work, interval_s=interval_s)

    def is_running(self, name: str) -> bool:
        task = self._tasks.get(name)
        return task.running if task else False

    def start(self, name: str) -> bool:
        task = self._tasks.get(name)
        if task is None:
            log.warning("unknown background task: %s", name)
            return False
        if task.running:
            return True
        log.info("starting task: %s", name)
        task.handle = asyncio.create_task(self._run(task), name=f"task-{name}")
        return True

    def stop(self, name: str) -> bool:
        task = self._tasks.get(name)
        if task is None:
            return False
        if task.running:
            log.info("stopping task: %s", name)
            task.handle.cancel()  # type: ignore[union-attr]
        task.handle = None
        return True

    def stop_all(self) -> None:
        for name in list(self._tasks):
            self.stop(name)

    def running_names(self) -> list[str]:
        return [name for name, task in self._tasks.items() if task.running]

    async def _run(self, task: BackgroundTask) -> None:
        if task.interval_s <= 0:
            await self._run_once(task)
            return
        while True:
            await asyncio.sleep(task.interval_s)
            await self._run_once(task)

    @staticmethod
    async def _run_once(task: BackgroundTask) -> None:
        try:
            await task.work()
        except asyncio.CancelledError:
            raise
        except Exception:
            log.exception("background task %s failed", task.name)
