"""GCScheduler - periodic maintenance loop."""

from __future__ import annotations

import asyncio
import contextlib
from datetime import datetime
from typing import TYPE_CHECKING

import structlog

from tollgate.services.gc.base import GCResult, GCTask
from tollgate.utils.datetime import utcnow

if TYPE_CHECKING:
    from tollgate.config import ReaperConfig

logger = structlog.get_logger()


class GCScheduler:
    """Runs GC tasks one after another, every ``interval_seconds``.

    A task that raises is logged and reported as a failed ``GCResult``;
    the remaining tasks of the cycle still run. Cycles never overlap,
    whether triggered by the loop or by a direct ``run_once``.
    """

    def __init__(self, tasks: list[GCTask], config: "ReaperConfig") -> None:
        self._tasks = list(tasks)
        self._interval = config.interval_seconds
        self._log = logger.bind(component="gc_scheduler")

        self._cycle_lock = asyncio.Lock()
        self._stopping = asyncio.Event()
        self._loop_task: asyncio.Task | None = None

        self.last_run_at: datetime | None = None
        self.last_results: list[GCResult] = []

    @property
    def is_running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    async def run_once(self) -> list[GCResult]:
        """Run every task once and return their results in task order."""
        async with self._cycle_lock:
            results = [await self._run_task(task) for task in self._tasks]
            self.last_run_at = utcnow()
            self.last_results = results

        self._log.info(
            "gc.cycle.complete",
            tasks=len(results),
            cleaned=sum(r.cleaned_count for r in results),
            errors=sum(len(r.errors) for r in results),
        )
        return results

    async def _run_task(self, task: GCTask) -> GCResult:
        try:
            result = await task.run()
        except Exception as e:
            self._log.exception("gc.task.failed", task=task.name)
            result = GCResult(task_name=task.name)
            result.add_error(f"{type(e).__name__}: {e}")
            return result

        result.task_name = task.name
        for error in result.errors:
            self._log.warning("gc.task.error", task=task.name, error=error)
        self._log.debug("gc.task.complete", task=task.name, cleaned=result.cleaned_count)
        return result

    async def start(self) -> None:
        if self.is_running:
            self._log.warning("gc.scheduler.already_running")
            return

        self._stopping.clear()
        self._loop_task = asyncio.create_task(self._loop(), name="tollgate-gc")
        self._log.info("gc.scheduler.started", interval_seconds=self._interval)

    async def stop(self) -> None:
        """Signal the loop and wait for the cycle in progress to finish."""
        task, self._loop_task = self._loop_task, None
        if task is None:
            return

        self._stopping.set()
        await task
        self._log.info("gc.scheduler.stopped")

    async def _loop(self) -> None:
        while not self._stopping.is_set():
            try:
                await self.run_once()
            except Exception:
                self._log.exception("gc.cycle.failed")

            # Wakes early when stop() is called
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._stopping.wait(), timeout=self._interval)
