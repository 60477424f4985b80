"""GC lifecycle management for FastAPI lifespan integration."""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from tollgate.services.gc.scheduler import GCScheduler
from tollgate.services.gc.tasks import ExpiredKeyGC

if TYPE_CHECKING:
    from tollgate.config import ReaperConfig
    from tollgate.services.container import Services

logger = structlog.get_logger()

_gc_scheduler: GCScheduler | None = None


async def init_gc_scheduler(services: "Services", config: "ReaperConfig") -> GCScheduler:
    """Create the scheduler; run and start it when reaping is enabled.

    The scheduler always exists so a manual ``run_once`` stays possible.
    """
    global _gc_scheduler

    logger.info(
        "gc.init",
        enabled=config.enabled,
        interval_seconds=config.interval_seconds,
        run_on_startup=config.run_on_startup,
    )

    _gc_scheduler = GCScheduler(tasks=[ExpiredKeyGC(services.ledger)], config=config)

    if not config.enabled:
        logger.info("gc.background_disabled", reason="reaper.enabled=false")
        return _gc_scheduler

    if config.run_on_startup:
        try:
            results = await _gc_scheduler.run_once()
            logger.info(
                "gc.run_on_startup.complete",
                cleaned=sum(r.cleaned_count for r in results),
                errors=sum(len(r.errors) for r in results),
            )
        except Exception as e:
            # Startup proceeds; the loop retries on its next tick
            logger.exception("gc.run_on_startup.failed", error=str(e))

    await _gc_scheduler.start()
    return _gc_scheduler


async def shutdown_gc_scheduler() -> None:
    global _gc_scheduler

    if _gc_scheduler is not None:
        await _gc_scheduler.stop()
        _gc_scheduler = None


def get_gc_scheduler() -> GCScheduler | None:
    return _gc_scheduler
