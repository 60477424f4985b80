"""Background maintenance (key reaping)."""

from tollgate.services.gc.base import GCResult, GCTask
from tollgate.services.gc.scheduler import GCScheduler

__all__ = ["GCResult", "GCScheduler", "GCTask"]
