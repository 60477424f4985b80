"""GC task implementations."""

from tollgate.services.gc.tasks.expired_keys import ExpiredKeyGC

__all__ = ["ExpiredKeyGC"]
