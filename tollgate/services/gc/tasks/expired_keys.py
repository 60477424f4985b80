"""ExpiredKeyGC - remove expired and long-unused API keys."""

from __future__ import annotations

import structlog
from sqlalchemy.exc import SQLAlchemyError

from tollgate.services.gc.base import GCResult, GCTask
from tollgate.services.keys.ledger import KeyLedger

logger = structlog.get_logger()


class ExpiredKeyGC(GCTask):
    """GC task wrapping ``KeyLedger.reap``.

    Trigger condition:
        api_key.expires_at <= now
        OR last use (creation if never used) older than the retention window

    Action:
        Delete matching keys, then resync each user's active key count
    """

    def __init__(self, ledger: KeyLedger) -> None:
        self._ledger = ledger
        self._log = logger.bind(gc_task="expired_keys")

    @property
    def name(self) -> str:
        return "expired_keys"

    async def run(self) -> GCResult:
        result = GCResult(task_name=self.name)
        try:
            result.cleaned_count = await self._ledger.reap()
        except SQLAlchemyError as e:
            self._log.warning("gc.expired_keys.failed", error=str(e))
            result.add_error(str(e))
        return result
