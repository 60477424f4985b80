"""Building blocks for maintenance tasks run by ``GCScheduler``."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field


@dataclass
class GCResult:
    """Outcome of one task pass: rows removed plus any per-item errors."""

    task_name: str = ""
    cleaned_count: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors

    def add_error(self, error: str) -> None:
        self.errors.append(error)


class GCTask(ABC):
    @property
    @abstractmethod
    def name(self) -> str:
        """Stable identifier used in logs and results."""

    @abstractmethod
    async def run(self) -> GCResult:
        """Do one pass.

        Expected failures go into ``GCResult.errors``; anything raised is
        caught and recorded by the scheduler.
        """
