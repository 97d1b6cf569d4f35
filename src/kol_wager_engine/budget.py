"""Wall-clock budgets for batch jobs.

Batch jobs call RPC endpoints that can block for seconds. Instead of running
until an outer timeout kills them, they check a budget before starting each
unit of work and report how far they got.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field


class BatchBudget:
    """Deadline for starting new work within one batch invocation."""

    def __init__(self, seconds: float, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._deadline = clock() + seconds

    @classmethod
    def unlimited(cls) -> BatchBudget:
        return cls(float("inf"))

    def remaining(self) -> float:
        return max(0.0, self._deadline - self._clock())

    def exhausted(self) -> bool:
        return self._clock() >= self._deadline


@dataclass
class BatchProgress:
    """Result of a budgeted batch: processed N of M, resume from X."""

    total: int
    processed: int = 0
    resume_from: str | None = None
    stopped_early: bool = False
    skipped: list[str] = field(default_factory=list)

    def stop(self, next_key: str) -> None:
        self.stopped_early = True
        self.resume_from = next_key

    def summary(self) -> str:
        if self.stopped_early:
            return f"processed {self.processed} of {self.total}, resume from {self.resume_from}"
        return f"processed {self.processed} of {self.total}"
