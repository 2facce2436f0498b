from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Optional
import threading
import time

from backend.recommender.errors import RecomputeCancelled


class Deadline:
    """Time budget plus cancel flag for a batch recompute, checked between blocks."""

    def __init__(
        self,
        timeout_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.clock = clock
        self.timeout_seconds = timeout_seconds
        self.expires_at = clock() + timeout_seconds if timeout_seconds is not None else None
        self._cancelled = threading.Event()

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def expired(self) -> bool:
        if self._cancelled.is_set():
            return True
        return self.expires_at is not None and self.clock() >= self.expires_at

    def check(self, report: "RecomputeReport") -> None:
        if self.expired():
            report.completed = False
            report.stop_clock()
            raise RecomputeCancelled(report)


@dataclass
class RecomputeReport:
    job: str
    total: int = 0          # entities to process (users or products)
    processed: int = 0
    rows_written: int = 0
    completed: bool = False
    started_at: float = field(default_factory=time.monotonic)
    duration_ms: float = 0.0

    def finish(self) -> "RecomputeReport":
        self.completed = True
        self.stop_clock()
        return self

    def stop_clock(self) -> None:
        self.duration_ms = (time.monotonic() - self.started_at) * 1000.0

    def to_dict(self) -> dict:
        return {
            "job": self.job,
            "total": self.total,
            "processed": self.processed,
            "rows_written": self.rows_written,
            "completed": self.completed,
            "duration_ms": round(self.duration_ms, 1),
        }
