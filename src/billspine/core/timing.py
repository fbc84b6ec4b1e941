"""
Timing utilities: wall-clock budgets and step timing logs.

- ``WallClockBudget`` — cooperative cancellation for batch jobs. Checked
  between units of work (table, batch), never interrupt-driven.
- ``log_step`` — context manager logging a step's start (DEBUG) and end
  (INFO, with ``duration_ms`` and any metrics added along the way).

Performance safety:
- Timer overhead is ~1μs (time.perf_counter)
- No logging inside row loops; callers log per table / per phase
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

from billspine.core.logging import get_logger

logger = get_logger(__name__)


class WallClockBudget:
    """Elapsed-time ceiling for a job.

    The budget is exhausted once ``elapsed >= seconds``, so a zero budget
    is exhausted before any work starts.

    Example:
        budget = WallClockBudget(300)
        for table in tables:
            if budget.exceeded():
                break
            process(table)
    """

    def __init__(self, seconds: float, *, clock: Callable[[], float] = time.monotonic) -> None:
        if seconds < 0:
            raise ValueError("budget seconds must be >= 0")
        self.seconds = seconds
        self._clock = clock
        self._started = clock()

    @property
    def elapsed(self) -> float:
        return self._clock() - self._started

    @property
    def remaining(self) -> float:
        return max(0.0, self.seconds - self.elapsed)

    def exceeded(self) -> bool:
        return self.elapsed >= self.seconds


@dataclass
class TimingResult:
    """Result of a timed step."""

    step: str
    started_at: float = field(default_factory=time.perf_counter)
    ended_at: float | None = None
    metrics: dict[str, Any] = field(default_factory=dict)

    def stop(self) -> TimingResult:
        self.ended_at = time.perf_counter()
        return self

    @property
    def duration_ms(self) -> float:
        end = self.ended_at if self.ended_at is not None else time.perf_counter()
        return (end - self.started_at) * 1000

    def add_metric(self, key: str, value: Any) -> TimingResult:
        """Add a metric to include in the end-of-step log."""
        self.metrics[key] = value
        return self


@contextmanager
def log_step(event: str, **extra_metrics: Any) -> Iterator[TimingResult]:
    """
    Log step start/end with timing.

    Usage:
        with log_step("reconcile.fetch", source_rows=1200) as timer:
            calls = fetch()
            timer.add_metric("fetch_calls", calls)

        # DEBUG reconcile.fetch.start source_rows=1200
        # INFO  reconcile.fetch.end   duration_ms=812.4 source_rows=1200 fetch_calls=9
    """
    timer = TimingResult(step=event, metrics=dict(extra_metrics))
    logger.debug(f"{event}.start", **extra_metrics)
    try:
        yield timer
    except Exception as exc:
        timer.stop()
        logger.error(
            f"{event}.failed",
            duration_ms=round(timer.duration_ms, 2),
            error_type=type(exc).__name__,
            error_message=str(exc),
            **timer.metrics,
        )
        raise
    timer.stop()
    logger.info(f"{event}.end", duration_ms=round(timer.duration_ms, 2), **timer.metrics)


__all__ = ["WallClockBudget", "TimingResult", "log_step"]
