"""Hang detection for running repair jobs.

The ``TimeoutMonitor`` is evaluated by the worker pool on every drain tick.
It classifies running jobs against the wall-clock budget and reports the
ones that must be cancelled. It never cancels anything itself: the pool owns
job state and performs the cancellation.
"""

from __future__ import annotations

import time
from enum import Enum
from typing import Callable, Iterable

import structlog
from pydantic import BaseModel, Field

from bootrescue.models import Job, JobState

logger = structlog.get_logger(__name__)


class TimeoutSeverity(str, Enum):
    """Severity levels for long-running jobs.

    Severity thresholds:
    - WARNING: running > warning_ratio of the budget
    - TERMINAL: running >= 100% of the budget
    """

    WARNING = "warning"
    TERMINAL = "terminal"


class ExpiredJob(BaseModel):
    """A running job that has used up its time budget.

    Attributes:
        job_id: Scheduler job identifier
        elapsed_seconds: Seconds since the job started running
        timeout_seconds: Configured budget
    """

    job_id: str = Field(description="Job identifier")
    elapsed_seconds: float = Field(description="Seconds running")
    timeout_seconds: float = Field(description="Job timeout budget")


class TimeoutMonitor:
    """Detects running jobs that exceed the configured wall-clock budget.

    Jobs crossing ``warning_ratio`` of the budget are logged once; jobs at or
    past the budget are returned as ``ExpiredJob`` so the caller can cancel
    them.
    """

    def __init__(
        self,
        timeout_seconds: float,
        warning_ratio: float = 0.8,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the timeout monitor.

        Args:
            timeout_seconds: Wall-clock budget per job, must be positive
            warning_ratio: Fraction of the budget after which a warning is logged
            clock: Monotonic clock, shared with the worker pool
        """
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        self.timeout_seconds = timeout_seconds
        self.warning_ratio = warning_ratio
        self.clock = clock
        self._warned: set[str] = set()
        self._logger = logger.bind(component="TimeoutMonitor")

    def classify(self, elapsed_seconds: float) -> TimeoutSeverity | None:
        """Classify a running duration against the budget."""
        ratio = elapsed_seconds / self.timeout_seconds
        if ratio >= 1.0:
            return TimeoutSeverity.TERMINAL
        if ratio >= self.warning_ratio:
            return TimeoutSeverity.WARNING
        return None

    def evaluate(self, jobs: Iterable[Job], now: float | None = None) -> list[ExpiredJob]:
        """Check running jobs and return those past their budget.

        Args:
            jobs: Jobs known to the pool; only RUNNING ones are considered
            now: Current monotonic time, defaults to the monitor's clock

        Returns:
            Expired jobs, in the iteration order of ``jobs``
        """
        now = self.clock() if now is None else now
        expired: list[ExpiredJob] = []

        for job in jobs:
            if job.state != JobState.RUNNING or job.started_at is None:
                continue

            elapsed = job.running_seconds(now)
            severity = self.classify(elapsed)

            if severity == TimeoutSeverity.TERMINAL:
                expired.append(
                    ExpiredJob(
                        job_id=job.job_id,
                        elapsed_seconds=elapsed,
                        timeout_seconds=self.timeout_seconds,
                    )
                )
            elif severity == TimeoutSeverity.WARNING and job.job_id not in self._warned:
                self._warned.add(job.job_id)
                self._logger.warning(
                    "job_nearing_timeout",
                    job_id=job.job_id,
                    target=job.target.label,
                    elapsed_seconds=round(elapsed, 1),
                    timeout_seconds=self.timeout_seconds,
                )

        return expired

    def forget(self, job_id: str) -> None:
        """Drop tracking for a reaped job."""
        self._warned.discard(job_id)
