"""Bounded concurrent worker pool for one subscription batch.

The pool runs up to ``max_concurrent_jobs`` repair state machines at once,
each in its own asyncio task. Workers never touch job bookkeeping: they
publish their outcome on a result queue, and the pool's tick (run from
``enqueue`` while waiting for a slot and from ``drain``) is the single writer
that reaps outcomes, enforces the timeout policy and moves jobs to their
terminal state.

Each tick:
1. Reap every outcome published since the last tick.
2. Ask the ``TimeoutMonitor`` for running jobs past their budget and cancel them.
3. Log progress when the progress interval has elapsed.
"""

from __future__ import annotations

import asyncio
import time
from collections import Counter
from typing import Any, Awaitable, Callable

import structlog

from bootrescue.errors import JobTimeoutError
from bootrescue.models import Job, JobState, RepairOutcome, Target
from bootrescue.orchestrator.state_machine import ensure_transition
from bootrescue.orchestrator.watchdog import ExpiredJob, TimeoutMonitor

logger = structlog.get_logger(__name__)

# Runs one target to a terminal outcome; receives the scheduler job id.
Runner = Callable[[Target, str], Awaitable[RepairOutcome]]
OutcomeCallback = Callable[[RepairOutcome], None]


class WorkerPool:
    """Executes repair jobs with bounded concurrency and a hang timeout.

    Attributes:
        runner: Coroutine function running one target to completion.
        max_concurrent_jobs: Maximum number of jobs in RUNNING state.
        job_timeout_seconds: Wall-clock budget of a running job.
        poll_interval_seconds: Seconds between ticks.
    """

    def __init__(
        self,
        runner: Runner,
        max_concurrent_jobs: int,
        job_timeout_seconds: float,
        poll_interval_seconds: float = 1.0,
        *,
        monitor: TimeoutMonitor | None = None,
        on_outcome: OutcomeCallback | None = None,
        progress_interval_seconds: float = 60.0,
        cancel_grace_seconds: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the worker pool.

        Args:
            runner: Coroutine function ``(target, job_id) -> RepairOutcome``.
            max_concurrent_jobs: Concurrency bound, must be >= 1.
            job_timeout_seconds: Budget after which a running job is cancelled.
            poll_interval_seconds: Seconds between ticks.
            monitor: Timeout monitor; built from ``job_timeout_seconds`` if omitted.
            on_outcome: Called once per reaped outcome, in reaping order.
            progress_interval_seconds: Seconds between progress log lines.
            cancel_grace_seconds: Seconds to wait for cancelled workers to unwind.
            clock: Monotonic clock shared with the monitor.
        """
        if max_concurrent_jobs < 1:
            raise ValueError("max_concurrent_jobs must be >= 1")
        if poll_interval_seconds <= 0:
            raise ValueError("poll_interval_seconds must be > 0")

        self.runner = runner
        self.max_concurrent_jobs = max_concurrent_jobs
        self.job_timeout_seconds = job_timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.progress_interval_seconds = progress_interval_seconds
        self.cancel_grace_seconds = cancel_grace_seconds
        self.clock = clock
        self.monitor = monitor or TimeoutMonitor(job_timeout_seconds, clock=clock)
        self.on_outcome = on_outcome

        self._jobs: dict[str, Job] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._cancelled: set[asyncio.Task[None]] = set()
        self._results: asyncio.Queue[tuple[str, RepairOutcome]] = asyncio.Queue()
        self._outcomes: list[RepairOutcome] = []
        self._enqueued_total: int = 0
        self._last_progress_at: float = clock()
        self._logger = logger.bind(component="WorkerPool")

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def running_count(self) -> int:
        """Number of jobs currently in RUNNING state."""
        return sum(1 for job in self._jobs.values() if job.state == JobState.RUNNING)

    @property
    def available_slots(self) -> int:
        return max(0, self.max_concurrent_jobs - self.running_count)

    @property
    def outcomes(self) -> list[RepairOutcome]:
        """Outcomes reaped so far, in reaping order."""
        return list(self._outcomes)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def enqueue(self, target: Target) -> Job:
        """Dispatch a target, waiting for a free slot if the pool is full.

        While waiting, the pool keeps ticking so finished jobs are reaped
        and hung jobs are timed out.

        Args:
            target: The target to repair.

        Returns:
            The job handle, already in RUNNING state.
        """
        job = Job(target=target, enqueued_at=self.clock())
        self._jobs[job.job_id] = job
        self._enqueued_total += 1
        self._logger.debug("job_queued", job_id=job.job_id, target=target.label)

        try:
            self._tick()
            while self.running_count >= self.max_concurrent_jobs:
                await asyncio.sleep(self.poll_interval_seconds)
                self._tick()
        except asyncio.CancelledError:
            # A job that never launched has no worker to reap it
            self._jobs.pop(job.job_id, None)
            self._enqueued_total -= 1
            self._logger.info("job_enqueue_cancelled", job_id=job.job_id, target=target.label)
            raise

        self._launch(job)
        return job

    async def drain(self) -> list[RepairOutcome]:
        """Wait until every enqueued job has been reaped.

        Returns:
            All outcomes reaped by this pool, in reaping order.
        """
        self._logger.info(
            "drain_started",
            pending=len(self._jobs),
            reaped=len(self._outcomes),
        )
        try:
            self._tick()
            while self._jobs:
                await asyncio.sleep(self.poll_interval_seconds)
                self._tick()
        except asyncio.CancelledError:
            self._cancel_all()
            raise

        await self._collect_cancelled()
        self._logger.info("drain_finished", **self.get_stats())
        return list(self._outcomes)

    def get_stats(self) -> dict[str, Any]:
        """Aggregate counters for progress reporting."""
        reaped = Counter(o.state.value for o in self._outcomes)
        return {
            "enqueued": self._enqueued_total,
            "running": self.running_count,
            "reaped": len(self._outcomes),
            "completed": reaped.get(JobState.COMPLETED.value, 0),
            "failed": reaped.get(JobState.FAILED.value, 0),
            "skipped": reaped.get(JobState.SKIPPED.value, 0),
            "timed_out": reaped.get(JobState.TIMED_OUT.value, 0),
        }

    # ------------------------------------------------------------------
    # Worker execution
    # ------------------------------------------------------------------

    def _launch(self, job: Job) -> None:
        ensure_transition(job.state, JobState.RUNNING, job.job_id)
        job.state = JobState.RUNNING
        job.started_at = self.clock()

        self._tasks[job.job_id] = asyncio.create_task(
            self._run_worker(job.job_id, job.target),
            name=f"repair-{job.job_id}",
        )
        self._logger.info(
            "job_started",
            job_id=job.job_id,
            target=job.target.label,
            running=self.running_count,
            max_concurrent_jobs=self.max_concurrent_jobs,
        )

    async def _run_worker(self, job_id: str, target: Target) -> None:
        """Run one target and publish its outcome on the result queue."""
        try:
            outcome = await self.runner(target, job_id)
        except Exception as e:
            self._logger.exception("worker_execution_error", job_id=job_id)
            outcome = RepairOutcome(
                target=target,
                state=JobState.FAILED,
                reason="worker error",
                detail=f"{type(e).__name__}: {e}",
            )

        if not outcome.state.is_terminal or outcome.state == JobState.TIMED_OUT:
            outcome = outcome.model_copy(
                update={
                    "state": JobState.FAILED,
                    "reason": "worker error",
                    "detail": f"runner returned non-final state {outcome.state.value}",
                }
            )
        self._results.put_nowait((job_id, outcome))

    # ------------------------------------------------------------------
    # Tick: reap, time out, report
    # ------------------------------------------------------------------

    def _tick(self) -> None:
        self._reap_finished()
        self._enforce_timeouts()

        now = self.clock()
        if now - self._last_progress_at >= self.progress_interval_seconds:
            self._last_progress_at = now
            self._logger.info("drain_progress", **self.get_stats())

    def _reap_finished(self) -> None:
        while True:
            try:
                job_id, outcome = self._results.get_nowait()
            except asyncio.QueueEmpty:
                return

            job = self._jobs.get(job_id)
            if job is None or job.state != JobState.RUNNING:
                self._logger.warning(
                    "late_result_discarded",
                    job_id=job_id,
                    target=outcome.target.label,
                    outcome=outcome.state.value,
                )
                continue

            self._tasks.pop(job_id, None)
            self._finish(job, outcome)

    def _enforce_timeouts(self) -> None:
        for expired in self.monitor.evaluate(list(self._jobs.values()), self.clock()):
            job = self._jobs.get(expired.job_id)
            if job is None:
                continue
            self._cancel_worker(expired)
            error = JobTimeoutError(job.job_id, expired.elapsed_seconds, expired.timeout_seconds)
            self._finish(
                job,
                RepairOutcome(
                    target=job.target,
                    state=JobState.TIMED_OUT,
                    reason="time budget exceeded",
                    detail=str(error),
                    duration_seconds=expired.elapsed_seconds,
                ),
            )

    def _cancel_worker(self, expired: ExpiredJob) -> None:
        task = self._tasks.pop(expired.job_id, None)
        self._logger.warning(
            "job_timed_out",
            job_id=expired.job_id,
            elapsed_seconds=round(expired.elapsed_seconds, 1),
            timeout_seconds=expired.timeout_seconds,
        )
        if task is not None and not task.done():
            task.cancel()
            self._cancelled.add(task)

    def _finish(self, job: Job, outcome: RepairOutcome) -> None:
        """Move a job to its terminal state and surface its outcome once."""
        ensure_transition(job.state, outcome.state, job.job_id)
        job.state = outcome.state
        self._jobs.pop(job.job_id, None)
        self.monitor.forget(job.job_id)
        self._outcomes.append(outcome)

        self._logger.info(
            "job_reaped",
            job_id=job.job_id,
            target=job.target.label,
            state=outcome.state.value,
            reason=outcome.reason,
            duration_seconds=round(outcome.duration_seconds, 1),
        )

        if self.on_outcome is not None:
            try:
                self.on_outcome(outcome)
            except Exception:
                self._logger.exception("outcome_callback_error", job_id=job.job_id)

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    async def _collect_cancelled(self) -> None:
        """Give cancelled workers a grace period, then log the ones still running."""
        pending = {task for task in self._cancelled if not task.done()}
        if pending and self.cancel_grace_seconds > 0:
            _, pending = await asyncio.wait(pending, timeout=self.cancel_grace_seconds)

        for task in self._cancelled - pending:
            if not task.cancelled() and task.exception() is not None:
                self._logger.warning(
                    "cancelled_worker_error",
                    task=task.get_name(),
                    error=str(task.exception()),
                )
        for task in pending:
            # The remote operation may still finish and leave resources behind.
            self._logger.warning("orphaned_worker", task=task.get_name())

        self._cancelled = set(pending)

    def _cancel_all(self) -> None:
        for task in self._tasks.values():
            if not task.done():
                task.cancel()
        self._logger.warning("worker_pool_cancelled", running=len(self._tasks))
        self._tasks.clear()


__all__ = ["OutcomeCallback", "Runner", "WorkerPool"]
