"""Top-level batch orchestrator.

The ``Orchestrator`` processes subscriptions strictly one after another.
For each subscription it walks through explicit phases:

    AUTHENTICATING -> RESOLVING -> DISPATCHING -> DRAINING -> (next subscription)

Authentication runs again at the start of every batch, and the resolved
subscription context holds for the whole batch. Setup failures
(authentication, subscription resolution) are fatal for the run; every
per-target failure stays inside its worker.
"""

from __future__ import annotations

from enum import Enum
from typing import Iterable

import structlog

from bootrescue.config import RescueConfig
from bootrescue.control_plane.base import ControlPlane
from bootrescue.errors import BatchSetupError, ControlPlaneError
from bootrescue.logging import set_run_id
from bootrescue.models import (
    BatchReport,
    SubscriptionGroup,
    SubscriptionReport,
    TargetRecord,
)
from bootrescue.orchestrator.grouper import group_by_subscription
from bootrescue.orchestrator.state_machine import RepairStateMachine
from bootrescue.orchestrator.worker_pool import OutcomeCallback, WorkerPool

logger = structlog.get_logger(__name__)


class OrchestratorPhase(str, Enum):
    """Phases of one subscription batch."""

    IDLE = "idle"
    AUTHENTICATING = "authenticating"
    RESOLVING = "resolving"
    DISPATCHING = "dispatching"
    DRAINING = "draining"
    FINISHED = "finished"


class Orchestrator:
    """Runs the repair engine over a list of targets, one subscription at a time.

    Attributes:
        control_plane: Control plane shared by the orchestrator and all workers.
        config: Root configuration.
        state_machine: Per-target repair state machine.
        phase: Current phase of the batch in progress.
    """

    def __init__(
        self,
        control_plane: ControlPlane,
        config: RescueConfig,
        state_machine: RepairStateMachine | None = None,
        on_outcome: OutcomeCallback | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            control_plane: Control plane implementation.
            config: Root configuration (scheduler, repair and Azure sections).
            state_machine: Repair state machine; built from config if omitted.
            on_outcome: Called once per target outcome as soon as it is reaped.
        """
        self.control_plane = control_plane
        self.config = config
        self.state_machine = state_machine or RepairStateMachine(
            control_plane, config.repair
        )
        self.on_outcome = on_outcome
        self.phase = OrchestratorPhase.IDLE
        self._logger = logger.bind(component="Orchestrator")

    async def run(self, records: Iterable[TargetRecord]) -> BatchReport:
        """Repair all targets, grouped and sequenced by subscription.

        Args:
            records: Validated target records in input order.

        Returns:
            Report with every target's outcome.

        Raises:
            BatchSetupError: If authentication or subscription resolution fails.
                The partial report is attached to the exception.
        """
        report = BatchReport()
        set_run_id(report.run_id)
        groups = group_by_subscription(records)

        self._logger.info(
            "batch_started",
            subscriptions=len(groups),
            targets=sum(len(g.records) for g in groups),
            max_concurrent_jobs=self.config.scheduler.max_concurrent_jobs,
            job_timeout_minutes=self.config.scheduler.job_timeout_minutes,
        )

        for group in groups:
            report.subscriptions.append(await self._run_group(group, report))

        self._enter(OrchestratorPhase.FINISHED, None)
        self._logger.info(
            "batch_finished",
            **{state.value: count for state, count in report.counts().items()},
        )
        return report

    async def _run_group(
        self, group: SubscriptionGroup, report: BatchReport
    ) -> SubscriptionReport:
        name = group.subscription_name
        azure = self.config.azure
        try:
            self._enter(OrchestratorPhase.AUTHENTICATING, name)
            await self.control_plane.authenticate(
                azure.client_id, azure.client_secret.get_secret_value(), azure.tenant_id
            )

            self._enter(OrchestratorPhase.RESOLVING, name)
            subscription_id = await self.control_plane.resolve_subscription_id(name)
        except ControlPlaneError as e:
            self._logger.error("subscription_setup_failed", subscription=name, error=str(e))
            raise BatchSetupError(name, e, report) from e

        targets = [record.resolve(subscription_id) for record in group.records]
        pool = self._build_pool()

        self._enter(OrchestratorPhase.DISPATCHING, name, targets=len(targets))
        for target in targets:
            await pool.enqueue(target)

        self._enter(OrchestratorPhase.DRAINING, name)
        outcomes = await pool.drain()

        return SubscriptionReport(
            subscription_name=name,
            subscription_id=subscription_id,
            outcomes=outcomes,
        )

    def _build_pool(self) -> WorkerPool:
        scheduler = self.config.scheduler
        return WorkerPool(
            runner=self.state_machine.run,
            max_concurrent_jobs=scheduler.max_concurrent_jobs,
            job_timeout_seconds=scheduler.job_timeout_seconds,
            poll_interval_seconds=scheduler.poll_interval_seconds,
            on_outcome=self.on_outcome,
            progress_interval_seconds=scheduler.progress_interval_seconds,
            cancel_grace_seconds=scheduler.cancel_grace_seconds,
        )

    def _enter(self, phase: OrchestratorPhase, subscription: str | None, **fields: object) -> None:
        self._logger.info(
            "orchestrator_phase",
            from_phase=self.phase.value,
            to_phase=phase.value,
            subscription=subscription,
            **fields,
        )
        self.phase = phase


__all__ = ["Orchestrator", "OrchestratorPhase"]
