"""Per-target repair state machine for the bootrescue orchestrator.

This module implements two things:

- The job lifecycle table (``VALID_TRANSITIONS``) the worker pool uses to keep
  job states monotonic.
- ``RepairStateMachine``, which drives one target through diagnosis, disk
  swap, repair VM creation, the remote repair script and disk restore.

The state machine holds no shared state. Cheap read-only checks run first and
short-circuit the common "nothing to do" case. The disk swap keys off the OS
disk name, so a target already back on its original disk is left alone on a
second pass. There is no multi-step rollback: a failure after the repair VM
exists leaves the repair resources in place for inspection.
"""

from __future__ import annotations

import asyncio
import re
import time
from typing import Awaitable, Callable

import structlog

from bootrescue.config import RepairConfig
from bootrescue.control_plane.base import ControlPlane
from bootrescue.errors import (
    ControlPlaneError,
    DiskConflictError,
    InvalidTransitionError,
    OriginalDiskNotFoundError,
    PreconditionSkip,
    RepairAborted,
)
from bootrescue.logging import bind_target_context
from bootrescue.models import (
    DiskInfo,
    JobState,
    RepairOutcome,
    RepairSession,
    RepairStep,
    Target,
)

logger = structlog.get_logger(__name__)

Sleep = Callable[[float], Awaitable[None]]

# Authoritative job lifecycle definition
VALID_TRANSITIONS: dict[JobState, set[JobState]] = {
    JobState.QUEUED: {JobState.RUNNING},
    JobState.RUNNING: {
        JobState.COMPLETED,
        JobState.FAILED,
        JobState.TIMED_OUT,
        JobState.SKIPPED,
    },
    JobState.COMPLETED: set(),
    JobState.FAILED: set(),
    JobState.TIMED_OUT: set(),
    JobState.SKIPPED: set(),
}

DISK_COPY_PATTERN = re.compile(r"^.+-DiskCopy-.+$")

# Display form, bare state and status code as reported by the control plane
RUNNING_POWER_STATES = frozenset({"vm running", "running", "powerstate/running"})

NOT_RUNNING = "not running"
ALREADY_HEALTHY = "already healthy"
HEALTHY_AGENT_STATUS = "Ready"
ATTACHED_DISK_STATE = "attached"


def validate_transition(current: JobState, target: JobState) -> bool:
    """Validate if a job state transition is allowed.

    Args:
        current: Current job state.
        target: Target job state.

    Returns:
        True if the transition is valid according to VALID_TRANSITIONS.
    """
    return target in VALID_TRANSITIONS.get(current, set())


def ensure_transition(current: JobState, target: JobState, job_id: str | None = None) -> None:
    """Raise ``InvalidTransitionError`` unless the transition is valid."""
    if not validate_transition(current, target):
        raise InvalidTransitionError(current, target, job_id)


def is_running_power_state(power_state: str) -> bool:
    """Whether a reported power state means the VM is running.

    Accepts display forms (``"VM running"``) and codes (``"PowerState/running"``).
    """
    return power_state.strip().lower() in RUNNING_POWER_STATES


def is_disk_copy_name(disk_name: str) -> bool:
    """Whether an OS disk name follows the ``<name>-DiskCopy-<suffix>`` convention."""
    return DISK_COPY_PATTERN.match(disk_name.strip()) is not None


def original_disk_name(vm_name: str) -> str:
    return f"{vm_name}-osdisk"


class RepairStateMachine:
    """Drives one target from diagnosis to a terminal outcome.

    ``run`` never raises for per-target problems: control plane failures,
    aborted swaps and unexpected errors all become a ``failed`` outcome.
    Only ``asyncio.CancelledError`` escapes, so the worker pool can stop a
    hung repair.

    Attributes:
        control_plane: Cloud operations used by every step.
        config: Repair procedure configuration.
    """

    def __init__(
        self,
        control_plane: ControlPlane,
        config: RepairConfig,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        """Initialize the repair state machine.

        Args:
            control_plane: Control plane implementation.
            config: Repair configuration (script id, admin user, grace period).
            sleep: Awaitable sleep used for the post-swap grace period.
        """
        self.control_plane = control_plane
        self.config = config
        self._sleep = sleep
        self.logger = logger.bind(component="RepairStateMachine")

    async def run(self, target: Target, job_id: str | None = None) -> RepairOutcome:
        """Run the full repair sequence for one target.

        Args:
            target: The machine to repair.
            job_id: Scheduler job id, bound into the log context.

        Returns:
            The terminal outcome for the target.
        """
        bind_target_context(
            subscription=target.subscription_name,
            resource_group=target.resource_group,
            vm_name=target.vm_name,
            job_id=job_id,
        )
        started = time.monotonic()
        step = RepairStep.DIAGNOSE_POWER
        session: RepairSession | None = None

        def outcome(state: JobState, **fields: object) -> RepairOutcome:
            return RepairOutcome(
                target=target,
                state=state,
                duration_seconds=time.monotonic() - started,
                repair_resource_group=(
                    session.repair_resource_group_name
                    if session is not None and state == JobState.FAILED
                    else None
                ),
                **fields,
            )

        try:
            step = RepairStep.DIAGNOSE_POWER
            await self._diagnose_power(target)

            step = RepairStep.DIAGNOSE_AGENT
            await self._diagnose_agent(target)

            step = RepairStep.DIAGNOSE_DISK
            if await self._needs_disk_swap(target):
                step = RepairStep.SWAP_DISK
                await self._swap_disk(target)

            step = RepairStep.CREATE_REPAIR_VM
            session = RepairSession(admin_username=self.config.repair_admin_username)
            await self._create_repair_vm(target, session)

            step = RepairStep.RUN_REPAIR_SCRIPT
            await self._run_repair_script(target, session)

            step = RepairStep.RESTORE_DISK
            await self._restore_disk(target, session)

        except PreconditionSkip as skip:
            self.logger.info("repair_skipped", step=step.value, reason=skip.reason)
            return outcome(JobState.SKIPPED, reason=skip.reason, step=step)

        except RepairAborted as aborted:
            self.logger.warning(
                "repair_aborted", step=step.value, reason=aborted.reason, detail=str(aborted)
            )
            return outcome(
                JobState.FAILED, reason=aborted.reason, step=step, detail=str(aborted)
            )

        except ControlPlaneError as e:
            self.logger.error("repair_step_failed", step=step.value, error=str(e))
            if session is not None:
                self.logger.warning(
                    "repair_resources_left_for_inspection",
                    repair_resource_group=session.repair_resource_group_name,
                    repair_vm_name=session.repair_vm_name,
                )
            return outcome(
                JobState.FAILED, reason=f"{step.value} failed", step=step, detail=str(e)
            )

        except Exception as e:
            self.logger.exception("repair_step_error", step=step.value)
            return outcome(
                JobState.FAILED,
                reason=f"{step.value} failed",
                step=step,
                detail=f"{type(e).__name__}: {e}",
            )

        result = outcome(JobState.COMPLETED)
        self.logger.info("repair_completed", duration_seconds=round(result.duration_seconds, 1))
        return result

    # ------------------------------------------------------------------
    # Diagnosis
    # ------------------------------------------------------------------

    async def _diagnose_power(self, target: Target) -> None:
        power_state = await self.control_plane.get_power_state(
            target.resource_group, target.vm_name
        )
        self.logger.debug("power_state_checked", power_state=power_state)
        if not is_running_power_state(power_state):
            raise PreconditionSkip(NOT_RUNNING)

    async def _diagnose_agent(self, target: Target) -> None:
        agent_status = await self.control_plane.get_agent_status(
            target.resource_group, target.vm_name
        )
        self.logger.debug("agent_status_checked", agent_status=agent_status)
        if agent_status.strip() == HEALTHY_AGENT_STATUS:
            raise PreconditionSkip(ALREADY_HEALTHY)

    async def _needs_disk_swap(self, target: Target) -> bool:
        disk_name = await self.control_plane.get_os_disk_name(
            target.resource_group, target.vm_name
        )
        needs_swap = is_disk_copy_name(disk_name)
        self.logger.info("os_disk_checked", os_disk=disk_name, disk_copy=needs_swap)
        return needs_swap

    # ------------------------------------------------------------------
    # Disk swap
    # ------------------------------------------------------------------

    async def _swap_disk(self, target: Target) -> None:
        """Put the target back on its original OS disk.

        Raises:
            OriginalDiskNotFoundError: If ``<vm>-osdisk`` is not in the resource group.
            DiskConflictError: If the original disk is attached to another VM.
        """
        cp = self.control_plane
        original = self._find_original_disk(
            target, await cp.list_disks(target.resource_group)
        )

        await cp.deallocate_vm(target.resource_group, target.vm_name)
        self.logger.info("target_deallocated")

        if original.disk_state.strip().lower() == ATTACHED_DISK_STATE:
            self.logger.warning("original_disk_attached_elsewhere", disk=original.name)
            try:
                await cp.start_vm(target.resource_group, target.vm_name, wait=False)
            except ControlPlaneError as e:
                self.logger.error("conflict_restart_failed", error=str(e))
            raise DiskConflictError(f"{original.name} is already attached")

        await cp.update_os_disk(target.resource_group, target.vm_name, original.id)
        await cp.start_vm(target.resource_group, target.vm_name, wait=False)
        self.logger.info(
            "original_disk_restored",
            disk=original.name,
            grace_seconds=self.config.swap_grace_seconds,
        )
        # The agent will not report Ready yet; only the boot itself is awaited.
        await self._sleep(self.config.swap_grace_seconds)

    def _find_original_disk(self, target: Target, disks: list[DiskInfo]) -> DiskInfo:
        wanted = original_disk_name(target.vm_name).casefold()
        for disk in disks:
            if disk.name.casefold() == wanted:
                return disk
        raise OriginalDiskNotFoundError(
            f"{original_disk_name(target.vm_name)} not found in {target.resource_group}"
        )

    # ------------------------------------------------------------------
    # Repair VM
    # ------------------------------------------------------------------

    async def _create_repair_vm(self, target: Target, session: RepairSession) -> None:
        self.logger.info(
            "creating_repair_vm",
            repair_resource_group=session.repair_resource_group_name,
            repair_vm_name=session.repair_vm_name,
        )
        await self.control_plane.create_repair_vm(
            target.resource_group,
            target.vm_name,
            session.repair_resource_group_name,
            session.repair_vm_name,
            session.admin_username,
            session.admin_password.get_secret_value(),
        )
        session.repair_vm_id = session.repair_vm_resource_id(target.subscription_id)
        self.logger.info("repair_vm_created", repair_vm_id=session.repair_vm_id)

    async def _run_repair_script(self, target: Target, session: RepairSession) -> None:
        assert session.repair_vm_id is not None
        self.logger.info("running_repair_script", script_id=self.config.repair_script_id)
        await self.control_plane.run_repair_script(
            target.resource_group,
            target.vm_name,
            session.repair_vm_id,
            self.config.repair_script_id,
        )

    async def _restore_disk(self, target: Target, session: RepairSession) -> None:
        assert session.repair_vm_id is not None
        await self.control_plane.restore_repaired_disk(
            target.resource_group, target.vm_name, session.repair_vm_id
        )
        self.logger.info("repaired_disk_restored")


__all__ = [
    "ALREADY_HEALTHY",
    "NOT_RUNNING",
    "RepairStateMachine",
    "VALID_TRANSITIONS",
    "ensure_transition",
    "is_disk_copy_name",
    "is_running_power_state",
    "original_disk_name",
    "validate_transition",
]
