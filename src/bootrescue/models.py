"""Domain models for the repair engine.

Targets are immutable values: a ``TargetRecord`` is what the input file
names, and a ``Target`` is the same machine once its subscription id has
been resolved. Everything a worker needs is present before dispatch.
"""

from __future__ import annotations

import secrets
from collections import Counter
from enum import Enum
from uuid import uuid4

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, SecretStr


class JobState(str, Enum):
    """Lifecycle states of a scheduler job.

    Attributes:
        QUEUED: Job created, waiting for a free slot.
        RUNNING: Repair state machine executing.
        COMPLETED: Repair finished and disk restored.
        FAILED: Repair aborted at some step.
        TIMED_OUT: Job cancelled for exceeding its wall-clock budget.
        SKIPPED: Target did not need repair.
    """

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self not in (JobState.QUEUED, JobState.RUNNING)


TERMINAL_STATES = tuple(s for s in JobState if s.is_terminal)

# Keys accepted for the subscription column, file header first
SUBSCRIPTION_KEYS = ("Subscription", "subscription_name", "subscription")


class RepairStep(str, Enum):
    """Steps of the per-target repair sequence, in execution order."""

    DIAGNOSE_POWER = "diagnose_power"
    DIAGNOSE_AGENT = "diagnose_agent"
    DIAGNOSE_DISK = "diagnose_disk"
    SWAP_DISK = "swap_disk"
    CREATE_REPAIR_VM = "create_repair_vm"
    RUN_REPAIR_SCRIPT = "run_repair_script"
    RESTORE_DISK = "restore_disk"


class TargetRecord(BaseModel):
    """One row of the target list, before subscription resolution."""

    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    subscription_name: str = Field(
        validation_alias=AliasChoices(*SUBSCRIPTION_KEYS),
    )
    resource_group: str = Field(
        min_length=1,
        validation_alias=AliasChoices("ResourceGroup", "resource_group"),
    )
    vm_name: str = Field(
        min_length=1,
        validation_alias=AliasChoices("VmName", "vm_name"),
    )

    def resolve(self, subscription_id: str) -> Target:
        """Build the dispatchable target for a resolved subscription id."""
        return Target(
            subscription_name=self.subscription_name,
            subscription_id=subscription_id,
            resource_group=self.resource_group,
            vm_name=self.vm_name,
        )


class Target(BaseModel):
    """A virtual machine to repair, fully identified."""

    model_config = ConfigDict(frozen=True)

    subscription_name: str
    subscription_id: str
    resource_group: str
    vm_name: str

    @property
    def label(self) -> str:
        return f"{self.subscription_name}/{self.resource_group}/{self.vm_name}"


class DiskInfo(BaseModel):
    """A managed disk as reported by ``list_disks``."""

    model_config = ConfigDict(frozen=True)

    name: str
    id: str
    disk_state: str = Field(
        default="",
        validation_alias=AliasChoices("diskState", "disk_state"),
    )


def _generate_admin_password() -> SecretStr:
    # Fixed prefix and suffix guarantee upper, lower, digit and symbol classes.
    return SecretStr(f"Rx{secrets.token_urlsafe(18)}7!")


class RepairSession(BaseModel):
    """Ephemeral state of one repair attempt.

    Created by the worker when it reaches the repair VM step and discarded
    when the state machine returns. Never shared between workers.

    Attributes:
        suffix: Random token namespacing the repair resources of this attempt.
        admin_username: Administrative user provisioned on the repair VM.
        admin_password: Password generated for this attempt only.
        repair_vm_id: Resource id of the repair VM once created.
    """

    suffix: str = Field(default_factory=lambda: uuid4().hex[:8])
    admin_username: str = "repairadmin"
    admin_password: SecretStr = Field(default_factory=_generate_admin_password)
    repair_vm_id: str | None = None

    @property
    def repair_resource_group_name(self) -> str:
        return f"repair-{self.suffix}-rg"

    @property
    def repair_vm_name(self) -> str:
        return f"repair{self.suffix}"

    def repair_vm_resource_id(self, subscription_id: str) -> str:
        """Resource id of the repair VM inside the given subscription."""
        return (
            f"/subscriptions/{subscription_id}"
            f"/resourceGroups/{self.repair_resource_group_name}"
            f"/providers/Microsoft.Compute/virtualMachines/{self.repair_vm_name}"
        )


class RepairOutcome(BaseModel):
    """Terminal result of one target.

    Attributes:
        target: The repaired (or skipped) target.
        state: Terminal job state.
        reason: Short reason shown in the report line.
        step: Step that ended the run, if it did not complete.
        detail: Error text behind a failure.
        repair_resource_group: Repair resource group left behind, if any.
        duration_seconds: Wall-clock time spent on the target.
    """

    target: Target
    state: JobState
    reason: str | None = None
    step: RepairStep | None = None
    detail: str | None = None
    repair_resource_group: str | None = None
    duration_seconds: float = 0.0

    def report_line(self) -> str:
        """Render the single report line for this target."""
        if self.state == JobState.COMPLETED:
            return "Completed"
        if self.state == JobState.TIMED_OUT:
            return "TimedOut"
        label = "Skipped" if self.state == JobState.SKIPPED else "Failed"
        return f"{label}: {self.reason}" if self.reason else label


class Job(BaseModel):
    """Scheduler-visible handle for one target in one scheduling pass.

    Attributes:
        job_id: Unique identifier of this job.
        target: The target being repaired.
        state: Current lifecycle state, owned by the worker pool.
        enqueued_at: Monotonic time at which the job was created.
        started_at: Monotonic time at which the job started running.
    """

    job_id: str = Field(default_factory=lambda: f"job-{uuid4().hex[:12]}")
    target: Target
    state: JobState = JobState.QUEUED
    enqueued_at: float = 0.0
    started_at: float | None = None

    def running_seconds(self, now: float) -> float:
        if self.started_at is None:
            return 0.0
        return max(0.0, now - self.started_at)


class SubscriptionGroup(BaseModel):
    """Targets owned by one subscription, in input order."""

    subscription_name: str
    records: list[TargetRecord] = Field(default_factory=list)


class SubscriptionReport(BaseModel):
    """Outcomes of one subscription batch, in reaping order."""

    subscription_name: str
    subscription_id: str
    outcomes: list[RepairOutcome] = Field(default_factory=list)


class BatchReport(BaseModel):
    """Outcomes of a whole run across all subscriptions."""

    run_id: str = Field(default_factory=lambda: uuid4().hex[:12])
    subscriptions: list[SubscriptionReport] = Field(default_factory=list)

    @property
    def outcomes(self) -> list[RepairOutcome]:
        return [o for sub in self.subscriptions for o in sub.outcomes]

    def counts(self) -> dict[JobState, int]:
        """Number of targets per terminal state."""
        counter = Counter(o.state for o in self.outcomes)
        return {state: counter.get(state, 0) for state in TERMINAL_STATES}

    @property
    def has_failures(self) -> bool:
        return any(
            o.state in (JobState.FAILED, JobState.TIMED_OUT) for o in self.outcomes
        )
