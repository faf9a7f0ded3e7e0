"""Unit tests for the repair state machine.

Tests cover:
- Job lifecycle transition table
- Diagnosis short-circuits (not running, already healthy)
- Disk swap back to the original OS disk
- Disk swap aborts (original missing, original attached elsewhere)
- Control plane failures at every step
- Cancellation of a hung step
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from bootrescue.config import RepairConfig
from bootrescue.errors import ControlPlaneError, InvalidTransitionError
from bootrescue.models import DiskInfo, JobState, RepairStep
from bootrescue.orchestrator.state_machine import (
    ALREADY_HEALTHY,
    NOT_RUNNING,
    VALID_TRANSITIONS,
    RepairStateMachine,
    ensure_transition,
    is_disk_copy_name,
    is_running_power_state,
    original_disk_name,
    validate_transition,
)

DISK_PREFIX = "/subscriptions/id-prod/resourceGroups/rg1/providers/Microsoft.Compute/disks/"
ORIGINAL_DISK_ID = DISK_PREFIX + "vm1-osdisk"

FULL_SWAP_SEQUENCE = [
    "get_power_state",
    "get_agent_status",
    "get_os_disk_name",
    "list_disks",
    "deallocate_vm",
    "update_os_disk",
    "start_vm",
    "create_repair_vm",
    "run_repair_script",
    "restore_repaired_disk",
]


@pytest.fixture
def sleep() -> AsyncMock:
    """Create a recording replacement for asyncio.sleep."""
    return AsyncMock()


@pytest.fixture
def machine(control_plane, repair_config: RepairConfig, sleep: AsyncMock) -> RepairStateMachine:
    """Create a state machine over the recording control plane."""
    return RepairStateMachine(control_plane, repair_config, sleep=sleep)


@pytest.fixture
def disk_copy_plane(control_plane):
    """Control plane whose target runs on a disk copy with its original detached."""
    control_plane.os_disk_name = "vm1-DiskCopy-x7f2a"
    control_plane.disks = [
        DiskInfo(name="vm1-osdisk", id=ORIGINAL_DISK_ID, disk_state="Unattached"),
        DiskInfo(
            name="vm1-DiskCopy-x7f2a",
            id=DISK_PREFIX + "vm1-DiskCopy-x7f2a",
            disk_state="Attached",
        ),
    ]
    return control_plane


# =====================================================================
# Transition table
# =====================================================================


class TestValidTransitions:
    """Test the VALID_TRANSITIONS mapping and validation."""

    def test_valid_transitions_definition(self):
        """Verify VALID_TRANSITIONS includes all JobState values."""
        assert set(VALID_TRANSITIONS.keys()) == set(JobState)

    @pytest.mark.parametrize(
        "current,target,expected",
        [
            (JobState.QUEUED, JobState.RUNNING, True),
            (JobState.RUNNING, JobState.COMPLETED, True),
            (JobState.RUNNING, JobState.FAILED, True),
            (JobState.RUNNING, JobState.TIMED_OUT, True),
            (JobState.RUNNING, JobState.SKIPPED, True),
            (JobState.QUEUED, JobState.COMPLETED, False),
            (JobState.RUNNING, JobState.QUEUED, False),
            (JobState.COMPLETED, JobState.RUNNING, False),
            (JobState.TIMED_OUT, JobState.COMPLETED, False),
            (JobState.FAILED, JobState.TIMED_OUT, False),
        ],
    )
    def test_validate_transition(self, current, target, expected):
        """Test validate_transition against the lifecycle table."""
        assert validate_transition(current, target) is expected

    def test_terminal_states_have_no_exits(self):
        """Test that terminal states cannot transition anywhere."""
        for state in JobState:
            if state.is_terminal:
                assert VALID_TRANSITIONS[state] == set()

    def test_ensure_transition_raises(self):
        """Test that ensure_transition raises with the job id in the message."""
        with pytest.raises(InvalidTransitionError, match="completed to running for job job-1"):
            ensure_transition(JobState.COMPLETED, JobState.RUNNING, "job-1")

    def test_ensure_transition_accepts_valid(self):
        """Test that ensure_transition is silent for valid transitions."""
        ensure_transition(JobState.QUEUED, JobState.RUNNING)


# =====================================================================
# Helpers
# =====================================================================


class TestHelpers:
    """Test power state and disk name classification."""

    @pytest.mark.parametrize(
        "power_state,expected",
        [
            ("VM running", True),
            ("PowerState/running", True),
            ("running", True),
            (" VM Running ", True),
            ("VM deallocated", False),
            ("VM stopped", False),
            ("VM starting", False),
            ("VM not running", False),
            ("PowerState/notrunning", False),
            ("", False),
        ],
    )
    def test_is_running_power_state(self, power_state, expected):
        """Test running power state detection."""
        assert is_running_power_state(power_state) is expected

    @pytest.mark.parametrize(
        "disk_name,expected",
        [
            ("vm1-DiskCopy-x7f2a", True),
            ("web-01-DiskCopy-20240719", True),
            ("vm1-osdisk", False),
            ("-DiskCopy-x7f2a", False),
            ("vm1-DiskCopy-", False),
            ("vm1-diskcopy-x7f2a", False),
        ],
    )
    def test_is_disk_copy_name(self, disk_name, expected):
        """Test disk copy naming convention detection."""
        assert is_disk_copy_name(disk_name) is expected

    def test_original_disk_name(self):
        """Test original OS disk name derivation."""
        assert original_disk_name("vm1") == "vm1-osdisk"


# =====================================================================
# Diagnosis
# =====================================================================


class TestDiagnosis:
    """Test the read-only diagnosis steps."""

    @pytest.mark.parametrize("power_state", ["VM deallocated", "VM not running"])
    @pytest.mark.asyncio
    async def test_not_running_is_skipped(self, machine, control_plane, target, power_state):
        """A VM that is not running is skipped after a single call."""
        control_plane.power_state = power_state

        outcome = await machine.run(target)

        assert outcome.state == JobState.SKIPPED
        assert outcome.reason == NOT_RUNNING
        assert outcome.step == RepairStep.DIAGNOSE_POWER
        assert outcome.report_line() == "Skipped: not running"
        assert control_plane.call_names == ["get_power_state"]

    @pytest.mark.asyncio
    async def test_healthy_agent_is_skipped(self, machine, control_plane, target):
        """A VM whose agent reports Ready is skipped without touching it."""
        control_plane.agent_status = " Ready "

        outcome = await machine.run(target)

        assert outcome.state == JobState.SKIPPED
        assert outcome.reason == ALREADY_HEALTHY
        assert control_plane.call_names == ["get_power_state", "get_agent_status"]

    @pytest.mark.asyncio
    async def test_agent_status_match_is_exact(self, machine, control_plane, target):
        """Only an exact Ready status counts as healthy."""
        control_plane.agent_status = "ready"

        outcome = await machine.run(target)

        assert outcome.state == JobState.COMPLETED

    @pytest.mark.asyncio
    async def test_original_disk_skips_swap(self, machine, control_plane, target, sleep):
        """A VM already on its original disk goes straight to the repair VM."""
        outcome = await machine.run(target)

        assert outcome.state == JobState.COMPLETED
        assert outcome.report_line() == "Completed"
        assert control_plane.call_names == [
            "get_power_state",
            "get_agent_status",
            "get_os_disk_name",
            "create_repair_vm",
            "run_repair_script",
            "restore_repaired_disk",
        ]
        sleep.assert_not_awaited()


# =====================================================================
# Disk swap
# =====================================================================


class TestDiskSwap:
    """Test swapping a disk copy back to the original OS disk."""

    @pytest.mark.asyncio
    async def test_disk_copy_full_repair(self, machine, disk_copy_plane, target, sleep):
        """A VM on a disk copy is swapped back, repaired and completed."""
        outcome = await machine.run(target, job_id="job-abc")

        assert outcome.state == JobState.COMPLETED
        assert outcome.repair_resource_group is None
        assert disk_copy_plane.call_names == FULL_SWAP_SEQUENCE
        assert disk_copy_plane.calls_to("update_os_disk") == [("rg1", "vm1", ORIGINAL_DISK_ID)]
        assert disk_copy_plane.calls_to("start_vm") == [("rg1", "vm1", False)]
        sleep.assert_awaited_once_with(0)

    @pytest.mark.asyncio
    async def test_swap_grace_period_is_configurable(self, control_plane, disk_copy_plane, target):
        """The post-swap wait uses the configured grace period."""
        sleep = AsyncMock()
        machine = RepairStateMachine(
            control_plane, RepairConfig(swap_grace_seconds=60), sleep=sleep
        )

        await machine.run(target)

        sleep.assert_awaited_once_with(60)

    @pytest.mark.asyncio
    async def test_second_pass_does_not_swap_again(self, machine, disk_copy_plane, target):
        """Running twice swaps the disk only on the first pass."""
        await machine.run(target)
        disk_copy_plane.calls.clear()

        outcome = await machine.run(target)

        assert outcome.state == JobState.COMPLETED
        assert "list_disks" not in disk_copy_plane.call_names
        assert "deallocate_vm" not in disk_copy_plane.call_names
        assert "update_os_disk" not in disk_copy_plane.call_names

    @pytest.mark.asyncio
    async def test_original_disk_lookup_ignores_case(self, machine, disk_copy_plane, target):
        """The original disk is matched case-insensitively."""
        disk_copy_plane.disks = [
            DiskInfo(name="VM1-OSDISK", id=DISK_PREFIX + "VM1-OSDISK", disk_state="Unattached")
        ]

        outcome = await machine.run(target)

        assert outcome.state == JobState.COMPLETED
        assert disk_copy_plane.calls_to("update_os_disk") == [
            ("rg1", "vm1", DISK_PREFIX + "VM1-OSDISK")
        ]

    @pytest.mark.asyncio
    async def test_original_disk_missing(self, machine, disk_copy_plane, target):
        """A missing original disk fails before the VM is touched."""
        disk_copy_plane.disks = [disk_copy_plane.disks[1]]

        outcome = await machine.run(target)

        assert outcome.state == JobState.FAILED
        assert outcome.reason == "original disk not found"
        assert outcome.step == RepairStep.SWAP_DISK
        assert outcome.report_line() == "Failed: original disk not found"
        assert "deallocate_vm" not in disk_copy_plane.call_names
        assert "update_os_disk" not in disk_copy_plane.call_names
        assert "create_repair_vm" not in disk_copy_plane.call_names

    @pytest.mark.parametrize("disk_state", ["Attached", "attached", " ATTACHED "])
    @pytest.mark.asyncio
    async def test_original_disk_attached_elsewhere(
        self, machine, disk_copy_plane, target, disk_state
    ):
        """An attached original disk aborts the swap and restarts the VM."""
        disk_copy_plane.disks = [
            DiskInfo(name="vm1-osdisk", id=ORIGINAL_DISK_ID, disk_state=disk_state)
        ]

        outcome = await machine.run(target)

        assert outcome.state == JobState.FAILED
        assert outcome.reason == "disk conflict"
        assert disk_copy_plane.call_names[-2:] == ["deallocate_vm", "start_vm"]
        assert disk_copy_plane.calls_to("start_vm") == [("rg1", "vm1", False)]
        assert "update_os_disk" not in disk_copy_plane.call_names

    @pytest.mark.asyncio
    async def test_disk_conflict_survives_restart_failure(self, machine, disk_copy_plane, target):
        """A failed best-effort restart still reports the disk conflict."""
        disk_copy_plane.disks = [
            DiskInfo(name="vm1-osdisk", id=ORIGINAL_DISK_ID, disk_state="Attached")
        ]
        disk_copy_plane.failures["start_vm"] = ControlPlaneError("start_vm", "boom")

        outcome = await machine.run(target)

        assert outcome.state == JobState.FAILED
        assert outcome.reason == "disk conflict"


# =====================================================================
# Failures
# =====================================================================


class TestFailures:
    """Test control plane failures at every step."""

    @pytest.mark.parametrize(
        "operation,step",
        [
            ("get_power_state", RepairStep.DIAGNOSE_POWER),
            ("get_agent_status", RepairStep.DIAGNOSE_AGENT),
            ("get_os_disk_name", RepairStep.DIAGNOSE_DISK),
            ("list_disks", RepairStep.SWAP_DISK),
            ("deallocate_vm", RepairStep.SWAP_DISK),
            ("update_os_disk", RepairStep.SWAP_DISK),
            ("start_vm", RepairStep.SWAP_DISK),
            ("create_repair_vm", RepairStep.CREATE_REPAIR_VM),
            ("run_repair_script", RepairStep.RUN_REPAIR_SCRIPT),
            ("restore_repaired_disk", RepairStep.RESTORE_DISK),
        ],
    )
    @pytest.mark.asyncio
    async def test_control_plane_error_fails_step(
        self, machine, disk_copy_plane, target, operation, step
    ):
        """A control plane error fails the target at the step that raised it."""
        disk_copy_plane.failures[operation] = ControlPlaneError(operation, "exit status 1")

        outcome = await machine.run(target)

        assert outcome.state == JobState.FAILED
        assert outcome.step == step
        assert outcome.reason == f"{step.value} failed"
        assert outcome.detail == f"{operation}: exit status 1"
        assert disk_copy_plane.call_names[-1] == operation

    @pytest.mark.parametrize(
        "operation", ["create_repair_vm", "run_repair_script", "restore_repaired_disk"]
    )
    @pytest.mark.asyncio
    async def test_repair_resources_reported_after_failure(
        self, machine, control_plane, target, operation
    ):
        """A failure once the repair VM is requested reports its resource group."""
        control_plane.failures[operation] = ControlPlaneError(operation, "failed")

        outcome = await machine.run(target)

        repair_group = control_plane.calls_to("create_repair_vm")[0][2]
        assert outcome.repair_resource_group == repair_group
        assert repair_group.startswith("repair-") and repair_group.endswith("-rg")

    @pytest.mark.asyncio
    async def test_no_rollback_after_script_failure(self, machine, control_plane, target):
        """A failed repair script leaves the disk unrestored."""
        control_plane.failures["run_repair_script"] = ControlPlaneError("run_repair_script", "x")

        await machine.run(target)

        assert "restore_repaired_disk" not in control_plane.call_names

    @pytest.mark.asyncio
    async def test_unexpected_error_fails_step(self, machine, control_plane, target):
        """An unexpected exception is converted to a failed outcome."""
        control_plane.failures["get_os_disk_name"] = RuntimeError("boom")

        outcome = await machine.run(target)

        assert outcome.state == JobState.FAILED
        assert outcome.reason == "diagnose_disk failed"
        assert outcome.detail == "RuntimeError: boom"


# =====================================================================
# Repair VM
# =====================================================================


class TestRepairVm:
    """Test repair VM naming and parameters."""

    @pytest.mark.asyncio
    async def test_repair_vm_arguments(self, machine, control_plane, target):
        """The repair VM is created and addressed consistently."""
        await machine.run(target)

        rg, vm, repair_group, repair_vm, user, password = control_plane.calls_to(
            "create_repair_vm"
        )[0]
        suffix = repair_vm.removeprefix("repair")
        assert (rg, vm) == ("rg1", "vm1")
        assert repair_group == f"repair-{suffix}-rg"
        assert user == "repairadmin"
        assert len(password) >= 12

        expected_id = (
            f"/subscriptions/id-prod/resourceGroups/{repair_group}"
            f"/providers/Microsoft.Compute/virtualMachines/{repair_vm}"
        )
        assert control_plane.calls_to("run_repair_script") == [
            ("rg1", "vm1", expected_id, "win-crowdstrike-fix-bootloop")
        ]
        assert control_plane.calls_to("restore_repaired_disk") == [("rg1", "vm1", expected_id)]

    @pytest.mark.asyncio
    async def test_each_attempt_gets_fresh_credentials(self, machine, control_plane, target):
        """Two attempts never share repair names or passwords."""
        await machine.run(target)
        await machine.run(target)

        first, second = control_plane.calls_to("create_repair_vm")
        assert first[2] != second[2]
        assert first[5] != second[5]

    @pytest.mark.asyncio
    async def test_configured_script_id(self, control_plane, target):
        """The configured repair script id is passed through."""
        machine = RepairStateMachine(
            control_plane,
            RepairConfig(repair_script_id="custom-fix", swap_grace_seconds=0),
        )

        await machine.run(target)

        assert control_plane.calls_to("run_repair_script")[0][3] == "custom-fix"


# =====================================================================
# Cancellation
# =====================================================================


@pytest.mark.asyncio
async def test_cancellation_propagates(machine, control_plane, target):
    """Test that cancelling a hung step raises CancelledError out of run."""
    control_plane.hangs.add("run_repair_script")

    task = asyncio.create_task(machine.run(target))
    await asyncio.sleep(0.01)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert "restore_repaired_disk" not in control_plane.call_names
