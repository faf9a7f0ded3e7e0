"""Shared fixtures for bootrescue tests.

``RecordingControlPlane`` is an in-memory control plane that records every
call in order. Responses are plain attributes, and any operation can be made
to fail (``failures``) or to block until cancelled (``hangs``).
"""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from bootrescue.config import RepairConfig, RescueConfig, SchedulerConfig
from bootrescue.models import DiskInfo, Target


class RecordingControlPlane:
    """Control plane fake for state machine and orchestrator tests."""

    def __init__(self) -> None:
        self.power_state = "VM running"
        self.agent_status = "Not Ready"
        self.os_disk_name = "vm1-osdisk"
        self.disks: list[DiskInfo] = []
        self.subscription_ids: dict[str, str] = {}
        self.failures: dict[str, Exception] = {}
        self.hangs: set[str] = set()
        self.calls: list[tuple[str, tuple[Any, ...]]] = []

    @property
    def call_names(self) -> list[str]:
        return [name for name, _ in self.calls]

    def calls_to(self, name: str) -> list[tuple[Any, ...]]:
        return [args for call, args in self.calls if call == name]

    async def _record(self, name: str, *args: Any) -> None:
        self.calls.append((name, args))
        if name in self.hangs:
            await asyncio.Event().wait()
        if name in self.failures:
            raise self.failures[name]

    async def get_power_state(self, resource_group: str, vm_name: str) -> str:
        await self._record("get_power_state", resource_group, vm_name)
        return self.power_state

    async def get_agent_status(self, resource_group: str, vm_name: str) -> str:
        await self._record("get_agent_status", resource_group, vm_name)
        return self.agent_status

    async def get_os_disk_name(self, resource_group: str, vm_name: str) -> str:
        await self._record("get_os_disk_name", resource_group, vm_name)
        return self.os_disk_name

    async def list_disks(self, resource_group: str) -> list[DiskInfo]:
        await self._record("list_disks", resource_group)
        return list(self.disks)

    async def deallocate_vm(self, resource_group: str, vm_name: str) -> None:
        await self._record("deallocate_vm", resource_group, vm_name)

    async def start_vm(self, resource_group: str, vm_name: str, wait: bool) -> None:
        await self._record("start_vm", resource_group, vm_name, wait)

    async def update_os_disk(self, resource_group: str, vm_name: str, disk_id: str) -> None:
        await self._record("update_os_disk", resource_group, vm_name, disk_id)
        # Mirror the remote effect so a second pass sees the original disk.
        self.os_disk_name = disk_id.rsplit("/", 1)[-1]

    async def create_repair_vm(
        self,
        resource_group: str,
        vm_name: str,
        repair_group: str,
        repair_vm_name: str,
        admin_user: str,
        admin_password: str,
    ) -> None:
        await self._record(
            "create_repair_vm",
            resource_group,
            vm_name,
            repair_group,
            repair_vm_name,
            admin_user,
            admin_password,
        )

    async def run_repair_script(
        self, resource_group: str, vm_name: str, repair_vm_id: str, script_id: str
    ) -> None:
        await self._record("run_repair_script", resource_group, vm_name, repair_vm_id, script_id)

    async def restore_repaired_disk(
        self, resource_group: str, vm_name: str, repair_vm_id: str
    ) -> None:
        await self._record("restore_repaired_disk", resource_group, vm_name, repair_vm_id)

    async def authenticate(self, principal: str, secret: str, tenant: str) -> None:
        await self._record("authenticate", principal, secret, tenant)

    async def resolve_subscription_id(self, subscription_name: str) -> str:
        await self._record("resolve_subscription_id", subscription_name)
        return self.subscription_ids.get(subscription_name, f"id-{subscription_name}")


@pytest.fixture
def control_plane() -> RecordingControlPlane:
    """Create a fresh recording control plane."""
    return RecordingControlPlane()


@pytest.fixture
def repair_config() -> RepairConfig:
    """Create repair config without a post-swap grace period."""
    return RepairConfig(swap_grace_seconds=0)


@pytest.fixture
def fast_config(repair_config: RepairConfig) -> RescueConfig:
    """Create a root config with scheduler timings suitable for tests."""
    return RescueConfig(
        scheduler=SchedulerConfig(
            max_concurrent_jobs=3,
            job_timeout_minutes=1,
            poll_interval_seconds=0.01,
            cancel_grace_seconds=0.1,
        ),
        repair=repair_config,
    )


@pytest.fixture
def target() -> Target:
    """Create the default test target."""
    return make_target()


def make_target(
    vm_name: str = "vm1",
    resource_group: str = "rg1",
    subscription_name: str = "prod",
) -> Target:
    return Target(
        subscription_name=subscription_name,
        subscription_id=f"id-{subscription_name}",
        resource_group=resource_group,
        vm_name=vm_name,
    )
