"""Control plane port consumed by the repair engine.

Every operation is a slow remote call that may fail. Implementations raise
``ControlPlaneError`` on any failure and must let ``asyncio.CancelledError``
propagate so that the worker pool can stop a hung repair.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from bootrescue.models import DiskInfo


@runtime_checkable
class ControlPlane(Protocol):
    """Cloud operations needed to diagnose and repair one virtual machine."""

    async def get_power_state(self, resource_group: str, vm_name: str) -> str:
        """Return the VM power state, e.g. ``"VM running"``."""

    async def get_agent_status(self, resource_group: str, vm_name: str) -> str:
        """Return the in-guest agent status, ``"Ready"`` when healthy."""

    async def get_os_disk_name(self, resource_group: str, vm_name: str) -> str:
        """Return the name of the OS disk currently attached to the VM."""

    async def list_disks(self, resource_group: str) -> list[DiskInfo]:
        """Return all managed disks of a resource group."""

    async def deallocate_vm(self, resource_group: str, vm_name: str) -> None:
        """Stop and deallocate the VM, waiting for completion."""

    async def start_vm(self, resource_group: str, vm_name: str, wait: bool) -> None:
        """Start the VM, optionally without waiting for it to boot."""

    async def update_os_disk(self, resource_group: str, vm_name: str, disk_id: str) -> None:
        """Point the VM's OS disk reference at another managed disk."""

    async def create_repair_vm(
        self,
        resource_group: str,
        vm_name: str,
        repair_group: str,
        repair_vm_name: str,
        admin_user: str,
        admin_password: str,
    ) -> None:
        """Create an isolated repair VM with a copy of the target's OS disk attached."""

    async def run_repair_script(
        self,
        resource_group: str,
        vm_name: str,
        repair_vm_id: str,
        script_id: str,
    ) -> None:
        """Run a named repair procedure on the repair VM against the attached disk."""

    async def restore_repaired_disk(
        self,
        resource_group: str,
        vm_name: str,
        repair_vm_id: str,
    ) -> None:
        """Swap the repaired disk back onto the target and delete the repair resources."""

    async def authenticate(self, principal: str, secret: str, tenant: str) -> None:
        """Establish an authenticated context for subsequent calls."""

    async def resolve_subscription_id(self, subscription_name: str) -> str:
        """Return the id of a subscription and make it the active context."""


__all__ = ["ControlPlane"]
