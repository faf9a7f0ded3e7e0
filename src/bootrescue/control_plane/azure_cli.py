"""Azure CLI implementation of the control plane port.

Each operation shells out to ``az`` through ``asyncio.create_subprocess_exec``.
The repair operations use the ``vm-repair`` CLI extension
(``az vm repair create|run|restore``).

A cancelled call kills its ``az`` process before re-raising, which is the
stop signal the worker pool relies on when a job exceeds its time budget.
The remote operation itself may still complete on the Azure side.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any

import structlog

from bootrescue.config import AzureConfig
from bootrescue.errors import ControlPlaneError
from bootrescue.models import DiskInfo

logger = structlog.get_logger(__name__)

_SECRET_FLAGS = frozenset({"--password", "-p", "--repair-password"})

_POWER_STATE_QUERY = (
    "instanceView.statuses[?starts_with(code, 'PowerState/')].displayStatus | [0]"
)
_AGENT_STATUS_QUERY = "instanceView.vmAgent.statuses[0].displayStatus"


def _redact(args: tuple[str, ...]) -> list[str]:
    """Return the argument list with secret values masked."""
    redacted: list[str] = []
    hide_next = False
    for arg in args:
        if hide_next:
            redacted.append("***")
            hide_next = False
            continue
        redacted.append(arg)
        if arg in _SECRET_FLAGS:
            hide_next = True
    return redacted


class AzureCliControlPlane:
    """Control plane backed by the Azure CLI.

    Attributes:
        config: Azure configuration (CLI path and per-call timeout)
    """

    def __init__(self, config: AzureConfig) -> None:
        """Initialize the adapter.

        Args:
            config: Azure configuration from RescueConfig
        """
        self.config = config
        self._logger = logger.bind(component="AzureCliControlPlane")

    async def _run_az(self, operation: str, *args: str) -> str:
        """Run one ``az`` command and return its stdout.

        Args:
            operation: Control plane operation name used in errors and logs
            *args: Arguments passed to the Azure CLI

        Returns:
            Decoded standard output, stripped.

        Raises:
            ControlPlaneError: If the command is missing, times out, or exits non-zero.
        """
        cmd = [self.config.az_path, *args, "--only-show-errors"]
        timeout = self.config.command_timeout_seconds

        self._logger.debug(
            "running_az_command",
            operation=operation,
            command=" ".join(_redact(tuple(cmd))),
            timeout=timeout,
        )

        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise ControlPlaneError(
                operation, f"Azure CLI not found at {self.config.az_path!r}"
            ) from e

        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(
                proc.communicate(), timeout=timeout
            )
        except asyncio.TimeoutError as e:
            self._kill(proc)
            self._logger.error("az_command_timeout", operation=operation, timeout=timeout)
            raise ControlPlaneError(
                operation, f"command timed out after {timeout} seconds"
            ) from e
        except asyncio.CancelledError:
            self._kill(proc)
            self._logger.warning("az_command_cancelled", operation=operation, pid=proc.pid)
            raise

        stdout = stdout_bytes.decode("utf-8", errors="replace").strip()
        stderr = stderr_bytes.decode("utf-8", errors="replace").strip()

        if proc.returncode != 0:
            self._logger.error(
                "az_command_failed",
                operation=operation,
                returncode=proc.returncode,
                stderr=stderr[:500],
            )
            raise ControlPlaneError(
                operation,
                stderr.splitlines()[-1] if stderr else f"exit status {proc.returncode}",
                returncode=proc.returncode,
                stderr=stderr,
            )

        self._logger.debug("az_command_succeeded", operation=operation)
        return stdout

    def _kill(self, proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is None:
            try:
                proc.kill()
            except ProcessLookupError:
                pass

    async def _run_az_json(self, operation: str, *args: str) -> Any:
        output = await self._run_az(operation, *args, "--output", "json")
        try:
            return json.loads(output) if output else None
        except json.JSONDecodeError as e:
            raise ControlPlaneError(operation, f"unparseable CLI output: {e}") from e

    # ------------------------------------------------------------------
    # Diagnosis
    # ------------------------------------------------------------------

    async def get_power_state(self, resource_group: str, vm_name: str) -> str:
        return await self._run_az(
            "get_power_state",
            "vm", "get-instance-view",
            "--resource-group", resource_group,
            "--name", vm_name,
            "--query", _POWER_STATE_QUERY,
            "--output", "tsv",
        )

    async def get_agent_status(self, resource_group: str, vm_name: str) -> str:
        return await self._run_az(
            "get_agent_status",
            "vm", "get-instance-view",
            "--resource-group", resource_group,
            "--name", vm_name,
            "--query", _AGENT_STATUS_QUERY,
            "--output", "tsv",
        )

    async def get_os_disk_name(self, resource_group: str, vm_name: str) -> str:
        return await self._run_az(
            "get_os_disk_name",
            "vm", "show",
            "--resource-group", resource_group,
            "--name", vm_name,
            "--query", "storageProfile.osDisk.name",
            "--output", "tsv",
        )

    async def list_disks(self, resource_group: str) -> list[DiskInfo]:
        data = await self._run_az_json(
            "list_disks",
            "disk", "list",
            "--resource-group", resource_group,
            "--query", "[].{name:name, id:id, diskState:diskState}",
        )
        return [DiskInfo.model_validate(item) for item in data or []]

    # ------------------------------------------------------------------
    # VM lifecycle
    # ------------------------------------------------------------------

    async def deallocate_vm(self, resource_group: str, vm_name: str) -> None:
        await self._run_az(
            "deallocate_vm",
            "vm", "deallocate",
            "--resource-group", resource_group,
            "--name", vm_name,
        )

    async def start_vm(self, resource_group: str, vm_name: str, wait: bool) -> None:
        args = ["vm", "start", "--resource-group", resource_group, "--name", vm_name]
        if not wait:
            args.append("--no-wait")
        await self._run_az("start_vm", *args)

    async def update_os_disk(self, resource_group: str, vm_name: str, disk_id: str) -> None:
        await self._run_az(
            "update_os_disk",
            "vm", "update",
            "--resource-group", resource_group,
            "--name", vm_name,
            "--os-disk", disk_id,
        )

    # ------------------------------------------------------------------
    # Repair VM (vm-repair extension)
    # ------------------------------------------------------------------

    async def create_repair_vm(
        self,
        resource_group: str,
        vm_name: str,
        repair_group: str,
        repair_vm_name: str,
        admin_user: str,
        admin_password: str,
    ) -> None:
        await self._run_az(
            "create_repair_vm",
            "vm", "repair", "create",
            "--resource-group", resource_group,
            "--name", vm_name,
            "--repair-group-name", repair_group,
            "--repair-vm-name", repair_vm_name,
            "--repair-username", admin_user,
            "--repair-password", admin_password,
            "--yes",
        )

    async def run_repair_script(
        self,
        resource_group: str,
        vm_name: str,
        repair_vm_id: str,
        script_id: str,
    ) -> None:
        await self._run_az(
            "run_repair_script",
            "vm", "repair", "run",
            "--resource-group", resource_group,
            "--name", vm_name,
            "--repair-vm-id", repair_vm_id,
            "--run-id", script_id,
            "--run-on-repair",
        )

    async def restore_repaired_disk(
        self,
        resource_group: str,
        vm_name: str,
        repair_vm_id: str,
    ) -> None:
        await self._run_az(
            "restore_repaired_disk",
            "vm", "repair", "restore",
            "--resource-group", resource_group,
            "--name", vm_name,
            "--repair-vm-id", repair_vm_id,
            "--yes",
        )

    # ------------------------------------------------------------------
    # Context
    # ------------------------------------------------------------------

    async def authenticate(self, principal: str, secret: str, tenant: str) -> None:
        await self._run_az(
            "authenticate",
            "login", "--service-principal",
            "--username", principal,
            "--password", secret,
            "--tenant", tenant,
            "--output", "none",
        )

    async def resolve_subscription_id(self, subscription_name: str) -> str:
        await self._run_az(
            "resolve_subscription_id",
            "account", "set", "--subscription", subscription_name,
        )
        subscription_id = await self._run_az(
            "resolve_subscription_id",
            "account", "show",
            "--subscription", subscription_name,
            "--query", "id",
            "--output", "tsv",
        )
        if not subscription_id:
            raise ControlPlaneError(
                "resolve_subscription_id", f"no id returned for {subscription_name!r}"
            )
        return subscription_id


__all__ = ["AzureCliControlPlane"]
