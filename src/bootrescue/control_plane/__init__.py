"""Control plane port and its Azure CLI adapter."""

from __future__ import annotations

from bootrescue.control_plane.azure_cli import AzureCliControlPlane
from bootrescue.control_plane.base import ControlPlane

__all__ = ["AzureCliControlPlane", "ControlPlane"]
