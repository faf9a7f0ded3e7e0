"""bootrescue - batch repair of cloud VMs stuck in a boot loop.

This package provides the orchestration engine that diagnoses each affected
virtual machine, swaps back substituted OS disks, drives a throwaway repair VM
through the cloud control plane, and reports one outcome per machine.
"""

__version__ = "0.1.0"
