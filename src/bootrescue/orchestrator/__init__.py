"""Orchestration engine for bootrescue.

This module implements the per-target repair state machine, the bounded
worker pool with its timeout monitor, subscription grouping, and the
top-level orchestrator that sequences subscription batches.
"""

from __future__ import annotations

from bootrescue.orchestrator.grouper import group_by_subscription
from bootrescue.orchestrator.runner import Orchestrator, OrchestratorPhase
from bootrescue.orchestrator.state_machine import (
    VALID_TRANSITIONS,
    RepairStateMachine,
    ensure_transition,
    validate_transition,
)
from bootrescue.orchestrator.watchdog import (
    ExpiredJob,
    TimeoutMonitor,
    TimeoutSeverity,
)
from bootrescue.orchestrator.worker_pool import WorkerPool

__all__ = [
    # Grouping
    "group_by_subscription",
    # Orchestrator
    "Orchestrator",
    "OrchestratorPhase",
    # State machine
    "RepairStateMachine",
    "VALID_TRANSITIONS",
    "ensure_transition",
    "validate_transition",
    # Watchdog
    "ExpiredJob",
    "TimeoutMonitor",
    "TimeoutSeverity",
    # Worker pool
    "WorkerPool",
]
